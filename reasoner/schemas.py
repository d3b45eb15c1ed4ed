# reasoner/schemas.py
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from runner.perception.geometry import BoundingBox


class ModelBoundingBox(BaseModel):
    """A box on the model's normalized grid (0..range on both axes)."""
    x1: int = Field(..., ge=0)
    y1: int = Field(..., ge=0)
    x2: int = Field(..., ge=0)
    y2: int = Field(..., ge=0)

    def to_pixels(self, width: int, height: int, coordinate_range: int = 1000) -> Optional[BoundingBox]:
        x1 = int(min(self.x1, coordinate_range) * width / coordinate_range)
        y1 = int(min(self.y1, coordinate_range) * height / coordinate_range)
        x2 = int(min(self.x2, coordinate_range) * width / coordinate_range)
        y2 = int(min(self.y2, coordinate_range) * height / coordinate_range)
        if x2 <= x1 or y2 <= y1:
            return None
        return BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2)


class BoundingBoxesResult(BaseModel):
    boxes: List[ModelBoundingBox] = Field(default_factory=list)
    message: str = ""


class Vote(BaseModel):
    accepted: bool
    candidate_id: Optional[str] = None
    rationale: str = ""

    @model_validator(mode='after')
    def validate_candidate(self):
        if self.accepted and not (self.candidate_id or "").strip():
            raise ValueError("an accepted vote requires 'candidate_id'")
        return self


class CandidateSelection(BaseModel):
    success: bool
    selected_element_id: Optional[str] = None
    message: str = ""


class VerificationResult(BaseModel):
    success: bool
    message: str = ""
