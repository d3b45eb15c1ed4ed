# runner/config.py
import os
from enum import Enum
from typing import Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Element retrieval
ELEMENT_RETRIEVAL_TOP_N = int(os.getenv("ELEMENT_RETRIEVAL_TOP_N", "5"))
ELEMENT_RETRIEVAL_MIN_TARGET_SCORE = float(os.getenv("ELEMENT_RETRIEVAL_MIN_TARGET_SCORE", "0.85"))
ELEMENT_RETRIEVAL_MIN_GENERAL_SCORE = float(os.getenv("ELEMENT_RETRIEVAL_MIN_GENERAL_SCORE", "0.4"))

# Visual grounding
VISUAL_GROUNDING_VOTES = int(os.getenv("VISUAL_GROUNDING_VOTES", "5"))
VALIDATION_VOTES = int(os.getenv("VALIDATION_VOTES", "3"))
BBOX_CLUSTERING_MIN_INTERSECTION_RATIO = float(os.getenv("BBOX_CLUSTERING_MIN_INTERSECTION_RATIO", "0.7"))
BBOX_LONGEST_ALLOWED_DIMENSION = int(os.getenv("BBOX_LONGEST_ALLOWED_DIMENSION", "1568"))
BBOX_MAX_MEGAPIXELS = float(os.getenv("BBOX_MAX_MEGAPIXELS", "1.15"))
BOX_COORDINATE_RANGE = int(os.getenv("BOX_COORDINATE_RANGE", "1000"))

# Zoom
ZOOM_SCALE_FACTOR = float(os.getenv("ZOOM_SCALE_FACTOR", "2"))
ZOOM_EXTENSION_RATIO = float(os.getenv("ZOOM_EXTENSION_RATIO", "15.0"))

# Algorithmic matching
ALGORITHMIC_SEARCH_ENABLED = _env_bool("ALGORITHMIC_SEARCH_ENABLED", True)
SKIP_MODEL_SELECTION_FOR_VISION_ONLY = _env_bool("SKIP_MODEL_SELECTION_FOR_VISION_ONLY", False)
VISUAL_SIMILARITY_THRESHOLD = float(os.getenv("VISUAL_SIMILARITY_THRESHOLD", "0.8"))
TOP_VISUAL_MATCHES = int(os.getenv("TOP_VISUAL_MATCHES", "3"))
DIMENSION_DEVIATION_RATIO = float(os.getenv("DIMENSION_DEVIATION_RATIO", "0.3"))

# Screen
SCREEN_SCALE = float(os.getenv("SCREEN_SCALE", "1.0"))
BOUNDING_BOX_COLOR = os.getenv("BOUNDING_BOX_COLOR", "#00FF00")

# Execution
PREFETCHING_ENABLED = _env_bool("PREFETCHING_ENABLED", True)
ACTION_VERIFICATION_DELAY_MILLIS = int(os.getenv("ACTION_VERIFICATION_DELAY_MILLIS", "1000"))
VERIFICATION_TIMEOUT_MILLIS = int(os.getenv("VERIFICATION_TIMEOUT_MILLIS", "10000"))
EXECUTION_MODE = os.getenv("EXECUTION_MODE", "UNATTENDED").upper()
METRICS_PORT = int(os.getenv("METRICS_PORT", "0"))


def parse_color(value: str) -> Tuple[int, int, int]:
    value = value.strip().lstrip("#")
    if len(value) != 6:
        raise ValueError(f"Invalid color: {value!r}")
    return tuple(int(value[i:i + 2], 16) for i in (0, 2, 4))


class LocatorSettings(BaseModel):
    """Tunables of the element location engine."""
    retriever_top_n: int = Field(ELEMENT_RETRIEVAL_TOP_N, ge=1)
    min_target_score: float = Field(ELEMENT_RETRIEVAL_MIN_TARGET_SCORE, ge=0.0, le=1.0)
    min_general_score: float = Field(ELEMENT_RETRIEVAL_MIN_GENERAL_SCORE, ge=0.0, le=1.0)
    visual_grounding_votes: int = Field(VISUAL_GROUNDING_VOTES, ge=1)
    validation_votes: int = Field(VALIDATION_VOTES, ge=1)
    min_intersection_ratio: float = Field(BBOX_CLUSTERING_MIN_INTERSECTION_RATIO, gt=0.0, le=1.0)
    longest_allowed_dimension: int = Field(BBOX_LONGEST_ALLOWED_DIMENSION, gt=0)
    max_megapixels: float = Field(BBOX_MAX_MEGAPIXELS, gt=0.0)
    box_coordinate_range: int = Field(BOX_COORDINATE_RANGE, gt=0)
    zoom_scale_factor: float = Field(ZOOM_SCALE_FACTOR, ge=1.0)
    zoom_extension_ratio: float = Field(ZOOM_EXTENSION_RATIO, ge=0.0)
    algorithmic_search_enabled: bool = ALGORITHMIC_SEARCH_ENABLED
    skip_model_selection_for_vision_only: bool = SKIP_MODEL_SELECTION_FOR_VISION_ONLY
    visual_similarity_threshold: float = Field(VISUAL_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    top_visual_matches: int = Field(TOP_VISUAL_MATCHES, ge=1)
    dimension_deviation_ratio: float = Field(DIMENSION_DEVIATION_RATIO, ge=0.0)
    screen_scale: float = Field(SCREEN_SCALE, gt=0.0)
    bounding_box_color: Tuple[int, int, int] = parse_color(BOUNDING_BOX_COLOR)


class ExecutionMode(str, Enum):
    ATTENDED = "ATTENDED"
    SEMI_ATTENDED = "SEMI_ATTENDED"
    UNATTENDED = "UNATTENDED"


class ExecutionSettings(BaseModel):
    mode: ExecutionMode = ExecutionMode(EXECUTION_MODE)
    prefetching_enabled: bool = PREFETCHING_ENABLED
    verification_timeout_millis: int = Field(VERIFICATION_TIMEOUT_MILLIS, gt=0)
    action_verification_delay_millis: int = Field(ACTION_VERIFICATION_DELAY_MILLIS, ge=0)

    @property
    def prefetching(self) -> bool:
        # Only a fully unattended run can afford to learn about failures late
        return self.prefetching_enabled and self.mode == ExecutionMode.UNATTENDED
