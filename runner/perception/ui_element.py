# runner/perception/ui_element.py
import threading
import uuid
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Protocol

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from runner.logger import log


class UiElement(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str
    location_details: str = ""
    parent_element_summary: str = ""
    screenshot: Optional[Image.Image] = None
    zoom_in_required: bool = False
    data_dependent: bool = False

    def copy_with_new_id(self, **changes) -> "UiElement":
        changes["id"] = str(uuid.uuid4())
        return self.model_copy(update=changes)

    def summary(self) -> str:
        lines = [f"Name: {self.name}", f"Description: {self.description}"]
        if self.location_details:
            lines.append(f"Location: {self.location_details}")
        if self.parent_element_summary:
            lines.append(f"Parent: {self.parent_element_summary}")
        return "\n".join(lines)


class RetrievedCandidate(BaseModel):
    element: UiElement
    score: float = Field(..., ge=0.0, le=1.0)


class ElementRepository(Protocol):
    def search(self, description: str, top_n: int, min_score: float) -> List[RetrievedCandidate]:
        ...

    def store(self, element: UiElement) -> None:
        ...

    def update(self, old: UiElement, new: UiElement) -> None:
        ...

    def remove(self, element: UiElement) -> None:
        ...


class InMemoryElementRepository:
    """Element store scored by string similarity; stands in for a vector store in tests and demos."""

    def __init__(self, elements: Optional[List[UiElement]] = None):
        self._lock = threading.Lock()
        self._elements: Dict[str, UiElement] = {}
        for element in elements or []:
            self.store(element)

    @staticmethod
    def _score(query: str, element: UiElement) -> float:
        query = query.lower().strip()
        return max(
            SequenceMatcher(None, query, element.name.lower()).ratio(),
            SequenceMatcher(None, query, element.description.lower()).ratio(),
        )

    def search(self, description: str, top_n: int, min_score: float) -> List[RetrievedCandidate]:
        with self._lock:
            elements = list(self._elements.values())
        scored = [RetrievedCandidate(element=e, score=self._score(description, e)) for e in elements]
        scored = [c for c in scored if c.score >= min_score]
        scored.sort(key=lambda c: c.score, reverse=True)
        log("DEBUG", "element_search", f"Found {len(scored)} elements for '{description}'", top_n=top_n)
        return scored[:top_n]

    def store(self, element: UiElement) -> None:
        with self._lock:
            self._elements[element.id] = element

    def update(self, old: UiElement, new: UiElement) -> None:
        with self._lock:
            if old.id not in self._elements:
                raise KeyError(f"Element {old.id} is not stored")
            del self._elements[old.id]
            self._elements[new.id] = new

    def remove(self, element: UiElement) -> None:
        with self._lock:
            self._elements.pop(element.id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._elements)
