# runner/perception/geometry.py
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, model_validator


class BoundingBox(BaseModel):
    """Axis-aligned rectangle in pixels; (x2, y2) is exclusive."""
    model_config = ConfigDict(frozen=True)

    x1: int
    y1: int
    x2: int
    y2: int

    @model_validator(mode='after')
    def validate_corners(self):
        if self.x2 <= self.x1 or self.y2 <= self.y1:
            raise ValueError(f"degenerate bounding box ({self.x1}, {self.y1}, {self.x2}, {self.y2})")
        return self

    @classmethod
    def from_xywh(cls, x: int, y: int, width: int, height: int) -> "BoundingBox":
        return cls(x1=x, y1=y, x2=x + width, y2=y + height)

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> tuple:
        return self.x1 + self.width // 2, self.y1 + self.height // 2

    def intersection(self, other: "BoundingBox") -> Optional["BoundingBox"]:
        x1, y1 = max(self.x1, other.x1), max(self.y1, other.y1)
        x2, y2 = min(self.x2, other.x2), min(self.y2, other.y2)
        if x2 <= x1 or y2 <= y1:
            return None
        return BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2)

    def iou(self, other: "BoundingBox") -> float:
        inter = self.intersection(other)
        if inter is None:
            return 0.0
        union = self.area + other.area - inter.area
        return inter.area / union

    def clamp(self, width: int, height: int) -> Optional["BoundingBox"]:
        x1, y1 = max(0, self.x1), max(0, self.y1)
        x2, y2 = min(width, self.x2), min(height, self.y2)
        if x2 <= x1 or y2 <= y1:
            return None
        return BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2)

    def as_tuple(self) -> tuple:
        return self.x1, self.y1, self.x2, self.y2


def _distinct(boxes: Iterable[BoundingBox]) -> List[BoundingBox]:
    seen = set()
    result = []
    for box in boxes:
        if box not in seen:
            seen.add(box)
            result.append(box)
    return result


def intersections(first: Sequence[BoundingBox], second: Sequence[BoundingBox]) -> List[BoundingBox]:
    """Distinct non-empty pairwise intersections, in pair order."""
    found = []
    for a in first:
        for b in second:
            inter = a.intersection(b)
            if inter is not None:
                found.append(inter)
    return _distinct(found)


def union_of(*groups: Sequence[BoundingBox]) -> List[BoundingBox]:
    return _distinct(box for group in groups for box in group)


def average_box(boxes: Sequence[BoundingBox]) -> BoundingBox:
    """Coordinate-wise mean of x, y, width and height, truncated to ints."""
    if not boxes:
        raise ValueError("cannot average an empty list of boxes")
    n = len(boxes)
    x = int(sum(b.x1 for b in boxes) / n)
    y = int(sum(b.y1 for b in boxes) / n)
    w = max(1, int(sum(b.width for b in boxes) / n))
    h = max(1, int(sum(b.height for b in boxes) / n))
    return BoundingBox.from_xywh(x, y, w, h)


def _components(n: int, linked) -> List[List[int]]:
    parent = list(range(n))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(n):
        for j in range(i + 1, n):
            if linked(i, j):
                ri, rj = find(i), find(j)
                if ri != rj:
                    parent[max(ri, rj)] = min(ri, rj)

    groups = {}
    for i in range(n):
        groups.setdefault(find(i), []).append(i)
    return list(groups.values())


def overlap_groups(boxes: Sequence[BoundingBox]) -> List[List[int]]:
    """Indices of boxes grouped by transitive overlap."""
    return _components(len(boxes), lambda i, j: boxes[i].intersection(boxes[j]) is not None)


def iou_distance_matrix(boxes: Sequence[BoundingBox]) -> np.ndarray:
    n = len(boxes)
    distances = np.zeros((n, n), dtype=float)
    for i in range(n):
        for j in range(i + 1, n):
            distances[i, j] = distances[j, i] = 1.0 - boxes[i].iou(boxes[j])
    return distances


def cluster_boxes(boxes: Sequence[BoundingBox], min_iou: float) -> List[List[BoundingBox]]:
    """
    Density clustering over boxes with distance 1 - IoU, eps = 1 - min_iou and a minimum
    cluster size of one, so every box is a core point and clusters are the connected
    components of the "IoU >= min_iou" graph. Largest cluster first; ties keep input order.
    """
    if not boxes:
        return []
    eps = 1.0 - min_iou
    distances = iou_distance_matrix(boxes)
    # Small tolerance so that IoU exactly equal to the threshold still links
    groups = _components(len(boxes), lambda i, j: distances[i, j] <= eps + 1e-9)
    groups.sort(key=lambda g: (-len(g), g[0]))
    return [[boxes[i] for i in group] for group in groups]


def common_area(boxes: Sequence[BoundingBox]) -> BoundingBox:
    """Smallest box covering all given boxes."""
    if not boxes:
        raise ValueError("cannot compute the common area of no boxes")
    return BoundingBox(
        x1=min(b.x1 for b in boxes), y1=min(b.y1 for b in boxes),
        x2=max(b.x2 for b in boxes), y2=max(b.y2 for b in boxes),
    )


def extend_zoom_region(region: BoundingBox, element_width: int, extension_ratio: float,
                       screen_width: int, screen_height: int) -> BoundingBox:
    """
    Grows `region` around its center so that it is roughly `extension_ratio` element widths wide,
    capped at half the screen per dimension and clamped to the screen.
    """
    ratio = (element_width * extension_ratio) / region.width
    if ratio < 1.0:
        return region
    new_width = min(int(region.width * ratio), screen_width // 2)
    new_height = min(int(region.height * ratio), screen_height // 2)
    left = max(0, region.x1 - (new_width - region.width) // 2)
    top = max(0, region.y1 - (new_height - region.height) // 2)
    right = min(screen_width - 1, left + new_width)
    bottom = min(screen_height - 1, top + new_height)
    if right <= left or bottom <= top:
        return region
    return BoundingBox(x1=left, y1=top, x2=right, y2=bottom)


@dataclass(frozen=True)
class CoordinateMapping:
    """
    How a derived image relates to its parent: the derived image is the parent region starting at
    (offset_x, offset_y), multiplied by `scale`.
    """
    offset_x: int = 0
    offset_y: int = 0
    scale: float = 1.0

    def to_parent(self, box: BoundingBox) -> BoundingBox:
        x = self.offset_x + int(box.x1 / self.scale)
        y = self.offset_y + int(box.y1 / self.scale)
        w = max(1, int(box.width / self.scale))
        h = max(1, int(box.height / self.scale))
        return BoundingBox.from_xywh(x, y, w, h)

    def to_child(self, box: BoundingBox) -> BoundingBox:
        x = int((box.x1 - self.offset_x) * self.scale)
        y = int((box.y1 - self.offset_y) * self.scale)
        w = max(1, int(box.width * self.scale))
        h = max(1, int(box.height * self.scale))
        return BoundingBox.from_xywh(x, y, w, h)


def crop_region_scale(screen_width: int, region_width: int, max_scale: float) -> float:
    """Upscale factor for a zoomed region: never wider than the screen, never above max_scale."""
    return min(screen_width / region_width, max_scale)
