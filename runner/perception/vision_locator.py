# runner/perception/vision_locator.py
import time
from typing import List, Optional

from PIL import Image

from reasoner.client import ModelClient
from reasoner.prompts import bounding_box_prompt, bounding_box_system_prompt
from reasoner.schemas import BoundingBoxesResult
from runner.config import LocatorSettings
from runner.fanout import fan_out
from runner.logger import elapsed_ms, log

from .geometry import BoundingBox, CoordinateMapping, average_box, cluster_boxes
from .imaging import scale_image, scaling_ratio
from .ui_element import UiElement


class VisionLocator:
    """Visual grounding: several independent model proposals reduced to consensus boxes."""

    def __init__(self, client: ModelClient, settings: LocatorSettings):
        self.client = client
        self.settings = settings

    def _propose(self, image: Image.Image, prompt: str, system_prompt: str) -> List[BoundingBox]:
        result = self.client.ask(prompt, BoundingBoxesResult, image=image, system_prompt=system_prompt)
        boxes = []
        for model_box in result.boxes:
            box = model_box.to_pixels(image.width, image.height, self.settings.box_coordinate_range)
            if box is not None:
                boxes.append(box)
        return boxes

    def locate(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str] = None) -> List[BoundingBox]:
        """
        Returns candidate boxes in `screenshot` pixels, most agreed-upon first.
        An empty list means no vote proposed anything usable.
        """
        start = time.time()
        ratio = scaling_ratio(screenshot.width, screenshot.height,
                              self.settings.longest_allowed_dimension, self.settings.max_megapixels)
        image = scale_image(screenshot, ratio)
        mapping = CoordinateMapping(scale=ratio)

        prompt = bounding_box_prompt(element.summary(), test_data if element.data_dependent else None)
        system_prompt = bounding_box_system_prompt(self.settings.box_coordinate_range)
        votes = self.settings.visual_grounding_votes
        proposals = fan_out(lambda _: self._propose(image, prompt, system_prompt), votes, "visual_grounding")

        boxes = []
        for vote in proposals:
            for box in vote:
                full = mapping.to_parent(box).clamp(screenshot.width, screenshot.height)
                if full is not None:
                    boxes.append(full)

        if votes > 1 and boxes:
            clusters = cluster_boxes(boxes, self.settings.min_intersection_ratio)
            boxes = [average_box(cluster) for cluster in clusters]
            log("INFO", "visual_grounding_clustered", f"Clustered proposals for '{element.name}'",
                votes=votes, proposals=sum(len(c) for c in clusters),
                cluster_sizes=[len(c) for c in clusters], duration_ms=elapsed_ms(start, time.time()))
        else:
            log("INFO", "visual_grounding_done", f"Vision proposals for '{element.name}'",
                votes=votes, proposals=len(boxes), duration_ms=elapsed_ms(start, time.time()))
        return boxes
