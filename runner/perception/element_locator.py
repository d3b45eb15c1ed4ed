# runner/perception/element_locator.py
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

from PIL import Image
from pydantic import BaseModel, Field

from reasoner.client import ModelClient
from reasoner.prompts import CANDIDATE_SELECTION_SYSTEM_PROMPT, candidate_selection_prompt
from reasoner.schemas import CandidateSelection
from runner.config import LocatorSettings
from runner.errors import ElementLocationError, ElementLocationStatus, ErrorCategory, ExecutionError
from runner.logger import elapsed_ms, log
from runner.metrics import LOCATION_OUTCOMES
from runner.screenshot_service import ScreenshotService
from runner.tools import ToolSpec

from .algorithmic_matcher import AlgorithmicMatcher
from .geometry import (BoundingBox, CoordinateMapping, common_area, crop_region_scale, extend_zoom_region,
                       intersections, union_of)
from .imaging import crop, scale_image
from .quorum import QuorumSelector
from .ui_element import ElementRepository, RetrievedCandidate, UiElement
from .vision_locator import VisionLocator


class ElementLocation(BaseModel):
    x: int
    y: int
    bounding_box: BoundingBox


class LocateElementParams(BaseModel):
    element_description: str = Field(description="Description of the UI element to locate")
    element_specific_data: Optional[str] = Field(None, description="Test data the element's content depends on")


# Budget and operator errors are not location failures.
PASS_THROUGH_CATEGORIES = frozenset({ErrorCategory.TIMEOUT, ErrorCategory.USER_TERMINATION})


class ElementLocatorTools:
    """
    Finds a described UI element on the current screen.

    retrieval -> disambiguation -> localization (vision + algorithmic matching, consensus,
    quorum) -> optional zoom refinement -> screen coordinates. Every call is independent.
    """

    def __init__(self, repository: ElementRepository, client: ModelClient, screenshots: ScreenshotService,
                 settings: Optional[LocatorSettings] = None, vision: Optional[VisionLocator] = None,
                 quorum: Optional[QuorumSelector] = None, matcher: Optional[AlgorithmicMatcher] = None):
        self.repository = repository
        self.client = client
        self.screenshots = screenshots
        self.settings = settings or LocatorSettings()
        self.vision = vision or VisionLocator(client, self.settings)
        self.quorum = quorum or QuorumSelector(client, self.settings)
        self.matcher = matcher or AlgorithmicMatcher(self.settings)

    def tools(self) -> List[ToolSpec]:
        return [ToolSpec("locate_element", "Locate a UI element on the screen and return its center coordinates",
                         LocateElementParams, self.locate_element)]

    def locate_element(self, element_description: str, element_specific_data: Optional[str] = None) -> ElementLocation:
        if not element_description or not element_description.strip():
            raise ExecutionError("Element description must not be empty", ErrorCategory.TRANSIENT)

        start = time.time()
        try:
            candidates = self._retrieve(element_description)
            screenshot = self.screenshots.capture()
            element = self._choose(element_description, candidates, screenshot, element_specific_data)
            box = self._localize(element, screenshot, element_specific_data)
        except ElementLocationError as e:
            LOCATION_OUTCOMES.labels(status=e.status.value).inc()
            log("WARN", "element_location_failed", e.detail, description=element_description,
                status=e.status.value, duration_ms=elapsed_ms(start, time.time()))
            raise
        except ExecutionError as e:
            if e.category in PASS_THROUGH_CATEGORIES:
                raise
            LOCATION_OUTCOMES.labels(status=ElementLocationStatus.UNKNOWN_ERROR.value).inc()
            log("ERROR", "element_location_error", "Element location failed", description=element_description,
                category=e.category.value, error=e.message)
            raise ElementLocationError(ElementLocationStatus.UNKNOWN_ERROR, e.message) from e
        except Exception as e:
            LOCATION_OUTCOMES.labels(status=ElementLocationStatus.UNKNOWN_ERROR.value).inc()
            log("ERROR", "element_location_error", "Unexpected error while locating element",
                description=element_description, error=str(e))
            raise ElementLocationError(ElementLocationStatus.UNKNOWN_ERROR, str(e)) from e

        on_screen = CoordinateMapping(scale=self.settings.screen_scale).to_parent(box)
        x, y = on_screen.center
        LOCATION_OUTCOMES.labels(status="FOUND").inc()
        log("INFO", "element_located", f"Located '{element.name}'", description=element_description,
            x=x, y=y, box=on_screen.as_tuple(), duration_ms=elapsed_ms(start, time.time()))
        return ElementLocation(x=x, y=y, bounding_box=on_screen)

    # --------------------------
    # Retrieval & disambiguation
    # --------------------------
    def _retrieve(self, description: str) -> List[RetrievedCandidate]:
        retrieved = self.repository.search(description, self.settings.retriever_top_n, self.settings.min_general_score)
        matching = [c for c in retrieved if c.score >= self.settings.min_target_score]
        matching.sort(key=lambda c: c.score, reverse=True)
        log("DEBUG", "element_retrieval", f"Retrieved elements for '{description}'",
            retrieved=len(retrieved), above_target=len(matching))
        if matching:
            return matching
        if retrieved:
            names = ", ".join(f"{c.element.name} ({c.score:.2f})" for c in retrieved)
            raise ElementLocationError(ElementLocationStatus.SIMILAR_ELEMENTS_BUT_SCORE_TOO_LOW,
                                       f"Similar elements found but none scored high enough: {names}")
        raise ElementLocationError(ElementLocationStatus.NO_ELEMENTS_FOUND,
                                   f"No stored element resembles '{description}'")

    def _choose(self, description: str, candidates: Sequence[RetrievedCandidate], screenshot: Image.Image,
                test_data: Optional[str] = None) -> UiElement:
        if len(candidates) == 1:
            return candidates[0].element

        by_id = {f"element_{i}": c.element for i, c in enumerate(candidates)}
        prompt = candidate_selection_prompt(description, {cid: e.summary() for cid, e in by_id.items()},
                                            test_data)
        selection = self.client.ask(prompt, CandidateSelection, image=screenshot,
                                    system_prompt=CANDIDATE_SELECTION_SYSTEM_PROMPT)
        chosen = (selection.selected_element_id or "").strip().lower()
        if not selection.success or chosen not in by_id:
            raise ElementLocationError(ElementLocationStatus.MODEL_COULD_NOT_SELECT_FROM_CANDIDATES,
                                       f"Model could not choose among {len(candidates)} candidates: {selection.message}")
        log("INFO", "element_disambiguated", f"Model selected {chosen}", element=by_id[chosen].name)
        return by_id[chosen]

    # --------------------------
    # Localization
    # --------------------------
    def _localize(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str]) -> BoundingBox:
        if element.zoom_in_required:
            return self._localize_zoomed(element, screenshot, test_data)
        use_algorithmic = (self.settings.algorithmic_search_enabled and not element.data_dependent
                           and element.screenshot is not None)
        return self._localize_in(element, screenshot, test_data, use_algorithmic)

    def _vision_boxes(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str]) -> List[BoundingBox]:
        """Vision proposals; a grounding round where every vote failed counts as no proposals."""
        try:
            return self.vision.locate(element, screenshot, test_data)
        except ExecutionError as e:
            if e.category in PASS_THROUGH_CATEGORIES:
                raise
            log("WARN", "visual_grounding_failed", f"No grounding vote succeeded for '{element.name}'",
                category=e.category.value, error=e.message)
            return []

    def _localize_in(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str],
                     use_algorithmic: bool) -> BoundingBox:
        feature: List[BoundingBox] = []
        template: List[BoundingBox] = []
        if use_algorithmic:
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="algorithmic") as pool:
                matching = pool.submit(self.matcher.match, screenshot, element.screenshot)
                vision = self._vision_boxes(element, screenshot, test_data)
                feature, template = matching.result()
        else:
            vision = self._vision_boxes(element, screenshot, test_data)
        return self._resolve(element, screenshot, test_data, vision, feature, template)

    def _resolve(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str],
                 vision: List[BoundingBox], feature: List[BoundingBox], template: List[BoundingBox]) -> BoundingBox:
        if not vision and not feature and not template:
            raise ElementLocationError(ElementLocationStatus.ELEMENT_NOT_FOUND_ON_SCREEN_VISUAL_AND_ALGORITHMIC_FAILED,
                                       f"Neither vision nor algorithmic matching found '{element.name}'")

        if not feature and not template:
            if self.settings.skip_model_selection_for_vision_only:
                return vision[0]
            return self._select(element, screenshot, vision, test_data)

        if not vision:
            both = intersections(feature, template)
            return self._select(element, screenshot, both or union_of(feature, template), test_data)

        with_feature = intersections(vision, feature)
        with_template = intersections(vision, template)
        agreed = intersections(with_feature, with_template)
        if len(agreed) == 1:
            return agreed[0]
        if agreed:
            return self._select(element, screenshot, agreed, test_data)

        partially_agreed = union_of(with_feature, with_template)
        if partially_agreed:
            return self._select(element, screenshot, partially_agreed, test_data)

        algorithmic_agreed = intersections(feature, template)
        if algorithmic_agreed:
            return self._select(element, screenshot, union_of(vision, algorithmic_agreed), test_data)
        return self._select(element, screenshot, union_of(vision, feature, template), test_data)

    def _select(self, element: UiElement, screenshot: Image.Image, boxes: Sequence[BoundingBox],
                test_data: Optional[str]) -> BoundingBox:
        try:
            winner = self.quorum.select(element, screenshot, boxes, test_data)
        except ExecutionError as e:
            if e.category in PASS_THROUGH_CATEGORIES:
                raise
            raise ElementLocationError(ElementLocationStatus.ELEMENT_NOT_FOUND_ON_SCREEN_VALIDATION_FAILED,
                                       f"No validation vote succeeded for '{element.name}': {e.message}") from e
        if winner is None:
            raise ElementLocationError(ElementLocationStatus.ELEMENT_NOT_FOUND_ON_SCREEN_VALIDATION_FAILED,
                                       f"None of {len(boxes)} candidate regions was confirmed as '{element.name}'")
        return winner

    def _localize_zoomed(self, element: UiElement, screenshot: Image.Image, test_data: Optional[str]) -> BoundingBox:
        coarse = self._vision_boxes(element, screenshot, test_data)
        if not coarse:
            raise ElementLocationError(ElementLocationStatus.ELEMENT_NOT_FOUND_ON_SCREEN_VISUAL_AND_ALGORITHMIC_FAILED,
                                       f"Wide-area search found no region for '{element.name}'")
        region, zoomed, mapping = self._zoom(element, screenshot, coarse)
        log("INFO", "element_zoom", f"Zooming into region for '{element.name}'",
            region=region.as_tuple(), scale=mapping.scale)
        box = self._localize_in(element, zoomed, test_data, use_algorithmic=False)
        return mapping.to_parent(box)

    def _zoom(self, element: UiElement, screenshot: Image.Image,
              coarse: Sequence[BoundingBox]) -> Tuple[BoundingBox, Image.Image, CoordinateMapping]:
        region = common_area(coarse)
        reference_width = element.screenshot.width if element.screenshot is not None else region.width
        region = extend_zoom_region(region, reference_width, self.settings.zoom_extension_ratio,
                                    screenshot.width, screenshot.height)
        cropped = crop(screenshot, region)
        scale = crop_region_scale(screenshot.width, cropped.width, self.settings.zoom_scale_factor)
        return region, scale_image(cropped, scale), CoordinateMapping(region.x1, region.y1, scale)
