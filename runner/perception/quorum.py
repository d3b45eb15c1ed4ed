# runner/perception/quorum.py
import uuid
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence

from PIL import Image

from reasoner.client import ModelClient
from reasoner.prompts import SELECTION_SYSTEM_PROMPT, selection_prompt
from reasoner.schemas import Vote
from runner.config import LocatorSettings
from runner.fanout import fan_out
from runner.logger import log

from .geometry import BoundingBox
from .imaging import draw_boxes
from .ui_element import UiElement


def short_id() -> str:
    return uuid.uuid4().hex[:4]


class QuorumSelector:
    """Asks the model several times which labeled box is the element and takes the majority."""

    def __init__(self, client: ModelClient, settings: LocatorSettings, id_factory: Callable[[], str] = short_id):
        self.client = client
        self.settings = settings
        self.id_factory = id_factory

    def _label(self, boxes: Sequence[BoundingBox]) -> Dict[str, BoundingBox]:
        labeled: Dict[str, BoundingBox] = {}
        for box in boxes:
            label = self.id_factory()
            while label.lower() in labeled:
                label = self.id_factory()
            labeled[label.lower()] = box
        return labeled

    def select(self, element: UiElement, screenshot: Image.Image, boxes: Sequence[BoundingBox],
               test_data: Optional[str] = None) -> Optional[BoundingBox]:
        if not boxes:
            return None
        labeled = self._label(boxes)
        annotated = draw_boxes(screenshot, labeled, color=self.settings.bounding_box_color)
        prompt = selection_prompt(element.summary(), list(labeled), test_data if element.data_dependent else None)

        votes: List[Vote] = fan_out(
            lambda _: self.client.ask(prompt, Vote, image=annotated, system_prompt=SELECTION_SYSTEM_PROMPT),
            self.settings.validation_votes, "quorum_vote")

        tally = Counter()
        for vote in votes:
            if not vote.accepted:
                continue
            key = (vote.candidate_id or "").strip().lower()
            if key not in labeled:
                log("WARN", "quorum_unknown_candidate", "Vote referenced an unknown candidate id",
                    candidate_id=vote.candidate_id)
                continue
            tally[key] += 1

        if not tally:
            log("INFO", "quorum_no_winner", f"No accepted votes for '{element.name}'", votes=len(votes))
            return None

        order = {label: index for index, label in enumerate(labeled)}
        winner = min(tally, key=lambda label: (-tally[label], -labeled[label].area, order[label]))
        log("INFO", "quorum_winner", f"Selected candidate for '{element.name}'", candidate=winner,
            tally=dict(tally), candidates=len(labeled))
        return labeled[winner]
