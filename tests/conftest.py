import threading

import pytest
from PIL import Image

from runner.budget import BudgetLedger, BudgetLimits, ExecutionContext
from runner.config import LocatorSettings
from runner.perception.ui_element import UiElement
from runner.screenshot_service import ScreenshotService


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeModelClient:
    """
    Answers `ask` per schema. A responder is either a list of answers consumed in order
    (exceptions in the list are raised) or a callable(prompt, image) -> answer.
    """

    def __init__(self, **responders):
        self.responders = responders
        self.calls = []
        self._lock = threading.Lock()

    def ask(self, prompt, schema, image=None, system_prompt=None):
        with self._lock:
            self.calls.append((schema.__name__, prompt, image))
            responder = self.responders[schema.__name__]
            if callable(responder):
                answer = None
            else:
                answer = responder.pop(0)
        if callable(responder):
            answer = responder(prompt, image)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def count(self, schema_name: str) -> int:
        with self._lock:
            return sum(1 for name, _, _ in self.calls if name == schema_name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context():
    return ExecutionContext(ledger=BudgetLedger(BudgetLimits(tool_calls=0, tokens=0, time_seconds=0)))


@pytest.fixture
def settings():
    return LocatorSettings(visual_grounding_votes=1, validation_votes=3, screen_scale=1.0,
                           algorithmic_search_enabled=True, skip_model_selection_for_vision_only=False)


@pytest.fixture
def screen():
    return Image.new("RGB", (1920, 1080), "white")


@pytest.fixture
def screenshots(screen):
    return ScreenshotService(capture_fn=lambda: screen)


def make_element(name="Login button", **kwargs) -> UiElement:
    kwargs.setdefault("description", f"The {name.lower()} in the top bar")
    return UiElement(name=name, **kwargs)
