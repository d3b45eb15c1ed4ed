# runner/verification.py
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from reasoner.client import ModelClient
from reasoner.prompts import VERIFICATION_SYSTEM_PROMPT, verification_prompt
from reasoner.schemas import VerificationResult

from .config import VERIFICATION_TIMEOUT_MILLIS
from .errors import ErrorCategory, ExecutionError
from .logger import elapsed_ms, log
from .metrics import VERIFICATION_OUTCOMES
from .retry import RetryPolicy, execute_with_retry
from .screenshot_service import ScreenshotService
from .tools import ToolSpec


@dataclass(frozen=True)
class VerificationStatus:
    timed_out: bool
    success: Optional[bool]
    message: str = ""

    @property
    def is_completed(self) -> bool:
        return not self.timed_out and self.success is not None

    @property
    def is_successful(self) -> bool:
        return self.is_completed and bool(self.success)


class VerificationManager:
    """
    Runs verifications on a single background worker so the next action does not have to wait.
    A wait that times out leaves the verification running; waiting again picks up its result.
    """

    def __init__(self, timeout_millis: int = VERIFICATION_TIMEOUT_MILLIS):
        self.timeout_millis = timeout_millis
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="verification")
        self._lock = threading.Lock()
        self._current: Optional[Future] = None

    def submit_verification(self, task: Callable[[], VerificationResult],
                            on_complete: Optional[Callable[[VerificationResult], None]] = None) -> Future:
        def run() -> VerificationResult:
            start = time.time()
            try:
                result = task()
            except Exception as e:
                log("ERROR", "verification_error", "Verification raised an error", error=str(e))
                result = VerificationResult(success=False, message=f"Verification could not be completed: {e}")
            VERIFICATION_OUTCOMES.labels(outcome="success" if result.success else "failure").inc()
            log("INFO", "verification_finished", result.message, success=result.success,
                duration_ms=elapsed_ms(start, time.time()))
            if on_complete is not None:
                on_complete(result)
            return result

        with self._lock:
            self._current = self._executor.submit(run)
            return self._current

    def has_pending(self) -> bool:
        with self._lock:
            return self._current is not None and not self._current.done()

    def wait_for_verification_to_finish(self, timeout_millis: Optional[int] = None) -> VerificationStatus:
        with self._lock:
            future = self._current
        if future is None:
            return VerificationStatus(timed_out=False, success=True, message="No verification in progress")
        timeout = self.timeout_millis if timeout_millis is None else timeout_millis
        try:
            result = future.result(timeout=timeout / 1000)
        except FutureTimeoutError:
            log("WARN", "verification_wait_timeout", f"Verification still running after {timeout} ms")
            return VerificationStatus(timed_out=True, success=None,
                                      message=f"Verification did not complete within {timeout} ms")
        return VerificationStatus(timed_out=False, success=result.success, message=result.message)

    def abandon_stuck(self) -> None:
        """Gives up on the current verification and moves later verifications to a fresh worker."""
        with self._lock:
            future, self._current = self._current, None
            stuck, self._executor = self._executor, ThreadPoolExecutor(max_workers=1, thread_name_prefix="verification")
        if future is not None and not future.done():
            log("WARN", "verification_abandoned", "Stuck verification abandoned, its worker is retired")
        stuck.shutdown(wait=False, cancel_futures=True)

    def cancel_pending(self) -> None:
        with self._lock:
            future, self._current = self._current, None
        if future is not None and future.cancel():
            log("INFO", "verification_cancelled", "Pending verification cancelled")

    def close(self) -> None:
        self.cancel_pending()
        self._executor.shutdown(wait=False, cancel_futures=True)


class VerifyStepParams(BaseModel):
    step_description: str = Field(description="The test step that was executed")
    expected_results: str = Field(description="What the screen should show after the step")
    test_data: Optional[str] = None


class VerificationTools:
    """Checks the screen against a step's expected results, re-checking until it passes or the policy runs out."""

    def __init__(self, client: ModelClient, screenshots: ScreenshotService, policy: RetryPolicy,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.screenshots = screenshots
        self.policy = policy
        self.sleep = sleep

    def verify_step(self, step_description: str, expected_results: str, test_data: Optional[str] = None) -> VerificationResult:
        prompt = verification_prompt(step_description, expected_results, test_data)

        def attempt() -> VerificationResult:
            screenshot = self.screenshots.capture()
            return self.client.ask(prompt, VerificationResult, image=screenshot, system_prompt=VERIFICATION_SYSTEM_PROMPT)

        outcome = execute_with_retry(attempt, self.policy, retry_condition=lambda r: r.success,
                                     task_description=f"Verifying: {step_description}", sleep=self.sleep)
        if outcome.is_success:
            return outcome.payload
        if isinstance(outcome.payload, VerificationResult):
            return outcome.payload
        raise ExecutionError(outcome.message, outcome.category or ErrorCategory.TRANSIENT)

    def task_for(self, step_description: str, expected_results: str,
                 test_data: Optional[str] = None) -> Callable[[], VerificationResult]:
        return lambda: self.verify_step(step_description, expected_results, test_data)

    def tools(self) -> List[ToolSpec]:
        return [ToolSpec("verify_step", "Verify that the screen shows the expected results of a test step",
                         VerifyStepParams, self.verify_step)]
