# runner/executor.py
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from reasoner.schemas import VerificationResult

from .budget import ExecutionContext
from .config import ExecutionSettings
from .errors import UserTerminationError
from .logger import elapsed_ms, log
from .operator_interaction import OperatorDecision, OperatorInteraction, ask_operator
from .retry import AgentExecutionResult, ExecutionStatus
from .screenshot_service import ScreenshotService
from .verification import VerificationManager, VerificationStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TestStep(BaseModel):
    __test__ = False

    description: str
    test_data: Optional[str] = None
    expected_results: Optional[str] = None


class TestCase(BaseModel):
    __test__ = False

    name: str
    preconditions: List[TestStep] = Field(default_factory=list)
    steps: List[TestStep]


class StepStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class RunStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    INTERRUPTED = "INTERRUPTED"


class TestStepResult(BaseModel):
    __test__ = False
    model_config = ConfigDict(arbitrary_types_allowed=True)

    step: TestStep
    status: StepStatus = StepStatus.SUCCESS
    message: str = ""
    error_message: Optional[str] = None
    screenshot: Optional[Image.Image] = None
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None


class TestExecutionResult(BaseModel):
    __test__ = False

    test_case_name: str
    status: RunStatus = RunStatus.PASSED
    message: str = ""
    precondition_results: List[TestStepResult] = Field(default_factory=list)
    step_results: List[TestStepResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None


class StepVerifier(Protocol):
    def task_for(self, step_description: str, expected_results: str,
                 test_data: Optional[str] = None) -> Callable[[], VerificationResult]:
        ...


_RUN_STATUS = {StepStatus.FAILURE: RunStatus.FAILED, StepStatus.ERROR: RunStatus.ERROR}


class TestCaseExecutor:
    """
    Drives one test case: preconditions, then steps, each an action followed by a verification.

    Synchronous mode waits for every verification (plus one grace period of the same length).
    Prefetch mode starts the next action while the previous verification is still running; the
    previous verification is always resolved before a new one is submitted and at the end of the run.
    """

    __test__ = False

    def __init__(self, action_runner: Callable[[TestStep], AgentExecutionResult], verifier: StepVerifier,
                 verification_manager: VerificationManager, context: ExecutionContext,
                 settings: Optional[ExecutionSettings] = None, operator: Optional[OperatorInteraction] = None,
                 screenshots: Optional[ScreenshotService] = None, sleep: Callable[[float], None] = time.sleep):
        self.action_runner = action_runner
        self.verifier = verifier
        self.verification_manager = verification_manager
        self.context = context
        self.settings = settings or ExecutionSettings()
        self.operator = operator
        self.screenshots = screenshots
        self.sleep = sleep
        self._prefetch_lock = threading.Lock()
        self._prefetch_failure: Optional[VerificationResult] = None

    def run(self, test_case: TestCase) -> TestExecutionResult:
        self.context.ledger.reset()
        result = TestExecutionResult(test_case_name=test_case.name)
        prefetch = self.settings.prefetching
        start = time.time()
        log("INFO", "test_case_start", f"Executing test case '{test_case.name}'", run_id=self.context.run_id,
            steps=len(test_case.steps), preconditions=len(test_case.preconditions), prefetch=prefetch)
        try:
            for precondition in test_case.preconditions:
                precondition_result = self._run_synchronously(precondition)
                result.precondition_results.append(precondition_result)
                if precondition_result.status != StepStatus.SUCCESS:
                    return self._finish(result, _RUN_STATUS[precondition_result.status],
                                        f"Precondition failed: {precondition.description}", start)

            if prefetch:
                self._run_prefetched(test_case, result)
            else:
                for step in test_case.steps:
                    step_result = self._run_synchronously(step)
                    result.step_results.append(step_result)
                    if step_result.status != StepStatus.SUCCESS:
                        break
        except UserTerminationError as e:
            self.verification_manager.cancel_pending()
            return self._finish(result, RunStatus.INTERRUPTED, e.message, start)

        for step_result in result.step_results:
            if step_result.status != StepStatus.SUCCESS:
                return self._finish(result, _RUN_STATUS[step_result.status],
                                    step_result.error_message or step_result.message, start)
        return self._finish(result, RunStatus.PASSED, "All steps passed", start)

    def _finish(self, result: TestExecutionResult, status: RunStatus, message: str, start: float) -> TestExecutionResult:
        result.status = status
        result.message = message
        result.finished_at = _now()
        log("INFO", "test_case_finished", message, test_case=result.test_case_name, status=status.value,
            run_id=self.context.run_id, duration_ms=elapsed_ms(start, time.time()), budget=self.context.ledger.snapshot())
        return result

    # --------------------------
    # Actions
    # --------------------------
    def _act(self, step: TestStep) -> TestStepResult:
        step_result = TestStepResult(step=step)
        log("INFO", "step_action_start", step.description)
        action = self.action_runner(step)
        self.context.ledger.reset_tool_call_usage()
        if action.status == ExecutionStatus.INTERRUPTED_BY_USER:
            raise UserTerminationError(action.message or "Execution interrupted by the user")
        if not action.is_success:
            step_result.status = StepStatus.ERROR
            step_result.error_message = action.message
            step_result.screenshot = self._failure_screenshot()
            step_result.finished_at = _now()
            log("WARN", "step_action_failed", action.message, step=step.description,
                category=action.category.value if action.category else None)
            return step_result
        step_result.message = action.message or "Action executed"
        if self.settings.action_verification_delay_millis > 0 and step.expected_results:
            self.sleep(self.settings.action_verification_delay_millis / 1000)
        return step_result

    def _failure_screenshot(self) -> Optional[Image.Image]:
        if self.screenshots is None:
            return None
        try:
            return self.screenshots.capture()
        except Exception as e:
            log("WARN", "failure_screenshot_unavailable", "Could not capture failure screenshot", error=str(e))
            return None

    # --------------------------
    # Verification
    # --------------------------
    def _submit(self, step: TestStep, on_complete=None) -> None:
        task = self.verifier.task_for(step.description, step.expected_results, step.test_data)
        self.verification_manager.submit_verification(task, on_complete)

    def _await(self, step_result: TestStepResult) -> VerificationStatus:
        """Waits for the current verification with one grace period and records the outcome on `step_result`."""
        timeout = self.settings.verification_timeout_millis
        status = self.verification_manager.wait_for_verification_to_finish(timeout)
        if status.timed_out:
            log("WARN", "verification_grace_wait", f"Verification still running, waiting another {timeout} ms",
                step=step_result.step.description)
            status = self.verification_manager.wait_for_verification_to_finish(timeout)
        self.context.ledger.reset_tool_call_usage()

        if status.timed_out:
            self.verification_manager.abandon_stuck()
            step_result.status = StepStatus.ERROR
            step_result.error_message = (f"Verification of step '{step_result.step.description}' "
                                         f"hasn't completed within extended timeout of {2 * timeout} ms")
        elif not status.success:
            step_result.status = StepStatus.FAILURE
            step_result.error_message = status.message
        else:
            step_result.status = StepStatus.SUCCESS
            step_result.message = status.message or step_result.message
        if step_result.status != StepStatus.SUCCESS:
            step_result.screenshot = self._failure_screenshot()
        step_result.finished_at = _now()
        return status

    def _run_synchronously(self, step: TestStep) -> TestStepResult:
        while True:
            step_result = self._act(step)
            if step_result.status != StepStatus.SUCCESS or not step.expected_results:
                step_result.finished_at = step_result.finished_at or _now()
                return step_result
            self._submit(step)
            self._await(step_result)
            if step_result.status != StepStatus.FAILURE or self.operator is None:
                return step_result

            decision = ask_operator(self.operator,
                                    f"Verification of '{step.description}' failed: {step_result.error_message}",
                                    [OperatorDecision.RETRY, OperatorDecision.CREATE_NEW,
                                     OperatorDecision.PROCEED, OperatorDecision.TERMINATE])
            if decision == OperatorDecision.PROCEED:
                step_result.status = StepStatus.SUCCESS
                step_result.message = "Verification failure accepted by the operator"
                return step_result

    def _on_prefetched(self, result: VerificationResult) -> None:
        if not result.success:
            with self._prefetch_lock:
                self._prefetch_failure = result

    def _prefetch_failed(self) -> bool:
        with self._prefetch_lock:
            return self._prefetch_failure is not None

    def _run_prefetched(self, test_case: TestCase, result: TestExecutionResult) -> None:
        with self._prefetch_lock:
            self._prefetch_failure = None
        pending: Optional[TestStepResult] = None
        for step in test_case.steps:
            if pending is not None and self._prefetch_failed():
                log("INFO", "prefetch_checkpoint_halt", "Earlier verification failed, halting",
                    step=pending.step.description)
                self._await(pending)
                return

            step_result = self._act(step)
            result.step_results.append(step_result)
            if step_result.status != StepStatus.SUCCESS:
                if pending is not None:
                    self._await(pending)
                return
            if not step.expected_results:
                step_result.finished_at = _now()
                continue

            if pending is not None:
                self._await(pending)
                if pending.status != StepStatus.SUCCESS:
                    step_result.message = "Action executed; verification skipped after an earlier failure"
                    step_result.finished_at = _now()
                    return
            self._submit(step, on_complete=self._on_prefetched)
            pending = step_result

        if pending is not None:
            self._await(pending)
