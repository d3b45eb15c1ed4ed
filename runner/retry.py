# runner/retry.py
import functools
import os
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from .budget import ExecutionContext
from .errors import ErrorCategory, ExecutionError, TERMINAL_CATEGORIES
from .logger import log
from .metrics import RETRY_ATTEMPTS


def exp_backoff_with_jitter(attempt: int, base: float = 0.5, cap: float = 8.0, jitter: float = 0.1) -> float:
    """
    Exponential backoff with small jitter.
    attempt: 0-based attempt number
    base: base seconds
    cap: max backoff seconds
    jitter: max random jitter in seconds
    """
    backoff = min(cap, base * (2 ** attempt))
    return max(0.0, backoff + random.uniform(-jitter, jitter))


def retry(
    attempts: int = 3,
    allowed_exceptions: Tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator factory for collaborator calls that fail intermittently (screen capture, file reads).
    Retries `attempts` times with exponential backoff, then re-raises the last error.
    """
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            for attempt in range(attempts):
                try:
                    return fn(*args, **kwargs)
                except allowed_exceptions as e:
                    if attempt + 1 >= attempts:
                        raise
                    sleep_for = exp_backoff_with_jitter(attempt)
                    log("WARN", "retry_attempt", f"Retrying {fn.__name__} in {sleep_for:.2f}s",
                        attempt=attempt + 1, attempts=attempts, error=str(e))
                    sleep(sleep_for)
        return wrapper
    return deco


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 10
    delay_millis: int = 1000
    timeout_millis: int = 10000

    @classmethod
    def from_env(cls, prefix: str, max_retries: int = 10, delay_millis: int = 1000, timeout_millis: int = 10000) -> "RetryPolicy":
        """Reads <PREFIX>_MAX_RETRIES, <PREFIX>_RETRY_DELAY_MILLIS and <PREFIX>_RETRY_TIMEOUT_MILLIS."""
        prefix = prefix.upper()
        return cls(
            max_retries=int(os.getenv(f"{prefix}_MAX_RETRIES", str(max_retries))),
            delay_millis=int(os.getenv(f"{prefix}_RETRY_DELAY_MILLIS", str(delay_millis))),
            timeout_millis=int(os.getenv(f"{prefix}_RETRY_TIMEOUT_MILLIS", str(timeout_millis))),
        )


class RetryState:
    """Attempt counter and start time of one retry loop; safe to share between threads."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts = 0
        self._start = clock()

    def record_attempt(self) -> int:
        with self._lock:
            self._attempts += 1
            return self._attempts

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    def elapsed_millis(self) -> int:
        with self._lock:
            start = self._start
        return int((self._clock() - start) * 1000)

    def reset(self) -> None:
        with self._lock:
            self._attempts = 0
            self._start = self._clock()


class RetryDecision(str, Enum):
    RETRY = "RETRY"
    ABORT = "ABORT"
    EXHAUSTED = "EXHAUSTED"


def decide(category: ErrorCategory, attempts: int, elapsed_millis: int, policy: RetryPolicy) -> RetryDecision:
    """
    attempts: failed attempts so far (1 after the first failure).
    A timeout of zero or less means only the attempt bound applies.
    """
    if category in TERMINAL_CATEGORIES:
        return RetryDecision.ABORT
    if attempts > policy.max_retries:
        return RetryDecision.EXHAUSTED
    if policy.timeout_millis > 0 and elapsed_millis >= policy.timeout_millis:
        return RetryDecision.EXHAUSTED
    return RetryDecision.RETRY


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    VERIFICATION_FAILURE = "VERIFICATION_FAILURE"
    INTERRUPTED_BY_USER = "INTERRUPTED_BY_USER"


@dataclass
class AgentExecutionResult:
    status: ExecutionStatus
    message: str = ""
    payload: Any = None
    category: Optional[ErrorCategory] = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


_STATUS_BY_CATEGORY = {
    ErrorCategory.USER_TERMINATION: ExecutionStatus.INTERRUPTED_BY_USER,
    ErrorCategory.VERIFICATION_FAILED: ExecutionStatus.VERIFICATION_FAILURE,
}


def failure_result(category: ErrorCategory, message: str, payload: Any = None, attempts: int = 0) -> AgentExecutionResult:
    status = _STATUS_BY_CATEGORY.get(category, ExecutionStatus.ERROR)
    return AgentExecutionResult(status=status, message=message, payload=payload, category=category, attempts=attempts)


def execute_with_retry(
    action: Callable[[], Any],
    policy: RetryPolicy,
    *,
    context: Optional[ExecutionContext] = None,
    retry_condition: Optional[Callable[[Any], bool]] = None,
    task_description: str = "",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> AgentExecutionResult:
    """
    Runs `action` until it succeeds or the policy bounds are reached.

    Classified failures become a failed AgentExecutionResult; anything unclassified is a bug
    and propagates untouched. `retry_condition` receives a successful payload and may return
    False to ask for another attempt.
    """
    state = RetryState(clock)
    last_payload = None
    while True:
        attempt = state.record_attempt()
        try:
            if context is not None:
                context.ledger.check_model_call_budget()
            payload = action()
        except ExecutionError as e:
            category, message = e.category, e.message
        else:
            if retry_condition is None or retry_condition(payload):
                log("INFO", "task_succeeded", task_description, attempt=attempt, elapsed_ms=state.elapsed_millis())
                return AgentExecutionResult(status=ExecutionStatus.SUCCESS, payload=payload, attempts=attempt)
            category, message = ErrorCategory.TRANSIENT, "Result did not satisfy the retry condition"
            last_payload = payload

        decision = decide(category, attempt, state.elapsed_millis(), policy)
        if decision == RetryDecision.ABORT:
            log("WARN", "task_aborted", task_description, category=category.value, attempt=attempt, error=message)
            return failure_result(category, message, last_payload, attempt)
        if decision == RetryDecision.EXHAUSTED:
            log("ERROR", "task_retries_exhausted", task_description, attempt=attempt,
                elapsed_ms=state.elapsed_millis(), error=message)
            return failure_result(category, message, last_payload, attempt)

        RETRY_ATTEMPTS.labels(category=category.value).inc()
        log("WARN", "task_retry", task_description, attempt=attempt, delay_ms=policy.delay_millis, error=message)
        if policy.delay_millis > 0:
            sleep(policy.delay_millis / 1000)
