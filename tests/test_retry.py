import pytest

from runner.budget import BudgetLedger, BudgetLimits, ExecutionContext
from runner.errors import ErrorCategory, ExecutionError, UserTerminationError
from runner.retry import (ExecutionStatus, RetryDecision, RetryPolicy, RetryState, decide, execute_with_retry,
                          retry)

from conftest import FakeClock


class Flaky:
    def __init__(self, failures, error=None, result="done", clock=None, step=0.0):
        self.failures = failures
        self.error = error or ExecutionError("try again", ErrorCategory.TRANSIENT)
        self.result = result
        self.calls = 0
        self.clock = clock
        self.step = step

    def __call__(self):
        self.calls += 1
        if self.clock is not None:
            self.clock.advance(self.step)
        if self.calls <= self.failures:
            raise self.error
        return self.result


def test_decide():
    policy = RetryPolicy(max_retries=2, delay_millis=0, timeout_millis=1000)
    assert decide(ErrorCategory.TRANSIENT, 1, 0, policy) == RetryDecision.RETRY
    assert decide(ErrorCategory.TRANSIENT, 2, 999, policy) == RetryDecision.RETRY
    assert decide(ErrorCategory.TRANSIENT, 3, 0, policy) == RetryDecision.EXHAUSTED
    assert decide(ErrorCategory.TRANSIENT, 1, 1000, policy) == RetryDecision.EXHAUSTED
    for category in (ErrorCategory.NON_RETRYABLE, ErrorCategory.TIMEOUT, ErrorCategory.USER_TERMINATION,
                     ErrorCategory.VERIFICATION_FAILED):
        assert decide(category, 1, 0, policy) == RetryDecision.ABORT


def test_zero_timeout_only_counts_attempts():
    policy = RetryPolicy(max_retries=5, delay_millis=0, timeout_millis=0)
    assert decide(ErrorCategory.TRANSIENT, 1, 10**9, policy) == RetryDecision.RETRY


def test_stops_at_third_attempt_with_two_retries():
    sleeps = []
    action = Flaky(failures=10)
    result = execute_with_retry(action, RetryPolicy(max_retries=2, delay_millis=250, timeout_millis=0),
                                sleep=sleeps.append)
    assert action.calls == 3
    assert result.status == ExecutionStatus.ERROR
    assert result.category == ErrorCategory.TRANSIENT
    assert result.attempts == 3
    assert sleeps == [0.25, 0.25]


def test_stops_once_timeout_elapsed():
    clock = FakeClock()
    action = Flaky(failures=10, clock=clock, step=0.6)
    result = execute_with_retry(action, RetryPolicy(max_retries=10, delay_millis=0, timeout_millis=1000),
                                sleep=lambda s: None, clock=clock)
    assert action.calls == 2
    assert result.status == ExecutionStatus.ERROR


def test_succeeds_after_transient_failures():
    action = Flaky(failures=2)
    result = execute_with_retry(action, RetryPolicy(max_retries=3, delay_millis=0), sleep=lambda s: None)
    assert result.is_success
    assert result.payload == "done"
    assert result.attempts == 3


def test_retry_condition():
    values = iter([1, 2, 3, 4])
    result = execute_with_retry(lambda: next(values), RetryPolicy(max_retries=5, delay_millis=0),
                                retry_condition=lambda v: v >= 3, sleep=lambda s: None)
    assert result.is_success and result.payload == 3


def test_unsatisfied_condition_keeps_last_payload():
    result = execute_with_retry(lambda: "nope", RetryPolicy(max_retries=1, delay_millis=0, timeout_millis=0),
                                retry_condition=lambda v: False, sleep=lambda s: None)
    assert result.status == ExecutionStatus.ERROR
    assert result.payload == "nope"
    assert result.attempts == 2


@pytest.mark.parametrize("error, status", [
    (ExecutionError("bad request"), ExecutionStatus.ERROR),
    (UserTerminationError("stop"), ExecutionStatus.INTERRUPTED_BY_USER),
    (ExecutionError("wrong page", ErrorCategory.VERIFICATION_FAILED), ExecutionStatus.VERIFICATION_FAILURE),
])
def test_terminal_errors_short_circuit(error, status):
    action = Flaky(failures=10, error=error)
    result = execute_with_retry(action, RetryPolicy(max_retries=5, delay_millis=0), sleep=lambda s: None)
    assert action.calls == 1
    assert result.status == status
    assert result.message == error.message


def test_unclassified_errors_propagate():
    action = Flaky(failures=1, error=KeyError("bug"))
    with pytest.raises(KeyError):
        execute_with_retry(action, RetryPolicy(max_retries=5, delay_millis=0), sleep=lambda s: None)
    assert action.calls == 1


def test_budget_checked_before_each_attempt():
    ledger = BudgetLedger(BudgetLimits(tool_calls=0, tokens=100, time_seconds=0))
    ledger.consume_tokens("gpt-4o", 100, 1)
    action = Flaky(failures=0)
    result = execute_with_retry(action, RetryPolicy(max_retries=5, delay_millis=0),
                                context=ExecutionContext(ledger=ledger), sleep=lambda s: None)
    assert action.calls == 0
    assert result.category == ErrorCategory.TIMEOUT
    assert "Token budget exceeded" in result.message


def test_attempts_inside_the_last_allowed_tool_call_run():
    ledger = BudgetLedger(BudgetLimits(tool_calls=1, tokens=0, time_seconds=0))
    ledger.consume_tool_calls()
    action = Flaky(failures=0)
    result = execute_with_retry(action, RetryPolicy(max_retries=5, delay_millis=0),
                                context=ExecutionContext(ledger=ledger), sleep=lambda s: None)
    assert result.is_success()
    assert action.calls == 1


def test_retry_state():
    clock = FakeClock()
    state = RetryState(clock)
    assert state.record_attempt() == 1
    clock.advance(1.5)
    assert state.elapsed_millis() == 1500
    state.reset()
    assert state.attempts == 0 and state.elapsed_millis() == 0


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("ACTION_MAX_RETRIES", "4")
    monkeypatch.setenv("ACTION_RETRY_DELAY_MILLIS", "50")
    assert RetryPolicy.from_env("action") == RetryPolicy(max_retries=4, delay_millis=50, timeout_millis=10000)


def test_retry_decorator():
    sleeps = []
    calls = []

    @retry(attempts=3, allowed_exceptions=(OSError,), sleep=sleeps.append)
    def capture():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("device busy")
        return "png"

    assert capture() == "png"
    assert len(sleeps) == 2


def test_retry_decorator_reraises_last_error():
    @retry(attempts=2, allowed_exceptions=(OSError,), sleep=lambda s: None)
    def capture():
        raise OSError("gone")

    with pytest.raises(OSError):
        capture()
