import pytest

from runner.errors import BudgetExceededError, ErrorCategory, ExecutionError
from runner.fanout import fan_out


def test_results_keep_submission_order():
    assert fan_out(lambda i: i * 10, 4, "test") == [0, 10, 20, 30]


def test_failures_are_dropped():
    def task(i):
        if i % 2:
            raise ValueError("odd")
        return i
    assert fan_out(task, 5, "test") == [0, 2, 4]


def test_all_failed_raises_first_error_as_transient():
    def task(i):
        raise ValueError(f"failure {i}")
    with pytest.raises(ExecutionError) as exc:
        fan_out(task, 3, "test")
    assert exc.value.category == ErrorCategory.TRANSIENT
    assert isinstance(exc.value.__cause__, ValueError)


def test_all_failed_keeps_classified_error():
    error = ExecutionError("bad output", ErrorCategory.TRANSIENT)

    def task(i):
        raise error
    with pytest.raises(ExecutionError) as exc:
        fan_out(task, 2, "test")
    assert exc.value is error


def test_terminal_errors_propagate():
    def task(i):
        if i == 1:
            raise BudgetExceededError("Token budget exceeded", "tokens")
        return i
    with pytest.raises(BudgetExceededError):
        fan_out(task, 3, "test")


def test_zero_count():
    assert fan_out(lambda i: i, 0, "test") == []
