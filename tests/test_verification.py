import threading
import time

import pytest

from reasoner.schemas import VerificationResult
from runner.errors import ErrorCategory, ExecutionError
from runner.retry import RetryPolicy
from runner.verification import VerificationManager, VerificationStatus, VerificationTools

from conftest import FakeModelClient


@pytest.fixture
def manager():
    vm = VerificationManager(timeout_millis=1000)
    yield vm
    vm.close()


def test_status_flags():
    assert VerificationStatus(timed_out=False, success=True).is_successful
    failed = VerificationStatus(timed_out=False, success=False)
    assert failed.is_completed and not failed.is_successful
    stuck = VerificationStatus(timed_out=True, success=None)
    assert not stuck.is_completed and not stuck.is_successful


def test_nothing_to_wait_for(manager):
    status = manager.wait_for_verification_to_finish(10)
    assert status.is_successful


def test_completed_verification(manager):
    completed = []
    manager.submit_verification(lambda: VerificationResult(success=True, message="Dashboard shown"),
                                on_complete=completed.append)
    status = manager.wait_for_verification_to_finish()
    assert status.is_successful
    assert status.message == "Dashboard shown"
    assert completed[0].success


def test_timed_out_wait_does_not_cancel(manager):
    release = threading.Event()

    def slow():
        release.wait(2)
        return VerificationResult(success=False, message="Error banner missing")

    manager.submit_verification(slow)
    first = manager.wait_for_verification_to_finish(20)
    assert first.timed_out and first.success is None
    assert manager.has_pending()
    release.set()
    second = manager.wait_for_verification_to_finish(1000)
    assert second.is_completed
    assert second.success is False
    assert second.message == "Error banner missing"


def test_task_errors_become_failed_results(manager):
    def broken():
        raise ExecutionError("model unavailable", ErrorCategory.TRANSIENT)

    manager.submit_verification(broken)
    status = manager.wait_for_verification_to_finish()
    assert status.is_completed and not status.success
    assert "model unavailable" in status.message


def test_verifications_run_in_submission_order(manager):
    order = []

    def task(name, delay):
        def run():
            time.sleep(delay)
            order.append(name)
            return VerificationResult(success=True)
        return run

    manager.submit_verification(task("first", 0.05))
    manager.submit_verification(task("second", 0))
    manager.wait_for_verification_to_finish()
    assert order == ["first", "second"]


class DummyScreens:
    def __init__(self):
        self.captures = 0

    def capture(self):
        self.captures += 1
        return None


def test_verify_step_rechecks_until_success():
    client = FakeModelClient(VerificationResult=[VerificationResult(success=False, message="spinner"),
                                                 VerificationResult(success=False, message="spinner"),
                                                 VerificationResult(success=True, message="Cart shows 1 item")])
    screens = DummyScreens()
    tools = VerificationTools(client, screens, RetryPolicy(max_retries=5, delay_millis=10, timeout_millis=0),
                              sleep=lambda s: None)
    result = tools.verify_step("Add item to cart", "Cart shows 1 item")
    assert result.success and result.message == "Cart shows 1 item"
    assert screens.captures == 3
    assert "Expected results: Cart shows 1 item" in client.calls[0][1]


def test_verify_step_returns_last_failure_when_exhausted():
    client = FakeModelClient(VerificationResult=lambda prompt, image: VerificationResult(success=False, message="no"))
    tools = VerificationTools(client, DummyScreens(), RetryPolicy(max_retries=1, delay_millis=0, timeout_millis=0),
                              sleep=lambda s: None)
    result = tools.verify_step("Open settings", "Settings page visible")
    assert result.success is False
    assert client.count("VerificationResult") == 2


def test_verify_step_raises_when_model_keeps_failing():
    client = FakeModelClient(VerificationResult=lambda prompt, image: ExecutionError("bad json", ErrorCategory.TRANSIENT))
    tools = VerificationTools(client, DummyScreens(), RetryPolicy(max_retries=1, delay_millis=0, timeout_millis=0),
                              sleep=lambda s: None)
    with pytest.raises(ExecutionError) as exc:
        tools.verify_step("Open settings", "Settings page visible")
    assert exc.value.category == ErrorCategory.TRANSIENT


def test_verify_step_is_a_tool():
    client = FakeModelClient(VerificationResult=[VerificationResult(success=True)])
    tools = VerificationTools(client, DummyScreens(), RetryPolicy(max_retries=0), sleep=lambda s: None)
    (spec,) = tools.tools()
    assert spec.name == "verify_step"
    assert spec.handler(step_description="a", expected_results="b").success


def test_abandoned_verification_does_not_block_the_next_one(manager):
    release = threading.Event()

    def stuck():
        release.wait(2)
        return VerificationResult(success=True, message="Late answer")

    manager.submit_verification(stuck)
    assert manager.wait_for_verification_to_finish(20).timed_out
    manager.abandon_stuck()
    assert not manager.has_pending()
    manager.submit_verification(lambda: VerificationResult(success=True, message="Cart updated"))
    status = manager.wait_for_verification_to_finish(1000)
    release.set()
    assert status.is_successful
    assert status.message == "Cart updated"
