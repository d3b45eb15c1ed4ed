import json

import pytest
from pydantic import BaseModel

from runner.budget import BudgetLedger, BudgetLimits, ExecutionContext
from runner.error_handler import ToolErrorHandler
from runner.errors import BudgetExceededError, ErrorCategory, ExecutionError
from runner.retry import RetryPolicy
from runner.tools import TestContextDataTools, ToolRegistry, ToolSpec


class EchoParams(BaseModel):
    text: str
    times: int = 1


class EchoTools:
    def __init__(self):
        self.calls = 0

    def echo(self, text, times):
        self.calls += 1
        return text * times

    def fail(self, text, times):
        raise ExecutionError("screen not ready", ErrorCategory.TRANSIENT)

    def tools(self):
        return [ToolSpec("echo", "Repeat text", EchoParams, self.echo),
                ToolSpec("fail", "Always fails", EchoParams, self.fail)]


def test_registry_composes_providers(context):
    registry = ToolRegistry(EchoTools(), TestContextDataTools(context))
    assert registry.names() == ["echo", "fail", "get_shared_data", "load_csv_data", "load_json_data",
                                "set_shared_data"]
    described = {t["name"]: t for t in registry.list_tools()}
    assert described["echo"]["parameters"]["required"] == ["text"]
    assert described["echo"]["description"] == "Repeat text"


def test_duplicate_tool_names_rejected():
    registry = ToolRegistry(EchoTools())
    with pytest.raises(ValueError):
        registry.extend(EchoTools().tools())


def test_invoke_validates_arguments():
    registry = ToolRegistry(EchoTools())
    assert registry.invoke("echo", {"text": "ab", "times": 2}) == "abab"
    with pytest.raises(ExecutionError) as exc:
        registry.invoke("echo", {"times": "many"})
    assert exc.value.category == ErrorCategory.TRANSIENT


def test_unknown_tool():
    with pytest.raises(ExecutionError) as exc:
        ToolRegistry().invoke("missing")
    assert exc.value.category == ErrorCategory.NON_RETRYABLE


def test_invoke_consumes_budget_before_running():
    context = ExecutionContext(ledger=BudgetLedger(BudgetLimits(tool_calls=2, tokens=0, time_seconds=0)))
    provider = EchoTools()
    registry = ToolRegistry(provider, context=context)
    registry.invoke("echo", {"text": "a"})
    registry.invoke("echo", {"text": "a"})
    with pytest.raises(BudgetExceededError):
        registry.invoke("echo", {"text": "a"})
    assert provider.calls == 2
    assert context.ledger.tool_calls_used == 2


def test_error_handler_returns_transient_errors_to_agent():
    handler = ToolErrorHandler(RetryPolicy(max_retries=1, delay_millis=0, timeout_millis=0))
    registry = ToolRegistry(EchoTools(), error_handler=handler)
    message = registry.invoke("fail", {"text": "x"})
    assert "screen not ready" in message
    with pytest.raises(ExecutionError) as exc:
        registry.invoke("fail", {"text": "x"})
    assert exc.value.category == ErrorCategory.TIMEOUT


def test_load_json_data(tmp_path, context):
    path = tmp_path / "users.json"
    path.write_text(json.dumps({"users": [{"name": "alice"}]}))
    registry = ToolRegistry(TestContextDataTools(context), context=context)
    registry.invoke("load_json_data", {"path": str(path), "key": "users"})
    assert registry.invoke("get_shared_data", {"key": "users"}) == {"users": [{"name": "alice"}]}


def test_load_csv_data(tmp_path, context):
    path = tmp_path / "orders.csv"
    path.write_text("id,total\n1,10.5\n2,3\n")
    rows = TestContextDataTools(context).load_csv_data(str(path), "orders")
    assert rows == [{"id": "1", "total": "10.5"}, {"id": "2", "total": "3"}]
    assert context.get_shared_data("orders") == rows


def test_missing_data_file_is_not_retryable(tmp_path, context):
    with pytest.raises(ExecutionError) as exc:
        TestContextDataTools(context).load_json_data(str(tmp_path / "missing.json"), "x")
    assert exc.value.category == ErrorCategory.NON_RETRYABLE


def test_set_shared_data(context):
    registry = ToolRegistry(TestContextDataTools(context))
    registry.invoke("set_shared_data", {"key": "order_id", "value": 42})
    assert context.get_shared_data("order_id") == 42
