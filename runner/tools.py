# runner/tools.py
import csv
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .budget import ExecutionContext
from .error_handler import ToolErrorHandler
from .errors import ErrorCategory, ExecutionError
from .logger import elapsed_ms, log
from .metrics import TOOL_CALLS


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Type[BaseModel]
    handler: Callable[..., Any]

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.model_json_schema(),
        }


class ToolRegistry:
    """
    Explicit table of the operations an agent may call.
    Providers are any objects with a `tools()` method returning ToolSpecs; composing several
    providers is how shared operations (e.g. test data tools) reach more than one agent.
    """

    def __init__(self, *providers: Any, context: Optional[ExecutionContext] = None,
                 error_handler: Optional[ToolErrorHandler] = None):
        self.context = context
        self.error_handler = error_handler
        self._tools: Dict[str, ToolSpec] = {}
        for provider in providers:
            self.extend(provider.tools())

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool {spec.name!r} is already registered")
        self._tools[spec.name] = spec

    def extend(self, specs: Iterable[ToolSpec]) -> None:
        for spec in specs:
            self.register(spec)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise ExecutionError(f"Unknown tool: {name}", ErrorCategory.NON_RETRYABLE) from None

    def list_tools(self) -> List[Dict[str, Any]]:
        return [self._tools[name].describe() for name in self.names()]

    def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        spec = self.get(name)
        if self.context is not None:
            self.context.ledger.check_all()
            self.context.ledger.consume_tool_calls()
        TOOL_CALLS.labels(tool=name).inc()

        start = time.time()
        log("INFO", "tool_start", f"Tool {name} start", tool=name)
        try:
            try:
                params = spec.parameters.model_validate(arguments or {})
            except ValidationError as e:
                raise ExecutionError(f"Invalid arguments for {name}: {e}", ErrorCategory.TRANSIENT) from e
            result = spec.handler(**params.model_dump())
        except Exception as e:
            log("ERROR", "tool_failed", f"Tool {name} failed", tool=name,
                duration_ms=elapsed_ms(start, time.time()), error=str(e))
            if self.error_handler is None:
                raise
            return self.error_handler.handle(name, e)
        log("INFO", "tool_success", f"Tool {name} success", tool=name, duration_ms=elapsed_ms(start, time.time()))
        return result


class LoadDataParams(BaseModel):
    path: str = Field(description="Path of the data file")
    key: str = Field(description="Shared data key to store the loaded data under")


class SharedDataParams(BaseModel):
    key: str


class SetSharedDataParams(BaseModel):
    key: str
    value: Any = None


class TestContextDataTools:
    """Test data loading shared by every agent of a run."""

    __test__ = False

    def __init__(self, context: ExecutionContext):
        self.context = context

    def load_json_data(self, path: str, key: str) -> Any:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ExecutionError(f"Could not load JSON test data from {path}: {e}", ErrorCategory.NON_RETRYABLE) from e
        self.context.set_shared_data(key, data)
        return data

    def load_csv_data(self, path: str, key: str) -> List[Dict[str, str]]:
        try:
            with open(path, newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
        except OSError as e:
            raise ExecutionError(f"Could not load CSV test data from {path}: {e}", ErrorCategory.NON_RETRYABLE) from e
        self.context.set_shared_data(key, rows)
        return rows

    def get_shared_data(self, key: str) -> Any:
        return self.context.get_shared_data(key)

    def set_shared_data(self, key: str, value: Any) -> None:
        self.context.set_shared_data(key, value)

    def tools(self) -> List[ToolSpec]:
        return [
            ToolSpec("load_json_data", "Load a JSON test data file into shared test data", LoadDataParams, self.load_json_data),
            ToolSpec("load_csv_data", "Load a CSV test data file (one dict per row) into shared test data",
                     LoadDataParams, self.load_csv_data),
            ToolSpec("get_shared_data", "Read a value from shared test data", SharedDataParams, self.get_shared_data),
            ToolSpec("set_shared_data", "Store a value in shared test data", SetSharedDataParams, self.set_shared_data),
        ]
