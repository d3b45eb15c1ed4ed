# runner/budget.py
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import BudgetExceededError
from .logger import log
from .metrics import BUDGET_EXCEEDED, TOKENS_USED


@dataclass(frozen=True)
class BudgetLimits:
    """Per-run ceilings. A limit of zero or less disables that budget."""
    tool_calls: int = 5
    tokens: int = 1_000_000
    time_seconds: float = 3000.0

    @classmethod
    def from_env(cls) -> "BudgetLimits":
        return cls(
            tool_calls=int(os.getenv("AGENT_TOOL_CALLS_BUDGET", "5")),
            tokens=int(os.getenv("AGENT_TOKEN_BUDGET", "1000000")),
            time_seconds=float(os.getenv("EXECUTION_TIME_BUDGET_SECONDS", "3000")),
        )


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    cached: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


class BudgetLedger:
    """
    Counters shared by every agent call of one test-case run.
    All reads and writes go through a single lock.
    """

    def __init__(self, limits: Optional[BudgetLimits] = None, clock: Callable[[], float] = time.monotonic):
        self.limits = limits or BudgetLimits()
        self._clock = clock
        self._lock = threading.Lock()
        self._tool_calls = 0
        self._tokens: Dict[str, TokenUsage] = {}
        self._start = clock()

    def reset(self) -> None:
        with self._lock:
            self._tool_calls = 0
            self._tokens = {}
            self._start = self._clock()

    def reset_tool_call_usage(self) -> None:
        with self._lock:
            self._tool_calls = 0

    def consume_tool_calls(self, count: int = 1) -> int:
        with self._lock:
            self._tool_calls += count
            return self._tool_calls

    def consume_tokens(self, model: str, input_tokens: int = 0, output_tokens: int = 0, cached_tokens: int = 0) -> None:
        with self._lock:
            usage = self._tokens.setdefault(model, TokenUsage())
            usage.input += input_tokens
            usage.output += output_tokens
            usage.cached += cached_tokens
        TOKENS_USED.labels(model=model, kind="input").inc(input_tokens)
        TOKENS_USED.labels(model=model, kind="output").inc(output_tokens)
        TOKENS_USED.labels(model=model, kind="cached").inc(cached_tokens)

    @property
    def tool_calls_used(self) -> int:
        with self._lock:
            return self._tool_calls

    @property
    def tokens_used(self) -> int:
        with self._lock:
            return sum(u.total for u in self._tokens.values())

    def token_usage(self, model: str) -> TokenUsage:
        with self._lock:
            usage = self._tokens.get(model, TokenUsage())
            return TokenUsage(usage.input, usage.output, usage.cached)

    def elapsed_seconds(self) -> float:
        with self._lock:
            start = self._start
        return self._clock() - start

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tool_calls_used": self._tool_calls,
                "tokens_used": sum(u.total for u in self._tokens.values()),
                "tokens_by_model": {m: u.total for m, u in self._tokens.items()},
                "elapsed_seconds": round(self._clock() - self._start, 3),
            }

    def _exceeded(self, budget: str, message: str, **payload: Any) -> BudgetExceededError:
        BUDGET_EXCEEDED.labels(budget=budget).inc()
        log("WARN", "budget_exceeded", message, budget=budget, **payload)
        return BudgetExceededError(message, budget)

    def check_tool_call_budget(self) -> None:
        limit = self.limits.tool_calls
        used = self.tool_calls_used
        if limit > 0 and used >= limit:
            raise self._exceeded("tool_calls", f"Tool call budget exceeded: {used}/{limit}", used=used, limit=limit)

    def check_token_budget(self) -> None:
        limit = self.limits.tokens
        used = self.tokens_used
        if limit > 0 and used > limit:
            raise self._exceeded("tokens", f"Token budget exceeded: {used}/{limit}", used=used, limit=limit)

    def check_time_budget(self) -> None:
        limit = self.limits.time_seconds
        elapsed = self.elapsed_seconds()
        if limit > 0 and elapsed > limit:
            raise self._exceeded("time", f"Execution time budget exceeded: {elapsed:.1f}s/{limit:.1f}s",
                                 elapsed_seconds=elapsed, limit=limit)

    def check_model_call_budget(self) -> None:
        """Checks run inside a tool call; the tool-call ceiling is enforced where tools are invoked."""
        self.check_token_budget()
        self.check_time_budget()

    def check_all(self) -> None:
        self.check_token_budget()
        self.check_tool_call_budget()
        self.check_time_budget()


@dataclass
class ExecutionContext:
    """Everything one test-case run shares between its agent calls."""
    ledger: BudgetLedger = field(default_factory=BudgetLedger)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    _shared: Dict[str, Any] = field(default_factory=dict, repr=False)
    _shared_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_env(cls) -> "ExecutionContext":
        return cls(ledger=BudgetLedger(BudgetLimits.from_env()))

    def set_shared_data(self, key: str, value: Any) -> None:
        with self._shared_lock:
            self._shared[key] = value

    def get_shared_data(self, key: str, default: Any = None) -> Any:
        with self._shared_lock:
            return self._shared.get(key, default)

    def shared_data(self) -> Dict[str, Any]:
        with self._shared_lock:
            return dict(self._shared)
