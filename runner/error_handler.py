# runner/error_handler.py
from typing import Optional

from .errors import ErrorCategory, ExecutionError, TERMINAL_CATEGORIES, classify
from .logger import log
from .retry import RetryDecision, RetryPolicy, RetryState, decide


class ToolErrorHandler:
    """
    Decides what the hosting agent loop sees when a tool raises.

    Terminal errors are re-raised unchanged. Transient errors are counted against the shared
    RetryState and handed back to the agent as a message so it can try again, until the
    policy is exhausted, at which point a TIMEOUT error is raised instead.
    """

    def __init__(self, policy: RetryPolicy, state: Optional[RetryState] = None):
        self.policy = policy
        self.state = state or RetryState()

    def handle(self, tool_name: str, error: Exception) -> str:
        category = classify(error)
        if category is None:
            log("ERROR", "tool_error_unclassified", f"Tool {tool_name} raised an unexpected error", error=str(error))
            raise error
        if category in TERMINAL_CATEGORIES:
            log("WARN", "tool_error_terminal", f"Tool {tool_name} failed", category=category.value, error=str(error))
            raise error

        attempts = self.state.record_attempt()
        decision = decide(category, attempts, self.state.elapsed_millis(), self.policy)
        if decision == RetryDecision.EXHAUSTED:
            message = (f"Tool {tool_name} kept failing after {attempts} attempts "
                       f"({self.state.elapsed_millis()} ms): {error}")
            log("ERROR", "tool_error_exhausted", message, attempts=attempts)
            raise ExecutionError(message, ErrorCategory.TIMEOUT) from error

        log("WARN", "tool_error_retryable", f"Tool {tool_name} failed, returning error to agent",
            attempts=attempts, error=str(error))
        return f"Error while executing {tool_name}: {error}"
