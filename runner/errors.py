# runner/errors.py
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    TRANSIENT = "TRANSIENT"
    NON_RETRYABLE = "NON_RETRYABLE"
    TIMEOUT = "TIMEOUT"
    USER_TERMINATION = "USER_TERMINATION"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


class ExecutionError(Exception):
    """Base class for every failure the execution control plane knows how to classify."""

    default_category = ErrorCategory.NON_RETRYABLE

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category


class BudgetExceededError(ExecutionError):
    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, budget: str):
        super().__init__(message)
        self.budget = budget


class UserTerminationError(ExecutionError):
    default_category = ErrorCategory.USER_TERMINATION


class ElementLocationStatus(str, Enum):
    NO_ELEMENTS_FOUND = "NO_ELEMENTS_FOUND"
    SIMILAR_ELEMENTS_BUT_SCORE_TOO_LOW = "SIMILAR_ELEMENTS_BUT_SCORE_TOO_LOW"
    MODEL_COULD_NOT_SELECT_FROM_CANDIDATES = "MODEL_COULD_NOT_SELECT_FROM_CANDIDATES"
    ELEMENT_NOT_FOUND_ON_SCREEN_VISUAL_AND_ALGORITHMIC_FAILED = "ELEMENT_NOT_FOUND_ON_SCREEN_VISUAL_AND_ALGORITHMIC_FAILED"
    ELEMENT_NOT_FOUND_ON_SCREEN_VALIDATION_FAILED = "ELEMENT_NOT_FOUND_ON_SCREEN_VALIDATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ElementLocationError(ExecutionError):
    """Raised by the locator; the status names the stage that failed."""

    def __init__(self, status: ElementLocationStatus, message: str):
        category = ErrorCategory.NON_RETRYABLE if status == ElementLocationStatus.UNKNOWN_ERROR else ErrorCategory.TRANSIENT
        super().__init__(f"{status.value}: {message}", category)
        self.status = status
        self.detail = message


def classify(error: BaseException) -> Optional[ErrorCategory]:
    """Category of a known execution error, None for anything unclassified."""
    if isinstance(error, ExecutionError):
        return error.category
    return None


# Everything except TRANSIENT ends the current retry loop immediately.
TERMINAL_CATEGORIES = frozenset({
    ErrorCategory.NON_RETRYABLE,
    ErrorCategory.TIMEOUT,
    ErrorCategory.USER_TERMINATION,
    ErrorCategory.VERIFICATION_FAILED,
})
