# runner/operator_interaction.py
from enum import Enum
from typing import Optional, Protocol, Sequence

from .errors import UserTerminationError
from .logger import log


class OperatorDecision(str, Enum):
    PROCEED = "PROCEED"
    CREATE_NEW = "CREATE_NEW"
    RETRY = "RETRY"
    TERMINATE = "TERMINATE"


class OperatorInteraction(Protocol):
    def choose(self, message: str, options: Sequence[OperatorDecision]) -> OperatorDecision:
        ...


def ask_operator(operator: Optional[OperatorInteraction], message: str,
                 options: Sequence[OperatorDecision] = tuple(OperatorDecision)) -> OperatorDecision:
    """Without an operator the run simply proceeds; TERMINATE is raised as a user termination."""
    if operator is None:
        return OperatorDecision.PROCEED
    decision = operator.choose(message, list(options))
    log("INFO", "operator_decision", message, decision=decision.value)
    if decision == OperatorDecision.TERMINATE:
        raise UserTerminationError("Execution terminated by the operator")
    return decision
