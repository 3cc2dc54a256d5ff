"""
Condition evaluation shared by routing rules and stage skip conditions.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from ..schemas.workflow import ApprovalCondition, ConditionOperator, ConditionType, Priority

O = ConditionOperator


@dataclass
class ConditionSubject:
    """The facts a condition can look at"""
    requester_role: Optional[str] = None
    content_type: str = ""
    budget: Optional[float] = None
    urgency_level: Priority = Priority.MEDIUM
    escalation_level: int = 0
    total_workload: int = 0
    high_workload_threshold: int = 5


def _user_role(condition: ApprovalCondition, subject: ConditionSubject) -> bool:
    expected = str(condition.value)
    if condition.operator == O.EQUALS:
        return subject.requester_role == expected
    if condition.operator == O.NOT_EQUALS:
        return subject.requester_role != expected
    return False


def _content_type(condition: ApprovalCondition, subject: ConditionSubject) -> bool:
    expected = str(condition.value)
    if condition.operator == O.EQUALS:
        return subject.content_type == expected
    if condition.operator == O.NOT_EQUALS:
        return subject.content_type != expected
    if condition.operator == O.CONTAINS:
        return expected.lower() in subject.content_type.lower()
    return False


def _budget_threshold(condition: ApprovalCondition, subject: ConditionSubject) -> bool:
    budget = subject.budget or 0
    try:
        threshold = float(condition.value)
    except (TypeError, ValueError):
        return False

    if condition.operator == O.GREATER_THAN:
        return budget > threshold
    if condition.operator == O.LESS_THAN:
        return budget < threshold
    if condition.operator == O.EQUALS:
        return budget == threshold
    return False


# Engine-defined tokens for custom conditions
CUSTOM_TOKENS: Dict[str, Callable[[ConditionSubject], bool]] = {
    "urgent": lambda s: s.urgency_level == Priority.URGENT,
    "high_priority": lambda s: s.urgency_level in (Priority.HIGH, Priority.URGENT),
    "high_workload": lambda s: s.total_workload > s.high_workload_threshold,
    "escalated": lambda s: s.escalation_level > 0,
}


def _custom(condition: ApprovalCondition, subject: ConditionSubject) -> bool:
    token = CUSTOM_TOKENS.get(str(condition.value))
    if token is None:
        return False
    if condition.operator == O.EQUALS:
        return token(subject)
    if condition.operator == O.NOT_EQUALS:
        return not token(subject)
    return False


_EVALUATORS: Dict[ConditionType, Callable[[ApprovalCondition, ConditionSubject], bool]] = {
    ConditionType.USER_ROLE: _user_role,
    ConditionType.CONTENT_TYPE: _content_type,
    ConditionType.BUDGET_THRESHOLD: _budget_threshold,
    ConditionType.CUSTOM: _custom,
}

_missing = set(ConditionType) - set(_EVALUATORS)
if _missing:
    raise RuntimeError(f"No evaluator for condition types: {sorted(t.value for t in _missing)}")


def evaluate_condition(condition: ApprovalCondition, subject: ConditionSubject) -> bool:
    return _EVALUATORS[condition.type](condition, subject)


def evaluate_all(conditions: Iterable[ApprovalCondition], subject: ConditionSubject) -> bool:
    """Logical AND; an empty list holds."""
    return all(evaluate_condition(c, subject) for c in conditions)


def evaluate_any(conditions: Iterable[ApprovalCondition], subject: ConditionSubject) -> bool:
    """Logical OR in list order; an empty list never holds."""
    return any(evaluate_condition(c, subject) for c in conditions)
