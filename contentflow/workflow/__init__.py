from .transitions import (
    ContentApprovalStatus,
    ContentState,
    ContentStateMachine,
    TransitionContext,
    TransitionResult,
    TransitionRule,
    TRANSITION_TABLE,
)
from .conditions import ConditionSubject, evaluate_all, evaluate_any, evaluate_condition
from .metrics_cache import ApproverMetricsCache, MetricsSource, default_metrics
from .routing import RoutingEngine, default_routing_rules
from .notifications import NotificationIntentGenerator
from .engine import WorkflowExecutionEngine

__all__ = [
    "ContentApprovalStatus",
    "ContentState",
    "ContentStateMachine",
    "TransitionContext",
    "TransitionResult",
    "TransitionRule",
    "TRANSITION_TABLE",
    "ConditionSubject",
    "evaluate_all",
    "evaluate_any",
    "evaluate_condition",
    "ApproverMetricsCache",
    "MetricsSource",
    "default_metrics",
    "RoutingEngine",
    "default_routing_rules",
    "NotificationIntentGenerator",
    "WorkflowExecutionEngine",
]
