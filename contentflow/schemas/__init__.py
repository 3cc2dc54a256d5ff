from .workflow import (
    ActionMetadata,
    ActionType,
    ApprovalAction,
    ApprovalCondition,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    ConditionOperator,
    ConditionType,
    EscalationRule,
    Priority,
    RequestMetadata,
    RequestStatus,
    TERMINAL_STATUSES,
)
from .routing import (
    ApproverMetrics,
    AssignToRoleAction,
    AssignToUserAction,
    Availability,
    EscalateAction,
    LoadBalanceAction,
    ParallelRouteAction,
    Role,
    RoutingContext,
    RoutingDecision,
    RoutingRule,
    RoutingRuleCreate,
    TeamMember,
)
from .notification import (
    NotificationIntent,
    NotificationType,
    WorkflowEvent,
    WorkflowEventType,
)
from .engine import WorkflowMetrics, WorkflowOutcome, WorkflowStatus

__all__ = [
    "ActionMetadata",
    "ActionType",
    "ApprovalAction",
    "ApprovalCondition",
    "ApprovalRequest",
    "ApprovalStage",
    "ApprovalWorkflow",
    "ConditionOperator",
    "ConditionType",
    "EscalationRule",
    "Priority",
    "RequestMetadata",
    "RequestStatus",
    "TERMINAL_STATUSES",
    "ApproverMetrics",
    "AssignToRoleAction",
    "AssignToUserAction",
    "Availability",
    "EscalateAction",
    "LoadBalanceAction",
    "ParallelRouteAction",
    "Role",
    "RoutingContext",
    "RoutingDecision",
    "RoutingRule",
    "RoutingRuleCreate",
    "TeamMember",
    "NotificationIntent",
    "NotificationType",
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowMetrics",
    "WorkflowOutcome",
    "WorkflowStatus",
]
