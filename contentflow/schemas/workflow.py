"""
Workflow, stage, request and action schemas.

These are the domain objects the engine reads and writes. The record store
converts them to and from ORM rows.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
    RequestStatus.EXPIRED,
})


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ActionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    CANCEL = "cancel"


class ConditionType(str, Enum):
    USER_ROLE = "user_role"
    CONTENT_TYPE = "content_type"
    BUDGET_THRESHOLD = "budget_threshold"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class ApprovalCondition(BaseModel):
    """A single predicate used by skip conditions and routing rules."""
    type: ConditionType
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Union[int, float, str]


class EscalationRule(BaseModel):
    """Who hears about a stage escalation at a given level (1-based, last rule repeats)."""
    after_hours: Optional[int] = None
    escalate_to_roles: List[str] = []
    escalate_to_users: List[str] = []


class ApprovalStage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    order: int
    approvers_required: int = Field(default=1, ge=1)
    approvers: List[str] = []
    approver_roles: List[str] = []
    skip_conditions: List[ApprovalCondition] = []
    timeout_hours: Optional[int] = None
    escalation_rules: List[EscalationRule] = []


class ApprovalWorkflow(BaseModel):
    """Named, versioned definition of an ordered list of approval stages."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    team_id: Optional[str] = None
    is_active: bool = True
    allow_parallel_stages: bool = False
    require_all_approvers: bool = False
    auto_start: bool = False
    default_timeout_hours: int = 72
    applicable_types: List[str] = []
    stages: List[ApprovalStage] = []
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _orders_are_unique(self):
        orders = [stage.order for stage in self.stages]
        if len(orders) != len(set(orders)):
            raise ValueError("stage order values must be unique within a workflow")
        return self

    def ordered_stages(self) -> List[ApprovalStage]:
        return sorted(self.stages, key=lambda s: s.order)

    def get_stage(self, stage_id: Optional[str]) -> Optional[ApprovalStage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def required_approvals(self, stage: ApprovalStage) -> int:
        """Quorum for a stage, raised to the explicit approver count when all must sign."""
        if self.require_all_approvers and len(stage.approvers) > stage.approvers_required:
            return len(stage.approvers)
        return stage.approvers_required


class RequestMetadata(BaseModel):
    """
    Structured metadata attached to an approval request.

    Known keys:
        budget: numeric budget of the target content, used by budget_threshold conditions
        content_type: finer-grained content type than target_type (e.g. "brand")
        extra: free-form values that no engine logic reads
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    schema_version: int = 1
    budget: Optional[float] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    extra: Dict[str, Any] = {}


class ActionMetadata(BaseModel):
    """
    Structured metadata attached to an approval action.

    Known keys:
        delegate_to_id (alias delegateToId): target user of a delegate action
        reason: short machine-readable reason (e.g. "timeout" from an external sweep)
        extra: free-form values that no engine logic reads
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    schema_version: int = 1
    delegate_to_id: Optional[str] = Field(default=None, alias="delegateToId")
    reason: Optional[str] = None
    extra: Dict[str, Any] = {}


class ApprovalAction(BaseModel):
    """One approval decision. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str
    request_id: str
    stage_id: Optional[str] = None
    approver_id: str
    action: ActionType
    comment: Optional[str] = None
    metadata: ActionMetadata = Field(default_factory=ActionMetadata)
    created_at: datetime = Field(default_factory=utcnow)


class ApprovalRequest(BaseModel):
    """One content entity moving through a workflow."""
    id: str
    workflow_id: str
    target_type: str
    target_id: str
    requester_id: str
    current_stage_id: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    priority: Priority = Priority.MEDIUM
    approvals: List[ApprovalAction] = []
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    escalation_level: int = 0
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def stage_approvers(self, stage_id: str) -> List[str]:
        """Distinct approvers who approved the given stage, in order of approval."""
        seen: List[str] = []
        for action in self.approvals:
            if action.stage_id == stage_id and action.action == ActionType.APPROVE:
                if action.approver_id not in seen:
                    seen.append(action.approver_id)
        return seen
