"""
Routing schemas: team members, approver metrics, rules and decisions.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .workflow import (
    ApprovalCondition,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    Priority,
    utcnow,
)


class Role(str, Enum):
    ADMIN = "admin"
    APPROVER = "approver"
    REVIEWER = "reviewer"
    PUBLISHER = "publisher"
    CREATOR = "creator"
    VIEWER = "viewer"


class Availability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    AWAY = "away"
    OFFLINE = "offline"


class TeamMember(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    team_id: Optional[str] = None
    is_active: bool = True


class ApproverMetrics(BaseModel):
    """Best-effort performance snapshot for one approver."""
    user_id: str
    average_response_time: float  # hours
    approval_rate: float  # 0-1
    current_workload: int = 0
    expertise_areas: List[str] = []
    availability: Availability = Availability.AVAILABLE
    last_active_at: datetime = Field(default_factory=utcnow)

    @property
    def score(self) -> float:
        """Responsiveness-weighted reliability."""
        if self.average_response_time <= 0:
            return float("inf") if self.approval_rate > 0 else 0.0
        return (1 / self.average_response_time) * self.approval_rate


# ============================================================
# ROUTING ACTIONS
# ============================================================

class AssignToUserAction(BaseModel):
    type: Literal["assign_to_user"] = "assign_to_user"
    user_ids: List[str] = []


class AssignToRoleAction(BaseModel):
    type: Literal["assign_to_role"] = "assign_to_role"
    roles: List[str] = []
    expertise_required: bool = False


class LoadBalanceAction(BaseModel):
    type: Literal["load_balance"] = "load_balance"
    roles: List[str] = ["reviewer", "approver"]
    max_workload: Optional[int] = None  # Settings.default_max_workload when unset


class ParallelRouteAction(BaseModel):
    type: Literal["parallel_route"] = "parallel_route"
    roles: List[str] = ["approver", "admin"]
    min_approvers: int = Field(default=2, ge=1)


class EscalateAction(BaseModel):
    type: Literal["escalate"] = "escalate"
    roles: List[str] = ["admin"]


RoutingAction = Annotated[
    Union[
        AssignToUserAction,
        AssignToRoleAction,
        LoadBalanceAction,
        ParallelRouteAction,
        EscalateAction,
    ],
    Field(discriminator="type"),
]


class RoutingRuleCreate(BaseModel):
    name: str
    description: str = ""
    priority: int = 100
    conditions: List[ApprovalCondition] = []
    actions: List[RoutingAction] = []
    is_active: bool = True


class RoutingRule(RoutingRuleCreate):
    id: str


# ============================================================
# CONTEXT AND DECISION
# ============================================================

class RoutingContext(BaseModel):
    request: ApprovalRequest
    stage: ApprovalStage
    workflow: Optional[ApprovalWorkflow] = None
    requester: Optional[TeamMember] = None
    team_members: List[TeamMember] = []
    urgency_level: Priority = Priority.MEDIUM

    @property
    def content_type(self) -> str:
        return self.request.metadata.content_type or self.request.target_type


class RoutingDecision(BaseModel):
    should_route: bool
    target_approvers: List[str] = []
    estimated_time: float
    confidence: float
    reasoning: List[str] = []
    used_fallback: bool = False
    warning_code: Optional[str] = None
