"""
Results returned by the workflow execution engine.
"""
from typing import List, Optional

from pydantic import BaseModel

from .notification import NotificationIntent, WorkflowEvent
from .routing import RoutingDecision
from .workflow import ApprovalAction, ApprovalRequest, ApprovalStage, ApprovalWorkflow


class WorkflowOutcome(BaseModel):
    """What one engine call changed, plus the side effects it asks for."""
    request: ApprovalRequest
    action: Optional[ApprovalAction] = None
    events: List[WorkflowEvent] = []
    notifications: List[NotificationIntent] = []
    routing: Optional[RoutingDecision] = None


class WorkflowStatus(BaseModel):
    request: ApprovalRequest
    workflow: ApprovalWorkflow
    current_stage: Optional[ApprovalStage] = None
    completed_stages: List[ApprovalStage] = []
    pending_stages: List[ApprovalStage] = []
    progress: int = 0


class WorkflowMetrics(BaseModel):
    """Aggregates over a workflow's requests. Rates are percentages."""
    workflow_id: str
    total_requests: int = 0
    completed_requests: int = 0
    rejected_requests: int = 0
    average_completion_time: float = 0.0  # hours
    approval_rate: float = 0.0
    escalation_rate: float = 0.0
    timeout_rate: float = 0.0
