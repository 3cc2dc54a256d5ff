"""
Workflow event and notification intent schemas.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .workflow import Priority, utcnow


class WorkflowEventType(str, Enum):
    WORKFLOW_STARTED = "workflow_started"
    STAGE_ENTERED = "stage_entered"
    STAGE_COMPLETED = "stage_completed"
    STAGE_SKIPPED = "stage_skipped"
    APPROVAL_RECORDED = "approval_recorded"
    CHANGES_REQUESTED = "changes_requested"
    APPROVAL_DELEGATED = "approval_delegated"
    WORKFLOW_ESCALATED = "workflow_escalated"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_EXPIRED = "workflow_expired"


class WorkflowEvent(BaseModel):
    type: WorkflowEventType
    request_id: str
    stage_id: Optional[str] = None
    stage_name: Optional[str] = None
    user_id: Optional[str] = None
    recipients: List[str] = []  # resolved by the engine, consumed by notification generation
    comment: Optional[str] = None
    metadata: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)


class NotificationType(str, Enum):
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_REMINDER = "approval_reminder"
    APPROVAL_COMPLETED = "approval_completed"
    APPROVAL_REJECTED = "approval_rejected"
    CHANGES_REQUESTED = "changes_requested"
    APPROVAL_DELEGATED = "approval_delegated"
    APPROVAL_ESCALATED = "approval_escalated"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_EXPIRED = "workflow_expired"


class NotificationIntent(BaseModel):
    """A notification to deliver. Delivery belongs to an external system."""
    type: NotificationType
    recipient_id: str
    title: str
    message: str
    action_url: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    metadata: Dict[str, Any] = {}
