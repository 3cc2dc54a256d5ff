"""
Notification intents for workflow events.

Turns WorkflowEvents into NotificationIntents (recipient, message, priority).
Nothing is delivered here.
"""

from typing import Callable, Dict, Iterable, List, Optional

from ..config import Settings, get_settings
from ..logging_config import notification_logger
from ..schemas.notification import (
    NotificationIntent,
    NotificationType,
    WorkflowEvent,
    WorkflowEventType,
)
from ..schemas.workflow import ApprovalRequest, Priority

E = WorkflowEventType


class NotificationIntentGenerator:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._builders: Dict[WorkflowEventType, Callable[[WorkflowEvent, ApprovalRequest], List[NotificationIntent]]] = {
            E.WORKFLOW_STARTED: self._approval_required,
            E.STAGE_ENTERED: self._approval_required,
            E.STAGE_COMPLETED: self._nothing,
            E.STAGE_SKIPPED: self._nothing,
            E.APPROVAL_RECORDED: self._reminders,
            E.CHANGES_REQUESTED: self._changes_requested,
            E.APPROVAL_DELEGATED: self._delegated,
            E.WORKFLOW_ESCALATED: self._escalated,
            E.WORKFLOW_COMPLETED: self._completed,
            E.WORKFLOW_REJECTED: self._rejected,
            E.WORKFLOW_CANCELLED: self._cancelled,
            E.WORKFLOW_EXPIRED: self._expired,
        }
        missing = set(WorkflowEventType) - set(self._builders)
        if missing:
            raise RuntimeError(f"No notification builder for events: {sorted(m.value for m in missing)}")

    def generate(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return self._builders[event.type](event, request)

    def generate_all(self, events: Iterable[WorkflowEvent], request: ApprovalRequest) -> List[NotificationIntent]:
        """Best effort: a failing event is logged and skipped."""
        intents: List[NotificationIntent] = []
        for event in events:
            try:
                intents.extend(self.generate(event, request))
            except Exception as e:
                notification_logger.error(
                    "Notification generation failed",
                    error=e,
                    event_type=event.type.value,
                    request_id=request.id,
                )
        return intents

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _approval_url(self, request: ApprovalRequest) -> str:
        return self.settings.approval_url_template.format(request_id=request.id)

    def _content_url(self, request: ApprovalRequest) -> str:
        return self.settings.content_url_template.format(target_id=request.target_id)

    @staticmethod
    def _unique(recipients: Iterable[str]) -> List[str]:
        return [r for r in dict.fromkeys(recipients) if r]

    # ------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------

    def _nothing(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return []

    def _approval_required(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_REQUEST,
                recipient_id=recipient,
                title=f"Approval Required: {event.stage_name}",
                message=f'A {request.target_type} requires your approval in the "{event.stage_name}" stage.',
                action_url=self._approval_url(request),
                priority=request.priority,
                metadata={"request_id": request.id, "stage_id": event.stage_id, "workflow_id": request.workflow_id},
            )
            for recipient in self._unique(event.recipients)
        ]

    def _reminders(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_REMINDER,
                recipient_id=recipient,
                title="Approval Reminder",
                message=f'Your approval is still needed for a {request.target_type} in the "{event.stage_name}" stage.',
                action_url=self._approval_url(request),
                priority=Priority.MEDIUM,
                metadata={"request_id": request.id, "stage_id": event.stage_id},
            )
            for recipient in self._unique(event.recipients)
        ]

    def _changes_requested(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        message = f"Changes have been requested for your {request.target_type}."
        if event.comment:
            message = f"{message} {event.comment}"
        return [
            NotificationIntent(
                type=NotificationType.CHANGES_REQUESTED,
                recipient_id=request.requester_id,
                title="Changes Requested",
                message=message,
                action_url=self._content_url(request),
                priority=Priority.MEDIUM,
                metadata={"request_id": request.id, "requested_by": event.user_id, "comment": event.comment},
            )
        ]

    def _delegated(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_DELEGATED,
                recipient_id=recipient,
                title="Approval Delegated to You",
                message=f"An approval for {request.target_type} has been delegated to you by another team member.",
                action_url=self._approval_url(request),
                priority=Priority.MEDIUM,
                metadata={"request_id": request.id, "stage_id": event.stage_id, "delegated_by": event.user_id},
            )
            for recipient in self._unique(event.recipients)
        ]

    def _escalated(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_ESCALATED,
                recipient_id=recipient,
                title="Approval Escalated",
                message=f"An approval for {request.target_type} has been escalated and requires immediate attention.",
                action_url=self._approval_url(request),
                priority=Priority.URGENT,
                metadata={
                    "request_id": request.id,
                    "stage_id": event.stage_id,
                    "escalated_by": event.user_id,
                    "escalation_level": request.escalation_level,
                },
            )
            for recipient in self._unique(event.recipients)
        ]

    def _completed(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_COMPLETED,
                recipient_id=request.requester_id,
                title="Approval Complete",
                message=f"Your {request.target_type} has been fully approved and is ready for publication.",
                action_url=self._content_url(request),
                priority=Priority.HIGH,
                metadata={"request_id": request.id, "workflow_id": request.workflow_id},
            )
        ]

    def _rejected(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        message = f"Your {request.target_type} has been rejected."
        if event.comment:
            message = f"{message} {event.comment}"
        return [
            NotificationIntent(
                type=NotificationType.APPROVAL_REJECTED,
                recipient_id=request.requester_id,
                title="Approval Rejected",
                message=message,
                action_url=self._content_url(request),
                priority=Priority.HIGH,
                metadata={"request_id": request.id, "rejected_by": event.user_id, "comment": event.comment},
            )
        ]

    def _cancelled(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        recipients = list(event.recipients)
        if event.user_id != request.requester_id:
            recipients.append(request.requester_id)

        return [
            NotificationIntent(
                type=NotificationType.WORKFLOW_CANCELLED,
                recipient_id=recipient,
                title="Approval Cancelled",
                message=f"The approval workflow for a {request.target_type} was cancelled.",
                action_url=self._approval_url(request),
                priority=Priority.LOW,
                metadata={"request_id": request.id, "cancelled_by": event.user_id, "reason": event.comment},
            )
            for recipient in self._unique(recipients)
            if recipient != event.user_id
        ]

    def _expired(self, event: WorkflowEvent, request: ApprovalRequest) -> List[NotificationIntent]:
        return [
            NotificationIntent(
                type=NotificationType.WORKFLOW_EXPIRED,
                recipient_id=request.requester_id,
                title="Approval Expired",
                message=f"The approval for your {request.target_type} expired before it was completed.",
                action_url=self._content_url(request),
                priority=Priority.HIGH,
                metadata={"request_id": request.id, "reason": event.comment},
            )
        ]
