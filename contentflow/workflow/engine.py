"""
Workflow Execution Engine

Drives an approval request through the ordered stages of its workflow:
- Starting a workflow on a piece of content
- Recording approve / reject / request_changes / delegate / escalate decisions
- N-of-M stage quorum and conditional stage skipping
- Cancellation, and expiry driven by an external timeout sweep

Every call makes at most one write to the record store. Events and
notification intents are produced after that write succeeds; handler and
notification failures are logged and never undo it.
"""

import math
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError as SchemaValidationError

from ..config import Settings, get_settings
from ..directory import Directory
from ..logging_config import engine_logger, timed
from ..responses import (
    CANNOT_CANCEL_COMPLETED,
    DUPLICATE_APPROVAL,
    EMPTY_WORKFLOW,
    INVALID_ACTION,
    INVALID_INPUT,
    MISSING_DELEGATE_TARGET,
    REQUEST_TERMINAL,
    STAGE_NOT_FOUND,
    STALE_STAGE,
    WORKFLOW_INACTIVE,
    ConflictError,
    EngineError,
    EngineResult,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    failure,
    success,
)
from ..schemas.engine import WorkflowMetrics, WorkflowOutcome, WorkflowStatus
from ..schemas.notification import WorkflowEvent, WorkflowEventType
from ..schemas.routing import RoutingContext, RoutingDecision, TeamMember
from ..schemas.workflow import (
    ActionMetadata,
    ActionType,
    ApprovalAction,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    Priority,
    RequestMetadata,
    RequestStatus,
    utcnow,
)
from ..store import RecordStore
from .conditions import evaluate_any
from .notifications import NotificationIntentGenerator
from .routing import RoutingEngine

EventHandler = Callable[[WorkflowEvent], None]


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass
class _ActionContext:
    """Working state for a single process_approval_action call"""
    request: ApprovalRequest
    workflow: ApprovalWorkflow
    stage: ApprovalStage
    action: ApprovalAction
    team: List[TeamMember]
    events: List[WorkflowEvent] = field(default_factory=list)
    routing: Optional[RoutingDecision] = None


class WorkflowExecutionEngine:
    """
    Owns the ApprovalRequest lifecycle.

    Stateless between calls apart from subscribed event handlers. Writers of
    the same request inside this process are serialized by a per-request
    lock that only lives while a call holds or waits on it. Writers in
    other processes are caught by the record store's version check.
    """

    def __init__(
        self,
        store: RecordStore,
        directory: Directory,
        routing: Optional[RoutingEngine] = None,
        notifier: Optional[NotificationIntentGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.directory = directory
        self.routing = routing or RoutingEngine(settings=self.settings)
        self.notifier = notifier or NotificationIntentGenerator(self.settings)

        self._handlers: Dict[WorkflowEventType, List[EventHandler]] = defaultdict(list)
        self._locks: Dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

        self._action_handlers: Dict[ActionType, Callable[[_ActionContext], None]] = {
            ActionType.APPROVE: self._on_approve,
            ActionType.REJECT: self._on_reject,
            ActionType.REQUEST_CHANGES: self._on_request_changes,
            ActionType.DELEGATE: self._on_delegate,
            ActionType.ESCALATE: self._on_escalate,
            ActionType.CANCEL: self._on_cancel_action,
        }
        missing = set(ActionType) - set(self._action_handlers)
        if missing:
            raise RuntimeError(f"No handler for approval actions: {sorted(m.value for m in missing)}")

    # ============================================================
    # EVENTS
    # ============================================================

    def on(self, event_type: Union[WorkflowEventType, str], handler: EventHandler) -> None:
        """Subscribe a handler. Handlers run after the request is persisted."""
        self._handlers[WorkflowEventType(event_type)].append(handler)

    def _publish(self, events: List[WorkflowEvent]) -> None:
        for event in events:
            for handler in list(self._handlers.get(event.type, ())):
                try:
                    handler(event)
                except Exception as e:
                    engine_logger.error(
                        "Workflow event handler failed",
                        error=e,
                        event_type=event.type.value,
                        request_id=event.request_id,
                    )

    def _finish(
        self,
        request: ApprovalRequest,
        events: List[WorkflowEvent],
        action: Optional[ApprovalAction] = None,
        routing: Optional[RoutingDecision] = None,
    ) -> EngineResult:
        notifications = self.notifier.generate_all(events, request)
        self._publish(events)
        return success(WorkflowOutcome(
            request=request,
            action=action,
            events=events,
            notifications=notifications,
            routing=routing,
        ))

    # ============================================================
    # START
    # ============================================================

    @timed(engine_logger)
    def start_workflow(
        self,
        workflow_id: str,
        target_type: str,
        target_id: str,
        requester_id: str,
        notes: Optional[str] = None,
        due_date: Optional[datetime] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
        metadata: Union[RequestMetadata, Dict[str, Any], None] = None,
    ) -> EngineResult:
        """
        Create an approval request positioned at the workflow's first stage.

        The first stage is entered unconditionally; skip conditions only
        apply to stages reached by advancing.
        """
        try:
            workflow = self._load_workflow(workflow_id)
            if not workflow.is_active:
                raise ValidationError(f"Workflow '{workflow_id}' is not active", WORKFLOW_INACTIVE)

            stages = workflow.ordered_stages()
            if not stages:
                raise ValidationError(f"Workflow '{workflow_id}' has no stages", EMPTY_WORKFLOW)

            first_stage = stages[0]
            now = utcnow()
            try:
                request = ApprovalRequest(
                    id=f"req_{uuid.uuid4().hex}",
                    workflow_id=workflow.id,
                    target_type=target_type,
                    target_id=target_id,
                    requester_id=requester_id,
                    current_stage_id=first_stage.id,
                    status=RequestStatus.PENDING,
                    priority=priority,
                    notes=notes,
                    due_date=due_date,
                    metadata=metadata if metadata is not None else RequestMetadata(),
                    created_at=now,
                    updated_at=now,
                )
            except SchemaValidationError as e:
                raise ValidationError("Invalid approval request", INVALID_INPUT, {"errors": e.errors(include_url=False)})

            team = self._team(workflow)
            decision, recipients = self._route_stage(request, first_stage, workflow, team)
            saved = self.store.save_request(request)
        except EngineError as e:
            return failure(e)

        engine_logger.info(
            "Workflow started",
            request_id=saved.id,
            workflow_id=workflow.id,
            stage_id=first_stage.id,
            requester_id=requester_id,
        )
        events = [self._event(
            WorkflowEventType.WORKFLOW_STARTED,
            saved,
            first_stage,
            user_id=requester_id,
            recipients=recipients,
        )]
        return self._finish(saved, events, routing=decision)

    # ============================================================
    # APPROVAL ACTIONS
    # ============================================================

    @timed(engine_logger)
    def process_approval_action(
        self,
        request_id: str,
        stage_id: str,
        approver_id: str,
        action: Union[ActionType, str],
        comment: Optional[str] = None,
        metadata: Union[ActionMetadata, Dict[str, Any], None] = None,
    ) -> EngineResult:
        """
        Apply one approver decision to the request's current stage.

        Checks run in order: request exists, request is not terminal, stage
        exists in the workflow, stage is the current one, approver is
        authorized. The first failing check decides the error.
        """
        try:
            action_type = self._action_type(action)
            action_metadata = self._action_metadata(metadata)

            with self._request_lock(request_id):
                ctx = self._prepare_action(
                    request_id, stage_id, approver_id, action_type, comment, action_metadata
                )
                self._action_handlers[action_type](ctx)

                ctx.request.updated_at = ctx.action.created_at
                saved = self.store.save_request(ctx.request, [ctx.action])
        except EngineError as e:
            return failure(e)

        engine_logger.info(
            "Approval action recorded",
            request_id=request_id,
            stage_id=stage_id,
            approver_id=approver_id,
            action=action_type.value,
            status=saved.status.value,
            current_stage_id=saved.current_stage_id,
        )
        return self._finish(saved, ctx.events, action=ctx.action, routing=ctx.routing)

    def _prepare_action(
        self,
        request_id: str,
        stage_id: str,
        approver_id: str,
        action_type: ActionType,
        comment: Optional[str],
        metadata: ActionMetadata,
    ) -> _ActionContext:
        request = self._load_request(request_id)
        if request.is_terminal:
            raise ConflictError(
                f"Approval request is {request.status.value} and accepts no further actions",
                REQUEST_TERMINAL,
                {"request_id": request.id, "status": request.status.value},
            )

        workflow = self._load_workflow(request.workflow_id)
        stage = workflow.get_stage(stage_id)
        if stage is None:
            raise NotFoundError("Approval stage", stage_id, STAGE_NOT_FOUND)

        if stage.id != request.current_stage_id:
            raise ConflictError(
                f"Stage '{stage_id}' is not the current stage of the request",
                STALE_STAGE,
                {"request_id": request.id, "stage_id": stage_id, "current_stage_id": request.current_stage_id},
            )

        self._authorize(stage, approver_id)

        if action_type == ActionType.APPROVE and approver_id in request.stage_approvers(stage.id):
            raise ConflictError(
                f"User '{approver_id}' already approved stage '{stage.name}'",
                DUPLICATE_APPROVAL,
                {"request_id": request.id, "stage_id": stage.id, "approver_id": approver_id},
            )

        record = ApprovalAction(
            id=f"action_{uuid.uuid4().hex}",
            request_id=request.id,
            stage_id=stage.id,
            approver_id=approver_id,
            action=action_type,
            comment=comment,
            metadata=metadata,
        )
        request.approvals = [*request.approvals, record]

        return _ActionContext(
            request=request,
            workflow=workflow,
            stage=stage,
            action=record,
            team=self._team(workflow),
        )

    def _authorize(self, stage: ApprovalStage, approver_id: str) -> None:
        if approver_id in stage.approvers:
            return

        if stage.approver_roles and self.directory.role_of(approver_id) in stage.approver_roles:
            return

        raise ForbiddenError(
            f"User '{approver_id}' is not an approver for stage '{stage.name}'",
            stage.approver_roles,
        )

    # ------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------

    def _on_approve(self, ctx: _ActionContext) -> None:
        request, stage = ctx.request, ctx.stage
        approved = request.stage_approvers(stage.id)
        required = ctx.workflow.required_approvals(stage)

        if len(approved) < required:
            if request.status == RequestStatus.PENDING:
                request.status = RequestStatus.IN_PROGRESS

            _, recipients = self._stage_recipients(request, stage, ctx.workflow, ctx.team)
            ctx.events.append(self._event(
                WorkflowEventType.APPROVAL_RECORDED,
                request,
                stage,
                user_id=ctx.action.approver_id,
                recipients=[r for r in recipients if r not in approved],
                metadata={"approvals": len(approved), "required": required},
            ))
            return

        ctx.events.append(self._event(
            WorkflowEventType.STAGE_COMPLETED,
            request,
            stage,
            user_id=ctx.action.approver_id,
            metadata={"approvals": len(approved), "required": required},
        ))

        next_stage, skipped = self._resolve_next_stage(request, ctx.workflow, stage, ctx.team)
        for skipped_stage in skipped:
            ctx.events.append(self._event(WorkflowEventType.STAGE_SKIPPED, request, skipped_stage))

        if next_stage is None:
            request.status = RequestStatus.APPROVED
            request.current_stage_id = None
            request.completed_at = ctx.action.created_at
            ctx.events.append(self._event(
                WorkflowEventType.WORKFLOW_COMPLETED,
                request,
                user_id=ctx.action.approver_id,
            ))
            return

        request.current_stage_id = next_stage.id
        request.status = RequestStatus.IN_PROGRESS
        ctx.routing, recipients = self._route_stage(request, next_stage, ctx.workflow, ctx.team)
        ctx.events.append(self._event(
            WorkflowEventType.STAGE_ENTERED,
            request,
            next_stage,
            user_id=ctx.action.approver_id,
            recipients=recipients,
        ))

    def _on_reject(self, ctx: _ActionContext) -> None:
        ctx.request.status = RequestStatus.REJECTED
        ctx.request.current_stage_id = None
        ctx.request.completed_at = ctx.action.created_at
        ctx.events.append(self._event(
            WorkflowEventType.WORKFLOW_REJECTED,
            ctx.request,
            ctx.stage,
            user_id=ctx.action.approver_id,
            comment=ctx.action.comment,
        ))

    def _on_request_changes(self, ctx: _ActionContext) -> None:
        ctx.events.append(self._event(
            WorkflowEventType.CHANGES_REQUESTED,
            ctx.request,
            ctx.stage,
            user_id=ctx.action.approver_id,
            recipients=[ctx.request.requester_id],
            comment=ctx.action.comment,
        ))

    def _on_delegate(self, ctx: _ActionContext) -> None:
        # Advisory only: the delegate still needs stage authorization of their own
        delegate_to = ctx.action.metadata.delegate_to_id
        if not delegate_to:
            raise ValidationError(
                "Delegation requires metadata.delegate_to_id",
                MISSING_DELEGATE_TARGET,
                {"request_id": ctx.request.id, "stage_id": ctx.stage.id},
            )

        ctx.events.append(self._event(
            WorkflowEventType.APPROVAL_DELEGATED,
            ctx.request,
            ctx.stage,
            user_id=ctx.action.approver_id,
            recipients=[delegate_to],
            comment=ctx.action.comment,
            metadata={"delegate_to_id": delegate_to},
        ))

    def _on_escalate(self, ctx: _ActionContext) -> None:
        request = ctx.request
        request.status = RequestStatus.ESCALATED
        request.escalation_level += 1
        request.escalated_at = ctx.action.created_at

        ctx.events.append(self._event(
            WorkflowEventType.WORKFLOW_ESCALATED,
            request,
            ctx.stage,
            user_id=ctx.action.approver_id,
            recipients=self._escalation_recipients(ctx.stage, request.escalation_level, ctx.team),
            comment=ctx.action.comment,
            metadata={"escalation_level": request.escalation_level},
        ))

    def _on_cancel_action(self, ctx: _ActionContext) -> None:
        raise ValidationError(
            "Cancellation goes through cancel_workflow, not an approval action",
            INVALID_ACTION,
            {"action": ActionType.CANCEL.value},
        )

    # ============================================================
    # CANCEL / EXPIRE
    # ============================================================

    @timed(engine_logger)
    def cancel_workflow(self, request_id: str, user_id: str, reason: Optional[str] = None) -> EngineResult:
        """Close an open request as cancelled, recording a synthetic cancel action."""
        try:
            with self._request_lock(request_id):
                request = self._load_request(request_id)
                if request.status == RequestStatus.APPROVED:
                    raise ConflictError(
                        "Cannot cancel a completed approval request",
                        CANNOT_CANCEL_COMPLETED,
                        {"request_id": request.id},
                    )
                if request.is_terminal:
                    raise ConflictError(
                        f"Approval request is already {request.status.value}",
                        REQUEST_TERMINAL,
                        {"request_id": request.id, "status": request.status.value},
                    )

                workflow = self.store.load_workflow(request.workflow_id)
                stage = workflow.get_stage(request.current_stage_id) if workflow else None

                record = ApprovalAction(
                    id=f"action_{uuid.uuid4().hex}",
                    request_id=request.id,
                    stage_id=request.current_stage_id,
                    approver_id=user_id,
                    action=ActionType.CANCEL,
                    comment=reason,
                )
                request.approvals = [*request.approvals, record]
                request.status = RequestStatus.CANCELLED
                request.current_stage_id = None
                request.completed_at = record.created_at
                request.updated_at = record.created_at

                saved = self.store.save_request(request, [record])
        except EngineError as e:
            return failure(e)

        engine_logger.info("Workflow cancelled", request_id=request_id, user_id=user_id, reason=reason)
        events = [self._event(
            WorkflowEventType.WORKFLOW_CANCELLED,
            saved,
            stage,
            user_id=user_id,
            recipients=list(stage.approvers) if stage else [],
            comment=reason,
        )]
        return self._finish(saved, events, action=record)

    @timed(engine_logger)
    def expire_workflow(self, request_id: str, reason: Optional[str] = None) -> EngineResult:
        """
        Mark an open request expired.

        Called by the external timeout sweep; the engine has no timer of its own.
        """
        try:
            with self._request_lock(request_id):
                request = self._load_request(request_id)
                if request.is_terminal:
                    raise ConflictError(
                        f"Approval request is already {request.status.value}",
                        REQUEST_TERMINAL,
                        {"request_id": request.id, "status": request.status.value},
                    )

                stage_id = request.current_stage_id
                now = utcnow()
                request.status = RequestStatus.EXPIRED
                request.current_stage_id = None
                request.completed_at = now
                request.updated_at = now

                saved = self.store.save_request(request)
        except EngineError as e:
            return failure(e)

        engine_logger.info("Workflow expired", request_id=request_id, stage_id=stage_id, reason=reason)
        events = [WorkflowEvent(
            type=WorkflowEventType.WORKFLOW_EXPIRED,
            request_id=saved.id,
            stage_id=stage_id,
            comment=reason,
        )]
        return self._finish(saved, events)

    # ============================================================
    # QUERIES
    # ============================================================

    def get_workflow_status(self, request_id: str) -> EngineResult:
        """
        Current stage, stages before and after it, and percent progress.

        Without a current stage (terminal requests included) every stage is
        pending and progress is 0; callers read the outcome from request.status.
        """
        try:
            request = self._load_request(request_id)
            workflow = self._load_workflow(request.workflow_id)
        except EngineError as e:
            return failure(e)

        stages = workflow.ordered_stages()
        status = WorkflowStatus(request=request, workflow=workflow)

        current = workflow.get_stage(request.current_stage_id)
        if current is None or not stages:
            status.pending_stages = stages
            return success(status)

        index = stages.index(current)
        status.current_stage = current
        status.completed_stages = stages[:index]
        status.pending_stages = stages[index + 1:]
        status.progress = _percent(len(status.completed_stages), len(stages))
        return success(status)

    def get_workflow_metrics(
        self,
        workflow_id: str,
        time_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> EngineResult:
        try:
            self._load_workflow(workflow_id)
        except EngineError as e:
            return failure(e)

        start, end = time_range if time_range else (None, None)
        requests = self.store.list_requests(workflow_id, start, end)

        metrics = WorkflowMetrics(workflow_id=workflow_id, total_requests=len(requests))
        if not requests:
            return success(metrics)

        total = len(requests)
        approved = [r for r in requests if r.status == RequestStatus.APPROVED]
        metrics.completed_requests = len(approved)
        metrics.rejected_requests = sum(1 for r in requests if r.status == RequestStatus.REJECTED)

        durations = [
            (r.completed_at - r.created_at).total_seconds() / 3600
            for r in requests
            if r.completed_at and r.created_at
        ]
        if durations:
            metrics.average_completion_time = round(sum(durations) / len(durations), 2)

        metrics.approval_rate = round(len(approved) / total * 100, 2)
        metrics.escalation_rate = round(sum(1 for r in requests if r.escalation_level > 0) / total * 100, 2)
        metrics.timeout_rate = round(sum(1 for r in requests if r.status == RequestStatus.EXPIRED) / total * 100, 2)
        return success(metrics)

    # ============================================================
    # STAGE RESOLUTION AND ROUTING
    # ============================================================

    def _resolve_next_stage(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        current: ApprovalStage,
        team: List[TeamMember],
    ) -> Tuple[Optional[ApprovalStage], List[ApprovalStage]]:
        """
        The stage after `current` whose skip conditions do not hold.

        Returns the stage (None when the workflow is finished) and the stages
        skipped on the way. Looks at each later stage at most once.
        """
        stages = workflow.ordered_stages()
        index = next(i for i, s in enumerate(stages) if s.id == current.id)
        subject = self.routing.condition_subject(
            request,
            self.directory.role_of(request.requester_id),
            [m.id for m in team],
        )

        skipped: List[ApprovalStage] = []
        for candidate in stages[index + 1:]:
            if candidate.skip_conditions and evaluate_any(candidate.skip_conditions, subject):
                skipped.append(candidate)
                continue
            return candidate, skipped
        return None, skipped

    def _route_stage(
        self,
        request: ApprovalRequest,
        stage: ApprovalStage,
        workflow: ApprovalWorkflow,
        team: List[TeamMember],
    ) -> Tuple[RoutingDecision, List[str]]:
        """Routing decision for entering a stage and the approvers to notify"""
        context = RoutingContext(
            request=request,
            stage=stage,
            workflow=workflow,
            requester=self.directory.member(request.requester_id),
            team_members=team,
            urgency_level=request.priority,
        )
        decision = self.routing.route_approval(context)
        if decision.should_route:
            return decision, list(decision.target_approvers)
        return decision, list(stage.approvers)

    def _stage_recipients(
        self,
        request: ApprovalRequest,
        stage: ApprovalStage,
        workflow: ApprovalWorkflow,
        team: List[TeamMember],
    ) -> Tuple[Optional[RoutingDecision], List[str]]:
        if stage.approvers:
            return None, list(stage.approvers)
        return self._route_stage(request, stage, workflow, team)

    def _escalation_recipients(self, stage: ApprovalStage, level: int, team: List[TeamMember]) -> List[str]:
        """Escalation rule for the level (the last rule repeats), else the configured roles"""
        if stage.escalation_rules:
            rule = stage.escalation_rules[min(level, len(stage.escalation_rules)) - 1]
            recipients = list(rule.escalate_to_users)
            recipients += self.routing.escalation_targets(rule.escalate_to_roles, team)
        else:
            recipients = self.routing.escalation_targets(self.settings.escalation_roles, team)
        return list(dict.fromkeys(recipients))

    # ============================================================
    # HELPERS
    # ============================================================

    @contextmanager
    def _request_lock(self, request_id: str) -> Iterator[None]:
        """Hold the request's lock; the entry is dropped once nobody holds or waits on it."""
        with self._locks_guard:
            entry = self._locks.get(request_id)
            if entry is None:
                entry = self._locks[request_id] = _LockEntry()
            entry.users += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[request_id]

    def _load_request(self, request_id: str) -> ApprovalRequest:
        request = self.store.load_request(request_id)
        if request is None:
            raise NotFoundError("Approval request", request_id)
        return request

    def _load_workflow(self, workflow_id: str) -> ApprovalWorkflow:
        workflow = self.store.load_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    def _team(self, workflow: ApprovalWorkflow) -> List[TeamMember]:
        return self.directory.team_members_of(workflow.team_id)

    @staticmethod
    def _action_type(action: Union[ActionType, str]) -> ActionType:
        try:
            return ActionType(action)
        except ValueError:
            raise ValidationError(
                f"Unknown approval action '{action}'",
                INVALID_ACTION,
                {"action": str(action), "allowed": [a.value for a in ActionType]},
            )

    @staticmethod
    def _action_metadata(metadata: Union[ActionMetadata, Dict[str, Any], None]) -> ActionMetadata:
        if metadata is None:
            return ActionMetadata()
        if isinstance(metadata, ActionMetadata):
            return metadata
        try:
            return ActionMetadata.model_validate(metadata)
        except SchemaValidationError as e:
            raise ValidationError("Invalid action metadata", INVALID_INPUT, {"errors": e.errors(include_url=False)})

    @staticmethod
    def _event(
        event_type: WorkflowEventType,
        request: ApprovalRequest,
        stage: Optional[ApprovalStage] = None,
        **fields,
    ) -> WorkflowEvent:
        return WorkflowEvent(
            type=event_type,
            request_id=request.id,
            stage_id=stage.id if stage else None,
            stage_name=stage.name if stage else None,
            **fields,
        )


def _percent(part: int, whole: int) -> int:
    """Percentage rounded half up"""
    if whole <= 0:
        return 0
    return int(math.floor(part / whole * 100 + 0.5))
