"""
Record store for workflows, requests and actions.

The engine only depends on the RecordStore protocol. SqlAlchemyRecordStore is
the bundled implementation on top of the ORM models.
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from .database import SessionLocal
from .logging_config import store_logger
from .models.request import ApprovalActionRecord, ApprovalRequestRecord
from .models.workflow import ApprovalStageRecord, ApprovalWorkflowRecord
from .responses import CONCURRENT_MODIFICATION, WORKFLOW_IN_USE, ConflictError, NotFoundError
from .schemas.workflow import (
    ActionMetadata,
    ApprovalAction,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    RequestMetadata,
)


class RecordStore(Protocol):
    def load_workflow(self, workflow_id: str) -> Optional[ApprovalWorkflow]: ...

    def save_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow: ...

    def load_request(self, request_id: str) -> Optional[ApprovalRequest]: ...

    def save_request(
        self, request: ApprovalRequest, actions: Iterable[ApprovalAction] = ()
    ) -> ApprovalRequest: ...

    def save_action(self, action: ApprovalAction) -> ApprovalAction: ...

    def list_requests(
        self,
        workflow_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ApprovalRequest]: ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every timestamp the engine stores is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _definition(workflow: ApprovalWorkflow) -> dict:
    """Everything that may not change once requests reference a workflow"""
    data = workflow.model_dump(mode="json", exclude={"is_active", "created_at", "stages"})
    data["stages"] = [s.model_dump(mode="json") for s in workflow.ordered_stages()]
    return data


# ============================================================
# ROW <-> SCHEMA CONVERSION
# ============================================================

def stage_to_schema(row: ApprovalStageRecord) -> ApprovalStage:
    return ApprovalStage(
        id=row.id,
        name=row.name,
        description=row.description,
        order=row.order,
        approvers_required=row.approvers_required,
        approvers=row.approvers or [],
        approver_roles=row.approver_roles or [],
        skip_conditions=row.skip_conditions or [],
        timeout_hours=row.timeout_hours,
        escalation_rules=row.escalation_rules or [],
    )


def workflow_to_schema(row: ApprovalWorkflowRecord) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        id=row.id,
        name=row.name,
        description=row.description,
        version=row.version,
        team_id=row.team_id,
        is_active=row.is_active,
        allow_parallel_stages=row.allow_parallel_stages,
        require_all_approvers=row.require_all_approvers,
        auto_start=row.auto_start,
        default_timeout_hours=row.default_timeout_hours,
        applicable_types=row.applicable_types or [],
        stages=[stage_to_schema(s) for s in row.stages],
        created_by=row.created_by,
        created_at=_aware(row.created_at),
    )


def action_to_schema(row: ApprovalActionRecord) -> ApprovalAction:
    return ApprovalAction(
        id=row.id,
        request_id=row.request_id,
        stage_id=row.stage_id,
        approver_id=row.approver_id,
        action=row.action,
        comment=row.comment,
        metadata=ActionMetadata.model_validate(row.meta or {}),
        created_at=_aware(row.created_at),
    )


def request_to_schema(row: ApprovalRequestRecord) -> ApprovalRequest:
    return ApprovalRequest(
        id=row.id,
        workflow_id=row.workflow_id,
        target_type=row.target_type,
        target_id=row.target_id,
        requester_id=row.requester_id,
        current_stage_id=row.current_stage_id,
        status=row.status,
        priority=row.priority,
        approvals=[action_to_schema(a) for a in row.actions],
        notes=row.notes,
        due_date=_aware(row.due_date),
        escalation_level=row.escalation_level or 0,
        metadata=RequestMetadata.model_validate(row.meta or {}),
        version=row.version,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        completed_at=_aware(row.completed_at),
        escalated_at=_aware(row.escalated_at),
    )


class SqlAlchemyRecordStore:
    """
    RecordStore backed by SQLAlchemy.

    save_request is the single write of an engine call: it checks the stored
    version against the one the caller loaded, applies the request
    changes and appends new actions in one transaction.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    # ------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------

    def load_workflow(self, workflow_id: str) -> Optional[ApprovalWorkflow]:
        with self._session_factory() as session:
            row = session.get(ApprovalWorkflowRecord, workflow_id)
            return workflow_to_schema(row) if row else None

    def save_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        """
        Insert or update a workflow definition.

        Raises:
            ConflictError: requests reference the workflow and the change is
                more than an is_active toggle
        """
        with self._session_factory() as session:
            row = session.get(ApprovalWorkflowRecord, workflow.id)
            if row is not None and self._in_use(session, row.id):
                if _definition(workflow_to_schema(row)) != _definition(workflow):
                    session.rollback()
                    raise ConflictError(
                        "Workflow is referenced by approval requests; only is_active may change",
                        WORKFLOW_IN_USE,
                        {"workflow_id": workflow.id},
                    )
                row.is_active = workflow.is_active
                session.commit()
                session.refresh(row)
                store_logger.info("Toggled workflow", workflow_id=row.id, is_active=row.is_active)
                return workflow_to_schema(row)

            if row is None:
                row = ApprovalWorkflowRecord(id=workflow.id, created_at=workflow.created_at)
                session.add(row)

            row.name = workflow.name
            row.description = workflow.description
            row.version = workflow.version
            row.team_id = workflow.team_id
            row.is_active = workflow.is_active
            row.allow_parallel_stages = workflow.allow_parallel_stages
            row.require_all_approvers = workflow.require_all_approvers
            row.auto_start = workflow.auto_start
            row.default_timeout_hours = workflow.default_timeout_hours
            row.applicable_types = list(workflow.applicable_types)
            row.created_by = workflow.created_by
            existing = {s.id: s for s in row.stages}
            stage_rows = []
            for stage in workflow.stages:
                stage_row = existing.get(stage.id) or ApprovalStageRecord(id=stage.id)
                stage_row.name = stage.name
                stage_row.description = stage.description
                stage_row.order = stage.order
                stage_row.approvers_required = stage.approvers_required
                stage_row.approvers = list(stage.approvers)
                stage_row.approver_roles = list(stage.approver_roles)
                stage_row.skip_conditions = [c.model_dump(mode="json") for c in stage.skip_conditions]
                stage_row.timeout_hours = stage.timeout_hours
                stage_row.escalation_rules = [r.model_dump(mode="json") for r in stage.escalation_rules]
                stage_rows.append(stage_row)
            row.stages = stage_rows

            session.commit()
            session.refresh(row)
            store_logger.info("Saved workflow", workflow_id=row.id, stages=len(row.stages))
            return workflow_to_schema(row)

    # ------------------------------------------------------------
    # Requests and actions
    # ------------------------------------------------------------

    def load_request(self, request_id: str) -> Optional[ApprovalRequest]:
        with self._session_factory() as session:
            row = session.get(ApprovalRequestRecord, request_id)
            return request_to_schema(row) if row else None

    def save_request(
        self, request: ApprovalRequest, actions: Iterable[ApprovalAction] = ()
    ) -> ApprovalRequest:
        """
        Insert or update a request, appending new actions in the same transaction.

        Raises:
            ConflictError: the stored request changed since the caller loaded it
        """
        with self._session_factory() as session:
            row = (
                session.query(ApprovalRequestRecord)
                .filter(ApprovalRequestRecord.id == request.id)
                .with_for_update()
                .first()
            )

            if row is None:
                row = ApprovalRequestRecord(
                    id=request.id,
                    workflow_id=request.workflow_id,
                    target_type=request.target_type,
                    target_id=request.target_id,
                    requester_id=request.requester_id,
                    created_at=request.created_at,
                    version=0,
                )
                session.add(row)
            elif row.version != request.version:
                session.rollback()
                raise ConflictError(
                    "Approval request was modified by another writer",
                    CONCURRENT_MODIFICATION,
                    {"request_id": request.id, "expected_version": request.version, "stored_version": row.version},
                )

            row.current_stage_id = request.current_stage_id
            row.status = request.status.value
            row.priority = request.priority.value
            row.notes = request.notes
            row.due_date = request.due_date
            row.escalation_level = request.escalation_level
            row.meta = request.metadata.model_dump(mode="json")
            row.updated_at = request.updated_at
            row.completed_at = request.completed_at
            row.escalated_at = request.escalated_at
            row.version = request.version + 1

            sequence = len(row.actions)
            for action in actions:
                session.add(self._action_row(action, sequence))
                sequence += 1

            session.commit()
            session.refresh(row)
            return request_to_schema(row)

    def save_action(self, action: ApprovalAction) -> ApprovalAction:
        with self._session_factory() as session:
            request_row = session.get(ApprovalRequestRecord, action.request_id)
            if request_row is None:
                raise NotFoundError("Approval request", action.request_id)

            row = self._action_row(action, len(request_row.actions))
            session.add(row)
            session.commit()
            session.refresh(row)
            return action_to_schema(row)

    def list_requests(
        self,
        workflow_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ApprovalRequest]:
        with self._session_factory() as session:
            query = session.query(ApprovalRequestRecord).filter(
                ApprovalRequestRecord.workflow_id == workflow_id
            )
            if start:
                query = query.filter(ApprovalRequestRecord.created_at >= start)
            if end:
                query = query.filter(ApprovalRequestRecord.created_at <= end)

            rows = query.order_by(ApprovalRequestRecord.created_at.asc()).all()
            return [request_to_schema(r) for r in rows]

    @staticmethod
    def _in_use(session, workflow_id: str) -> bool:
        return session.query(
            session.query(ApprovalRequestRecord)
            .filter(ApprovalRequestRecord.workflow_id == workflow_id)
            .exists()
        ).scalar()

    @staticmethod
    def _action_row(action: ApprovalAction, sequence: int) -> ApprovalActionRecord:
        return ApprovalActionRecord(
            id=action.id,
            sequence=sequence,
            request_id=action.request_id,
            stage_id=action.stage_id,
            approver_id=action.approver_id,
            action=action.action.value,
            comment=action.comment,
            meta=action.metadata.model_dump(mode="json"),
            created_at=action.created_at,
        )
