"""
Content State Machine

Editorial lifecycle of a single piece of content:
- Declarative transition table (state, action) -> next state
- Role requirements per transition
- Mandatory comments for rejections and revision requests

Validation only. Persisting the new state is the caller's job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ..logging_config import get_logger
from ..responses import FORBIDDEN, INVALID_ACTION, MISSING_COMMENT

logger = get_logger("state_machine")


class ContentState(str, Enum):
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    REVIEWING = "REVIEWING"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ContentApprovalStatus(str, Enum):
    """Approval-status side label attached to a transition"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"


@dataclass(frozen=True)
class TransitionRule:
    from_state: ContentState
    action: str
    to_state: ContentState
    requires_role: Optional[FrozenSet[str]] = None
    requires_comment: bool = False
    approval_status: Optional[ContentApprovalStatus] = None


_REVIEWERS = frozenset({"approver", "admin"})
_PUBLISHERS = frozenset({"publisher", "admin"})
_ADMINS = frozenset({"admin"})

S = ContentState
A = ContentApprovalStatus

TRANSITION_TABLE: List[TransitionRule] = [
    TransitionRule(S.DRAFT, "submit_for_review", S.REVIEWING, approval_status=A.PENDING),
    TransitionRule(S.DRAFT, "archive", S.ARCHIVED),
    TransitionRule(S.GENERATED, "submit_for_review", S.REVIEWING, approval_status=A.PENDING),
    TransitionRule(S.GENERATED, "revert_to_draft", S.DRAFT),
    TransitionRule(S.GENERATED, "archive", S.ARCHIVED),
    TransitionRule(S.REVIEWING, "approve", S.APPROVED, _REVIEWERS, approval_status=A.APPROVED),
    TransitionRule(S.REVIEWING, "reject", S.DRAFT, _REVIEWERS, True, A.REJECTED),
    TransitionRule(S.REVIEWING, "request_revision", S.DRAFT, _REVIEWERS, True, A.CHANGES_REQUESTED),
    TransitionRule(S.APPROVED, "publish", S.PUBLISHED, _PUBLISHERS, approval_status=A.APPROVED),
    TransitionRule(S.APPROVED, "revert_to_draft", S.REVIEWING, _ADMINS, approval_status=A.PENDING),
    TransitionRule(S.APPROVED, "archive", S.ARCHIVED, _ADMINS),
    TransitionRule(S.PUBLISHED, "archive", S.ARCHIVED, _ADMINS),
    TransitionRule(S.ARCHIVED, "revert_to_draft", S.DRAFT, _ADMINS),
]

del S, A


STATE_INFO: Dict[ContentState, Dict[str, str]] = {
    ContentState.DRAFT: {"label": "Draft", "color": "gray", "description": "Content is being written or edited"},
    ContentState.GENERATING: {"label": "Generating", "color": "purple", "description": "Content is being generated"},
    ContentState.GENERATED: {"label": "Generated", "color": "indigo", "description": "Generated content awaits editing or review"},
    ContentState.REVIEWING: {"label": "In Review", "color": "yellow", "description": "Content is awaiting approval"},
    ContentState.APPROVED: {"label": "Approved", "color": "green", "description": "Content is approved and ready to publish"},
    ContentState.PUBLISHED: {"label": "Published", "color": "blue", "description": "Content is live"},
    ContentState.ARCHIVED: {"label": "Archived", "color": "slate", "description": "Content is retired"},
}

APPROVAL_STATUS_INFO: Dict[ContentApprovalStatus, Dict[str, str]] = {
    ContentApprovalStatus.PENDING: {"label": "Pending Review", "color": "yellow", "description": "Waiting for a reviewer"},
    ContentApprovalStatus.APPROVED: {"label": "Approved", "color": "green", "description": "Approved by a reviewer"},
    ContentApprovalStatus.REJECTED: {"label": "Rejected", "color": "red", "description": "Rejected by a reviewer"},
    ContentApprovalStatus.CHANGES_REQUESTED: {"label": "Changes Requested", "color": "orange", "description": "Reviewer asked for a revision"},
}


def _state_value(state) -> str:
    return state.value if isinstance(state, ContentState) else str(state)


@dataclass
class TransitionContext:
    """Who is asking, and with what comment"""
    content_id: Optional[str] = None
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class TransitionResult:
    success: bool
    from_state: str
    action: str
    new_state: Optional[ContentState] = None
    approval_status: Optional[ContentApprovalStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    requires_permission: List[str] = field(default_factory=list)
    transitioned_at: Optional[datetime] = None


class ContentStateMachine:
    """
    Validates and executes single-entity content transitions.

    The table is static; a machine can be built over a custom table for tests
    or alternative editorial processes.
    """

    def __init__(self, transitions: Optional[List[TransitionRule]] = None):
        self.transitions = list(transitions if transitions is not None else TRANSITION_TABLE)

    def transitions_from(self, state) -> List[TransitionRule]:
        state = _state_value(state)
        return [t for t in self.transitions if t.from_state.value == state]

    def can_transition(
        self,
        from_state: ContentState,
        action: str,
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """
        Check whether an action is allowed from a state.

        Args:
            from_state: Current content state
            action: Requested action name (e.g. "approve")
            context: Caller role and comment

        Returns:
            TransitionResult with the next state on success, or an error code
        """
        from_state = _state_value(from_state)
        context = context or TransitionContext()

        rule = next((t for t in self.transitions_from(from_state) if t.action == action), None)
        if rule is None:
            return TransitionResult(
                success=False,
                from_state=from_state,
                action=action,
                error=f"Action '{action}' is not valid for state '{from_state}'",
                error_code=INVALID_ACTION,
            )

        if rule.requires_role:
            acceptable = sorted(rule.requires_role)
            if context.user_role is None:
                return TransitionResult(
                    success=False,
                    from_state=from_state,
                    action=action,
                    error=f"Action '{action}' requires one of roles {acceptable} and the caller role is unknown",
                    error_code=FORBIDDEN,
                    requires_permission=acceptable,
                )
            if context.user_role not in rule.requires_role:
                return TransitionResult(
                    success=False,
                    from_state=from_state,
                    action=action,
                    error=f"Role '{context.user_role}' does not have permission to {action}; requires one of {acceptable}",
                    error_code=FORBIDDEN,
                    requires_permission=acceptable,
                )

        if rule.requires_comment and not context.comment:
            return TransitionResult(
                success=False,
                from_state=from_state,
                action=action,
                error=f"Action '{action}' requires a comment",
                error_code=MISSING_COMMENT,
            )

        return TransitionResult(
            success=True,
            from_state=from_state,
            action=action,
            new_state=rule.to_state,
            approval_status=rule.approval_status,
        )

    def execute_transition(
        self,
        from_state: ContentState,
        action: str,
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Validate then apply. Returns the result stamped with the transition time."""
        result = self.can_transition(from_state, action, context)
        if not result.success:
            logger.warning(
                "Content transition refused",
                from_state=result.from_state,
                action=action,
                error_code=result.error_code,
                content_id=context.content_id if context else None,
            )
            return result

        result.transitioned_at = datetime.now(timezone.utc)
        logger.info(
            "Content transition",
            from_state=result.from_state,
            to_state=result.new_state.value,
            action=action,
            content_id=context.content_id if context else None,
            user_id=context.user_id if context else None,
        )
        return result

    def get_available_actions(self, state: ContentState, role: Optional[str] = None) -> List[str]:
        """Actions the caller may take from a state. Without a role only unrestricted ones."""
        actions = []
        for rule in self.transitions_from(state):
            if rule.requires_role and (role is None or role not in rule.requires_role):
                continue
            actions.append(rule.action)
        return actions

    def get_state_info(self, state: ContentState) -> Dict[str, str]:
        return dict(STATE_INFO[ContentState(state)])

    def get_approval_status_info(self, status: ContentApprovalStatus) -> Dict[str, str]:
        return dict(APPROVAL_STATUS_INFO[ContentApprovalStatus(status)])

    def get_workflow_diagram(self) -> Dict[str, List[Dict]]:
        """States and transitions for rendering the lifecycle graph"""
        states = [
            {"id": state.value, **STATE_INFO[state]}
            for state in ContentState
        ]
        transitions = [
            {
                "from": t.from_state.value,
                "to": t.to_state.value,
                "action": t.action,
                "roles": sorted(t.requires_role) if t.requires_role else [],
                "requires_comment": t.requires_comment,
            }
            for t in self.transitions
        ]
        return {"states": states, "transitions": transitions}
