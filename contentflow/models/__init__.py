from .workflow import ApprovalWorkflowRecord, ApprovalStageRecord
from .request import ApprovalRequestRecord, ApprovalActionRecord
from .team_member import TeamMemberRecord

__all__ = [
    "ApprovalWorkflowRecord",
    "ApprovalStageRecord",
    "ApprovalRequestRecord",
    "ApprovalActionRecord",
    "TeamMemberRecord",
]
