"""
Identity and role lookup for approvers and requesters.
"""
from typing import List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from .database import SessionLocal
from .models.team_member import TeamMemberRecord
from .schemas.routing import TeamMember


class Directory(Protocol):
    def role_of(self, user_id: str) -> Optional[str]: ...

    def member(self, user_id: str) -> Optional[TeamMember]: ...

    def team_members_of(self, scope: Optional[str]) -> List[TeamMember]: ...


class SqlAlchemyDirectory:
    """Directory backed by the team_members table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def member(self, user_id: str) -> Optional[TeamMember]:
        with self._session_factory() as session:
            row = session.get(TeamMemberRecord, user_id)
            return TeamMember.model_validate(row) if row else None

    def role_of(self, user_id: str) -> Optional[str]:
        member = self.member(user_id)
        return member.role if member else None

    def team_members_of(self, scope: Optional[str]) -> List[TeamMember]:
        """Active members of a team, or every active member when scope is None."""
        with self._session_factory() as session:
            query = session.query(TeamMemberRecord).filter(TeamMemberRecord.is_active.is_(True))
            if scope:
                query = query.filter(TeamMemberRecord.team_id == scope)
            rows = query.order_by(TeamMemberRecord.id.asc()).all()
            return [TeamMember.model_validate(r) for r in rows]
