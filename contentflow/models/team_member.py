"""
Team member model used for role lookup and approver routing.
"""
from sqlalchemy import Column, String, DateTime, Boolean
from datetime import datetime, timezone
from ..database import Base


class TeamMemberRecord(Base):
    __tablename__ = "team_members"

    id = Column(String(64), primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    display_name = Column(String(100))
    role = Column(String(20), nullable=False, default="viewer")  # admin, approver, reviewer, publisher, creator, viewer
    team_id = Column(String(64), nullable=True, index=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
