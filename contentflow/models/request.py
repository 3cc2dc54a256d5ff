"""
Approval request and action models.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class ApprovalRequestRecord(Base):
    __tablename__ = "approval_requests"

    id = Column(String(64), primary_key=True, index=True)
    workflow_id = Column(String(64), ForeignKey("approval_workflows.id"), nullable=False, index=True)
    target_type = Column(String(50), nullable=False)  # campaign, journey, asset, brand, content
    target_id = Column(String(64), nullable=False, index=True)
    requester_id = Column(String(64), nullable=False, index=True)
    current_stage_id = Column(String(64), nullable=True)  # null once terminal
    status = Column(String(20), default="pending", index=True)  # pending, in_progress, approved, rejected, escalated, cancelled, expired
    priority = Column(String(20), default="medium")
    notes = Column(Text, nullable=True)
    due_date = Column(DateTime, nullable=True)
    escalation_level = Column(Integer, default=0)
    meta = Column("metadata", JSON, default=dict)
    version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    completed_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    # Relationships
    actions = relationship(
        "ApprovalActionRecord",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ApprovalActionRecord.sequence",
    )


class ApprovalActionRecord(Base):
    __tablename__ = "approval_actions"

    id = Column(String(64), primary_key=True, index=True)
    sequence = Column(Integer, nullable=False)  # position within the request, append-only
    request_id = Column(String(64), ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String(64), nullable=True)
    approver_id = Column(String(64), nullable=False, index=True)
    action = Column(String(20), nullable=False)  # approve, reject, request_changes, delegate, escalate, cancel
    comment = Column(Text, nullable=True)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    request = relationship("ApprovalRequestRecord", back_populates="actions")
