"""
Workflow definition models for multi-stage content approval.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class ApprovalWorkflowRecord(Base):
    __tablename__ = "approval_workflows"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    team_id = Column(String(64), nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    allow_parallel_stages = Column(Boolean, default=False)
    require_all_approvers = Column(Boolean, default=False)
    auto_start = Column(Boolean, default=False)
    default_timeout_hours = Column(Integer, default=72)
    applicable_types = Column(JSON, default=list)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    stages = relationship(
        "ApprovalStageRecord",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="ApprovalStageRecord.order",
    )


class ApprovalStageRecord(Base):
    __tablename__ = "approval_stages"

    id = Column(String(64), primary_key=True, index=True)
    workflow_id = Column(String(64), ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False)
    approvers_required = Column(Integer, default=1, nullable=False)
    approvers = Column(JSON, default=list)  # explicit user ids
    approver_roles = Column(JSON, default=list)
    skip_conditions = Column(JSON, default=list)
    timeout_hours = Column(Integer, nullable=True)
    escalation_rules = Column(JSON, default=list)

    # Relationships
    workflow = relationship("ApprovalWorkflowRecord", back_populates="stages")
