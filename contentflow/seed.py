"""
Demo data: a small marketing team and two approval workflows.

    python -m contentflow.seed
"""
from sqlalchemy.orm import Session

from .database import SessionLocal, init_db
from .models import (
    ApprovalActionRecord,
    ApprovalRequestRecord,
    ApprovalStageRecord,
    ApprovalWorkflowRecord,
    TeamMemberRecord,
)

DEMO_TEAM_ID = "team_marketing"


def seed_demo_data(session: Session) -> dict:
    """Replace existing demo rows and return the number of rows written per table."""
    session.query(ApprovalActionRecord).delete()
    session.query(ApprovalRequestRecord).delete()
    session.query(ApprovalStageRecord).delete()
    session.query(ApprovalWorkflowRecord).delete()
    session.query(TeamMemberRecord).delete()

    # Sample team
    members = [
        TeamMemberRecord(id="user_admin", email="admin@example.com", display_name="Avery Admin", role="admin", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_approver_1", email="approver1@example.com", display_name="Jordan Approver", role="approver", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_approver_2", email="approver2@example.com", display_name="Sam Approver", role="approver", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_reviewer", email="reviewer@example.com", display_name="Riley Reviewer", role="reviewer", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_publisher", email="publisher@example.com", display_name="Casey Publisher", role="publisher", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_creator", email="creator@example.com", display_name="Morgan Creator", role="creator", team_id=DEMO_TEAM_ID),
        TeamMemberRecord(id="user_former", email="former@example.com", display_name="Former Member", role="approver", team_id=DEMO_TEAM_ID, is_active=False),
    ]

    # Standard review: brand review then sign-off by two approvers
    standard = ApprovalWorkflowRecord(
        id="wf_standard_review",
        name="Standard Content Review",
        description="Brand review followed by final sign-off",
        team_id=DEMO_TEAM_ID,
        applicable_types=["campaign", "asset", "journey"],
        created_by="user_admin",
        stages=[
            ApprovalStageRecord(
                id="stage_brand_review",
                name="Brand Review",
                order=1,
                approvers_required=1,
                approver_roles=["reviewer", "admin"],
                timeout_hours=24,
            ),
            ApprovalStageRecord(
                id="stage_final_signoff",
                name="Final Sign-off",
                order=2,
                approvers_required=2,
                approvers=["user_approver_1", "user_approver_2", "user_admin"],
                timeout_hours=48,
                escalation_rules=[{"after_hours": 48, "escalate_to_roles": ["admin"], "escalate_to_users": []}],
            ),
        ],
    )

    # Budget-gated: legal review only for spend of 10,000 and above
    budget_gated = ApprovalWorkflowRecord(
        id="wf_budget_gated",
        name="Budget-Gated Campaign Approval",
        description="Adds legal review for high-budget campaigns",
        team_id=DEMO_TEAM_ID,
        applicable_types=["campaign"],
        created_by="user_admin",
        stages=[
            ApprovalStageRecord(
                id="stage_manager",
                name="Manager Approval",
                order=1,
                approver_roles=["approver"],
            ),
            ApprovalStageRecord(
                id="stage_legal",
                name="Legal Review",
                order=2,
                approvers=["user_admin"],
                skip_conditions=[{"type": "budget_threshold", "operator": "less_than", "value": 10000}],
            ),
            ApprovalStageRecord(
                id="stage_publish",
                name="Publishing",
                order=3,
                approver_roles=["publisher"],
            ),
        ],
    )

    session.add_all(members)
    session.add_all([standard, budget_gated])
    session.commit()

    return {
        "team_members": len(members),
        "workflows": 2,
        "stages": len(standard.stages) + len(budget_gated.stages),
    }


if __name__ == "__main__":
    init_db()
    db = SessionLocal()
    try:
        counts = seed_demo_data(db)
    finally:
        db.close()

    print("Seed data created successfully!")
    for table, count in counts.items():
        print(f"  - {count} {table.replace('_', ' ')}")
