"""
Pytest configuration and fixtures for ContentFlow tests.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from contentflow.config import Settings
from contentflow.database import Base, init_db
from contentflow.directory import SqlAlchemyDirectory
from contentflow.models import TeamMemberRecord
from contentflow.schemas import (
    ApprovalCondition,
    ApprovalStage,
    ApprovalWorkflow,
    ConditionOperator,
    ConditionType,
)
from contentflow.store import SqlAlchemyRecordStore
from contentflow.workflow import RoutingEngine, WorkflowExecutionEngine

TEAM_ID = "team_test"

# Use in-memory SQLite for tests with shared connection
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    init_db(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def settings():
    """Settings with the built-in routing rules switched off."""
    return Settings(load_default_routing_rules=False)


@pytest.fixture(scope="function")
def team(db):
    """A small team: one admin, two approvers, a reviewer, a publisher and a creator."""
    members = [
        TeamMemberRecord(id="user_admin", email="admin@example.com", display_name="Admin", role="admin", team_id=TEAM_ID),
        TeamMemberRecord(id="user_approver_1", email="a1@example.com", display_name="Approver One", role="approver", team_id=TEAM_ID),
        TeamMemberRecord(id="user_approver_2", email="a2@example.com", display_name="Approver Two", role="approver", team_id=TEAM_ID),
        TeamMemberRecord(id="user_reviewer", email="reviewer@example.com", display_name="Reviewer", role="reviewer", team_id=TEAM_ID),
        TeamMemberRecord(id="user_publisher", email="publisher@example.com", display_name="Publisher", role="publisher", team_id=TEAM_ID),
        TeamMemberRecord(id="user_creator", email="creator@example.com", display_name="Creator", role="creator", team_id=TEAM_ID),
    ]
    db.add_all(members)
    db.commit()
    return members


@pytest.fixture(scope="function")
def store(db):
    return SqlAlchemyRecordStore(TestingSessionLocal)


@pytest.fixture(scope="function")
def directory(db):
    return SqlAlchemyDirectory(TestingSessionLocal)


@pytest.fixture(scope="function")
def routing(settings):
    return RoutingEngine(rules=[], settings=settings)


@pytest.fixture(scope="function")
def workflow_engine(store, directory, routing, settings, team):
    return WorkflowExecutionEngine(store, directory, routing=routing, settings=settings)


@pytest.fixture(scope="function")
def two_stage_workflow(store):
    """Stage 1 needs one approval, stage 2 needs two."""
    return store.save_workflow(ApprovalWorkflow(
        id="wf_two_stage",
        name="Two Stage Review",
        team_id=TEAM_ID,
        stages=[
            ApprovalStage(id="stage_1", name="Editorial", order=1, approvers_required=1, approvers=["user_approver_1"]),
            ApprovalStage(
                id="stage_2",
                name="Final Sign-off",
                order=2,
                approvers_required=2,
                approvers=["user_approver_2", "user_admin"],
            ),
        ],
    ))


@pytest.fixture(scope="function")
def skip_workflow(store):
    """Stages A, B, C where B is skipped for budgets under 100."""
    return store.save_workflow(ApprovalWorkflow(
        id="wf_skip",
        name="Budget Gated",
        team_id=TEAM_ID,
        stages=[
            ApprovalStage(id="stage_a", name="A", order=1, approvers=["user_approver_1"]),
            ApprovalStage(
                id="stage_b",
                name="B",
                order=2,
                approvers=["user_admin"],
                skip_conditions=[ApprovalCondition(
                    type=ConditionType.BUDGET_THRESHOLD,
                    operator=ConditionOperator.LESS_THAN,
                    value=100,
                )],
            ),
            ApprovalStage(id="stage_c", name="C", order=3, approvers=["user_approver_2"]),
        ],
    ))


@pytest.fixture(scope="function")
def role_workflow(store):
    """Single stage open to anyone holding the reviewer role."""
    return store.save_workflow(ApprovalWorkflow(
        id="wf_roles",
        name="Reviewer Gate",
        team_id=TEAM_ID,
        stages=[ApprovalStage(id="stage_review", name="Review", order=1, approver_roles=["reviewer"])],
    ))


@pytest.fixture(scope="function")
def started_request(workflow_engine, two_stage_workflow):
    """A fresh request on the two-stage workflow, requested by the creator."""
    result = workflow_engine.start_workflow(
        workflow_id=two_stage_workflow.id,
        target_type="campaign",
        target_id="campaign_1",
        requester_id="user_creator",
    )
    assert result.ok, result.error
    return result.data.request
