"""
Tests for the SQLAlchemy record store, directory and demo seed.
"""
from datetime import datetime, timedelta, timezone

import pytest

from contentflow.models import TeamMemberRecord
from contentflow.responses import CONCURRENT_MODIFICATION, WORKFLOW_IN_USE, ConflictError, NotFoundError
from contentflow.schemas import (
    ActionType,
    ApprovalAction,
    ApprovalCondition,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    ConditionOperator,
    ConditionType,
    RequestMetadata,
    RequestStatus,
)
from contentflow.seed import seed_demo_data


def make_request(request_id="req_1", workflow_id="wf_two_stage", **fields):
    return ApprovalRequest(
        id=request_id,
        workflow_id=workflow_id,
        target_type="campaign",
        target_id="campaign_1",
        requester_id="user_creator",
        current_stage_id="stage_1",
        **fields,
    )


class TestWorkflowStorage:
    """Test saving and loading workflows."""

    def test_round_trip_orders_stages(self, store):
        """Test stages come back sorted by order."""
        store.save_workflow(ApprovalWorkflow(
            id="wf_order",
            name="Out of order",
            stages=[
                ApprovalStage(id="s3", name="Three", order=3),
                ApprovalStage(id="s1", name="One", order=1),
                ApprovalStage(id="s2", name="Two", order=2),
            ],
        ))

        loaded = store.load_workflow("wf_order")

        assert [s.id for s in loaded.stages] == ["s1", "s2", "s3"]

    def test_skip_conditions_survive_storage(self, store, skip_workflow):
        """Test conditions are stored as JSON and parsed back."""
        stage_b = store.load_workflow(skip_workflow.id).get_stage("stage_b")

        assert stage_b.skip_conditions == [ApprovalCondition(
            type=ConditionType.BUDGET_THRESHOLD,
            operator=ConditionOperator.LESS_THAN,
            value=100,
        )]

    def test_update_replaces_stages(self, store, two_stage_workflow):
        """Test saving a workflow again updates and drops stages."""
        updated = two_stage_workflow.model_copy(update={
            "name": "Renamed",
            "is_active": False,
            "stages": [two_stage_workflow.stages[0].model_copy(update={"name": "Copy Edit"})],
        })

        store.save_workflow(updated)
        loaded = store.load_workflow(two_stage_workflow.id)

        assert loaded.name == "Renamed"
        assert loaded.is_active is False
        assert [(s.id, s.name) for s in loaded.stages] == [("stage_1", "Copy Edit")]

    def test_referenced_workflow_is_immutable(self, store, two_stage_workflow):
        """Test stages of a workflow with requests cannot be replaced."""
        store.save_request(make_request())
        rewritten = two_stage_workflow.model_copy(update={
            "stages": [ApprovalStage(id="stage_x", name="Replacement", order=1, approvers=["user_admin"])],
        })

        with pytest.raises(ConflictError) as exc:
            store.save_workflow(rewritten)

        assert exc.value.error_code == WORKFLOW_IN_USE
        assert [s.id for s in store.load_workflow(two_stage_workflow.id).stages] == ["stage_1", "stage_2"]

    def test_referenced_workflow_rejects_stage_edits(self, store, two_stage_workflow):
        """Test editing a stage in place is refused too."""
        store.save_request(make_request())
        stages = [two_stage_workflow.stages[0].model_copy(update={"approvers_required": 3}), two_stage_workflow.stages[1]]

        with pytest.raises(ConflictError):
            store.save_workflow(two_stage_workflow.model_copy(update={"stages": stages}))

    def test_referenced_workflow_can_be_deactivated(self, store, two_stage_workflow):
        """Test is_active may still be toggled on a workflow in use."""
        store.save_request(make_request())

        saved = store.save_workflow(two_stage_workflow.model_copy(update={"is_active": False}))

        assert saved.is_active is False
        assert store.load_workflow(two_stage_workflow.id).is_active is False
        assert [s.id for s in saved.stages] == ["stage_1", "stage_2"]

    def test_missing_workflow(self, store):
        """Test an unknown id loads as None."""
        assert store.load_workflow("wf_missing") is None


class TestRequestStorage:
    """Test requests, actions and optimistic versioning."""

    def test_save_bumps_version(self, store, two_stage_workflow):
        """Test each write increments the stored version."""
        first = store.save_request(make_request())
        second = store.save_request(first.model_copy(update={"status": RequestStatus.IN_PROGRESS}))

        assert first.version == 1
        assert second.version == 2
        assert store.load_request("req_1").status == RequestStatus.IN_PROGRESS

    def test_stale_version_conflicts(self, store, two_stage_workflow):
        """Test writing from an outdated copy is refused."""
        saved = store.save_request(make_request())
        store.save_request(saved.model_copy(update={"current_stage_id": "stage_2"}))

        with pytest.raises(ConflictError) as exc:
            store.save_request(saved.model_copy(update={"status": RequestStatus.REJECTED}))

        assert exc.value.error_code == CONCURRENT_MODIFICATION
        assert store.load_request("req_1").current_stage_id == "stage_2"

    def test_actions_appended_in_order(self, store, two_stage_workflow):
        """Test actions saved with the request keep their order."""
        saved = store.save_request(make_request())
        actions = [
            ApprovalAction(id="act_1", request_id="req_1", stage_id="stage_1", approver_id="user_approver_1", action=ActionType.APPROVE),
            ApprovalAction(id="act_2", request_id="req_1", stage_id="stage_2", approver_id="user_admin", action=ActionType.REQUEST_CHANGES, comment="Tone"),
        ]

        store.save_request(saved, actions[:1])
        reloaded = store.load_request("req_1")
        store.save_request(reloaded, actions[1:])

        assert [a.id for a in store.load_request("req_1").approvals] == ["act_1", "act_2"]

    def test_metadata_round_trip(self, store, two_stage_workflow):
        """Test structured metadata is stored and parsed back."""
        store.save_request(make_request(metadata=RequestMetadata(budget=2500, contentType="brand")))

        loaded = store.load_request("req_1")

        assert loaded.metadata.budget == 2500
        assert loaded.metadata.content_type == "brand"

    def test_timestamps_are_utc(self, store, two_stage_workflow):
        """Test loaded timestamps carry UTC tzinfo."""
        store.save_request(make_request())

        assert store.load_request("req_1").created_at.tzinfo == timezone.utc

    def test_save_action_for_missing_request(self, store):
        """Test an action cannot be attached to an unknown request."""
        action = ApprovalAction(id="act_x", request_id="req_missing", approver_id="user_admin", action=ActionType.ESCALATE)

        with pytest.raises(NotFoundError):
            store.save_action(action)

    def test_save_action(self, store, two_stage_workflow):
        """Test a standalone action is appended to the request."""
        store.save_request(make_request())

        store.save_action(ApprovalAction(id="act_1", request_id="req_1", approver_id="user_admin", action=ActionType.ESCALATE))

        assert [a.action for a in store.load_request("req_1").approvals] == [ActionType.ESCALATE]

    def test_list_requests_by_time_range(self, store, two_stage_workflow):
        """Test listing filters by workflow and creation time."""
        now = datetime.now(timezone.utc)
        store.save_request(make_request("req_old", created_at=now - timedelta(days=10)))
        store.save_request(make_request("req_new", created_at=now - timedelta(hours=1)))

        everything = store.list_requests(two_stage_workflow.id)
        recent = store.list_requests(two_stage_workflow.id, start=now - timedelta(days=1), end=now)

        assert [r.id for r in everything] == ["req_old", "req_new"]
        assert [r.id for r in recent] == ["req_new"]
        assert store.list_requests("wf_other") == []


class TestDirectory:
    """Test role and team lookups."""

    def test_role_of(self, directory, team):
        """Test roles are read from team members."""
        assert directory.role_of("user_reviewer") == "reviewer"
        assert directory.role_of("user_nobody") is None

    def test_team_members_exclude_inactive(self, db, directory, team):
        """Test inactive members are never offered as approvers."""
        db.add(TeamMemberRecord(id="user_gone", role="approver", team_id="team_test", is_active=False))
        db.add(TeamMemberRecord(id="user_other", role="approver", team_id="team_other"))
        db.commit()

        scoped = [m.id for m in directory.team_members_of("team_test")]
        everyone = [m.id for m in directory.team_members_of(None)]

        assert "user_gone" not in scoped
        assert "user_other" not in scoped
        assert len(scoped) == len(team)
        assert "user_other" in everyone
        assert "user_gone" not in everyone


class TestSeed:
    """Test the demo seed."""

    def test_seed_counts(self, db):
        """Test the seed reports what it wrote."""
        counts = seed_demo_data(db)

        assert counts == {"team_members": 7, "workflows": 2, "stages": 5}

    def test_seed_is_repeatable(self, db, store):
        """Test seeding twice replaces rows rather than duplicating them."""
        seed_demo_data(db)
        seed_demo_data(db)

        workflow = store.load_workflow("wf_budget_gated")
        legal = workflow.get_stage("stage_legal")

        assert db.query(TeamMemberRecord).count() == 7
        assert legal.skip_conditions[0].type == ConditionType.BUDGET_THRESHOLD
