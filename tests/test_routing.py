"""
Tests for the approval routing engine.
"""
import pytest

from contentflow.config import Settings
from contentflow.responses import INVALID_RULE, NOT_FOUND, ROUTING_FALLBACK
from contentflow.schemas import (
    ApprovalCondition,
    ApprovalRequest,
    ApprovalStage,
    ApprovalWorkflow,
    ApproverMetrics,
    AssignToRoleAction,
    AssignToUserAction,
    Availability,
    ConditionOperator,
    ConditionType,
    EscalateAction,
    LoadBalanceAction,
    ParallelRouteAction,
    Priority,
    RoutingContext,
    RoutingRule,
    TeamMember,
)
from contentflow.workflow import ApproverMetricsCache, RoutingEngine, default_routing_rules

TEAM = [
    TeamMember(id="admin_1", role="admin"),
    TeamMember(id="admin_2", role="admin"),
    TeamMember(id="approver_1", role="approver"),
    TeamMember(id="approver_2", role="approver"),
    TeamMember(id="reviewer_1", role="reviewer"),
    TeamMember(id="creator_1", role="creator"),
]


def metrics(user_id, hours=24.0, rate=0.85, workload=0, expertise=("general",), availability=Availability.AVAILABLE):
    return ApproverMetrics(
        user_id=user_id,
        average_response_time=hours,
        approval_rate=rate,
        current_workload=workload,
        expertise_areas=list(expertise),
        availability=availability,
    )


def make_context(stage=None, request=None, workflow=None, team=TEAM, requester=None):
    stage = stage or ApprovalStage(id="s1", name="Review", order=1, approvers=["approver_1"])
    request = request or ApprovalRequest(
        id="req_1",
        workflow_id="wf_1",
        target_type="campaign",
        target_id="campaign_1",
        requester_id="creator_1",
        current_stage_id=stage.id,
    )
    return RoutingContext(
        request=request,
        stage=stage,
        workflow=workflow,
        requester=requester,
        team_members=list(team),
        urgency_level=request.priority,
    )


def rule(name, actions, priority=10, conditions=(), is_active=True):
    return RoutingRule(
        id=f"rule_{name}",
        name=name,
        priority=priority,
        conditions=list(conditions),
        actions=list(actions),
        is_active=is_active,
    )


@pytest.fixture
def cache():
    return ApproverMetricsCache()


@pytest.fixture
def settings():
    return Settings(load_default_routing_rules=False)


class TestRanking:
    """Test approver ranking and estimates."""

    def test_faster_approver_ranks_first(self, cache, settings):
        """Test equal approval rates rank by response time."""
        cache.set(metrics("approver_1", hours=20, rate=0.9))
        cache.set(metrics("approver_2", hours=10, rate=0.9))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers=["approver_1", "approver_2"])

        decision = engine.route_approval(make_context(stage))

        assert decision.target_approvers == ["approver_2", "approver_1"]

    def test_offline_approvers_are_dropped(self, cache, settings):
        """Test offline approvers never receive the routing."""
        cache.set(metrics("approver_1", availability=Availability.OFFLINE))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers=["approver_1", "approver_2"])

        decision = engine.route_approval(make_context(stage))

        assert decision.target_approvers == ["approver_2"]

    def test_unknown_approvers_sort_last(self, cache, settings):
        """Test approvers without metrics are kept but ranked last."""
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers=["outsider", "approver_1"])

        decision = engine.route_approval(make_context(stage))

        assert decision.target_approvers == ["approver_1", "outsider"]

    def test_parallel_estimate_is_slowest_approver(self, cache, settings):
        """Test a one-approval stage waits on the slowest candidate."""
        cache.set(metrics("approver_1", hours=10))
        cache.set(metrics("approver_2", hours=30))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers_required=1, approvers=["approver_1", "approver_2"])

        assert engine.route_approval(make_context(stage)).estimated_time == 30

    def test_sequential_estimate_is_sum(self, cache, settings):
        """Test a stage needing both approvals adds their times."""
        cache.set(metrics("approver_1", hours=10))
        cache.set(metrics("approver_2", hours=30))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers_required=2, approvers=["approver_1", "approver_2"])

        assert engine.route_approval(make_context(stage)).estimated_time == 40

    def test_parallel_workflow_uses_max(self, cache, settings):
        """Test workflow-level parallel stages also take the max."""
        cache.set(metrics("approver_1", hours=10))
        cache.set(metrics("approver_2", hours=30))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers_required=2, approvers=["approver_1", "approver_2"])
        workflow = ApprovalWorkflow(id="wf_1", name="Parallel", allow_parallel_stages=True, stages=[stage])

        assert engine.route_approval(make_context(stage, workflow=workflow)).estimated_time == 30

    def test_no_approvers(self, settings):
        """Test an empty selection routes nowhere with the fallback estimate."""
        engine = RoutingEngine(rules=[], settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approver_roles=["publisher"])

        decision = engine.route_approval(make_context(stage))

        assert decision.should_route is False
        assert decision.target_approvers == []
        assert decision.estimated_time == 48
        assert decision.confidence == 0.0


class TestConfidence:
    """Test the confidence score."""

    def test_full_confidence(self, cache, settings):
        """Test available experts give full confidence."""
        cache.set(metrics("approver_1", expertise=["campaign"]))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)

        assert engine.route_approval(make_context()).confidence == pytest.approx(1.0)

    def test_partial_confidence(self, cache, settings):
        """Test busy non-experts lower confidence."""
        cache.set(metrics("approver_1", expertise=["brand"]))
        cache.set(metrics("approver_2", expertise=["brand"], availability=Availability.BUSY))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers=["approver_1", "approver_2"])

        assert engine.route_approval(make_context(stage)).confidence == pytest.approx(0.65)


class TestRuleApplication:
    """Test routing rule matching and actions."""

    def test_no_matching_rule_falls_back_to_stage_approvers(self, settings):
        """Test the static approver list is used when no rule applies."""
        engine = RoutingEngine(rules=[], settings=settings)

        decision = engine.route_approval(make_context())

        assert decision.target_approvers == ["approver_1"]
        assert decision.used_fallback is True
        assert decision.warning_code == ROUTING_FALLBACK

    def test_fallback_to_default_roles(self, settings):
        """Test a stage without approvers or roles uses reviewers and approvers."""
        engine = RoutingEngine(rules=[], settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1)

        decision = engine.route_approval(make_context(stage))

        assert sorted(decision.target_approvers) == ["approver_1", "approver_2", "reviewer_1"]

    def test_rules_accumulate_and_deduplicate(self, settings):
        """Test every matching rule contributes, in priority order."""
        engine = RoutingEngine(rules=[
            rule("second", [AssignToUserAction(user_ids=["admin_1", "approver_1"])], priority=20),
            rule("first", [AssignToUserAction(user_ids=["approver_1"])], priority=10),
        ], settings=settings)

        decision = engine.route_approval(make_context())

        assert sorted(decision.target_approvers) == ["admin_1", "approver_1"]
        assert decision.used_fallback is False
        applied = [line for line in decision.reasoning if line.startswith("Applied rule")]
        assert applied == ["Applied rule: first", "Applied rule: second"]

    def test_inactive_rules_are_ignored(self, settings):
        """Test an inactive rule never contributes."""
        engine = RoutingEngine(rules=[
            rule("off", [AssignToUserAction(user_ids=["admin_1"])], is_active=False),
        ], settings=settings)

        assert engine.route_approval(make_context()).target_approvers == ["approver_1"]

    def test_all_conditions_must_hold(self, settings):
        """Test rule conditions are combined with AND."""
        conditions = [
            ApprovalCondition(type=ConditionType.CUSTOM, value="urgent"),
            ApprovalCondition(type=ConditionType.CONTENT_TYPE, value="brand"),
        ]
        engine = RoutingEngine(rules=[
            rule("urgent_brand", [AssignToUserAction(user_ids=["admin_1"])], conditions=conditions),
        ], settings=settings)
        urgent_campaign = ApprovalRequest(
            id="req_1", workflow_id="wf_1", target_type="campaign", target_id="c1",
            requester_id="creator_1", priority=Priority.URGENT,
        )

        decision = engine.route_approval(make_context(request=urgent_campaign))

        assert decision.target_approvers == ["approver_1"]

    def test_urgent_token_matches_urgent_requests(self, settings):
        """Test the custom urgent token."""
        engine = RoutingEngine(rules=[
            rule("urgent", [EscalateAction(roles=["admin"])], conditions=[
                ApprovalCondition(type=ConditionType.CUSTOM, value="urgent"),
            ]),
        ], settings=settings)
        urgent = ApprovalRequest(
            id="req_1", workflow_id="wf_1", target_type="campaign", target_id="c1",
            requester_id="creator_1", priority=Priority.URGENT,
        )

        decision = engine.route_approval(make_context(request=urgent))

        assert sorted(decision.target_approvers) == ["admin_1", "admin_2"]

    def test_assign_to_role_with_expertise(self, cache, settings):
        """Test expertise filtering keeps members who know the content type."""
        cache.set(metrics("approver_1", expertise=["campaign"]))
        cache.set(metrics("approver_2", expertise=["brand"]))
        engine = RoutingEngine(rules=[
            rule("experts", [AssignToRoleAction(roles=["approver"], expertise_required=True)]),
        ], cache=cache, settings=settings)
        request = ApprovalRequest(
            id="req_1", workflow_id="wf_1", target_type="asset", target_id="a1",
            requester_id="creator_1", metadata={"content_type": "brand"},
        )

        decision = engine.route_approval(make_context(request=request))

        assert decision.target_approvers == ["approver_2"]

    def test_load_balance_excludes_members_at_cap(self, cache, settings):
        """Test members at or above the workload cap are never picked."""
        cache.set(metrics("approver_1", workload=4))
        cache.set(metrics("approver_2", workload=3))
        cache.set(metrics("reviewer_1", workload=1))
        engine = RoutingEngine(rules=[
            rule("balance", [LoadBalanceAction(roles=["approver", "reviewer"], max_workload=3)]),
        ], cache=cache, settings=settings)

        assert engine.route_approval(make_context()).target_approvers == ["reviewer_1"]

    def test_load_balance_picks_single_lowest(self, cache, settings):
        """Test load balancing selects exactly one member."""
        cache.set(metrics("approver_1", workload=2))
        cache.set(metrics("approver_2", workload=1))
        cache.set(metrics("reviewer_1", workload=5))
        engine = RoutingEngine(rules=[
            rule("balance", [LoadBalanceAction(roles=["approver", "reviewer"], max_workload=10)]),
        ], cache=cache, settings=settings)

        assert engine.route_approval(make_context()).target_approvers == ["approver_2"]

    def test_load_balance_with_everyone_at_cap(self, cache, settings):
        """Test a matching rule that selects nobody yields no route."""
        cache.set(metrics("approver_1", workload=10))
        cache.set(metrics("approver_2", workload=12))
        engine = RoutingEngine(rules=[
            rule("balance", [LoadBalanceAction(roles=["approver"], max_workload=10)]),
        ], cache=cache, settings=settings)

        decision = engine.route_approval(make_context())

        assert decision.should_route is False
        assert decision.target_approvers == []

    def test_load_balance_cap_defaults_to_settings(self, cache):
        """Test an action without a cap uses the configured default."""
        cache.set(metrics("approver_1", workload=1))
        cache.set(metrics("approver_2", workload=3))
        engine = RoutingEngine(
            rules=[rule("balance", [LoadBalanceAction(roles=["approver"])])],
            cache=cache,
            settings=Settings(load_default_routing_rules=False, default_max_workload=2),
        )

        decision = engine.route_approval(make_context())

        assert decision.target_approvers == ["approver_1"]
        assert "Selected approver(s) with lowest workload (max: 2)" in decision.reasoning

    def test_parallel_route_takes_available_members(self, cache, settings):
        """Test parallel routing skips unavailable members."""
        cache.set(metrics("admin_1", availability=Availability.AWAY))
        engine = RoutingEngine(rules=[
            rule("parallel", [ParallelRouteAction(roles=["admin", "approver"], min_approvers=2)]),
        ], cache=cache, settings=settings)

        decision = engine.route_approval(make_context())

        assert sorted(decision.target_approvers) == ["admin_2", "approver_1"]

    def test_escalate_selects_whole_role(self, cache, settings):
        """Test escalation does not filter by availability or workload."""
        cache.set(metrics("admin_1", availability=Availability.BUSY, workload=50))
        engine = RoutingEngine(rules=[rule("escalate", [EscalateAction(roles=["admin"])])], cache=cache, settings=settings)

        assert sorted(engine.route_approval(make_context()).target_approvers) == ["admin_1", "admin_2"]

    def test_requester_role_condition(self, settings):
        """Test user_role conditions look at the requester."""
        engine = RoutingEngine(rules=[
            rule("creators", [AssignToUserAction(user_ids=["reviewer_1"])], conditions=[
                ApprovalCondition(type=ConditionType.USER_ROLE, value="creator"),
            ]),
        ], settings=settings)

        with_creator = engine.route_approval(make_context(requester=TeamMember(id="creator_1", role="creator")))
        without = engine.route_approval(make_context())

        assert with_creator.target_approvers == ["reviewer_1"]
        assert without.target_approvers == ["approver_1"]


class TestRoutingFailures:
    """Test routing never raises."""

    def test_action_failure_uses_fallback(self, settings):
        """Test an exception inside routing degrades to the static approvers."""
        engine = RoutingEngine(rules=[rule("users", [AssignToUserAction(user_ids=["admin_1"])])], settings=settings)

        def explode(action, context):
            raise RuntimeError("metrics backend unavailable")

        engine._action_handlers[AssignToUserAction] = explode

        decision = engine.route_approval(make_context())

        assert decision.target_approvers == ["approver_1"]
        assert decision.confidence == 0.5
        assert decision.used_fallback is True
        assert decision.reasoning == ["Used fallback routing due to error"]

    def test_metrics_source_failure_uses_defaults(self, cache, settings):
        """Test a failing metrics feed seeds default metrics instead."""
        class BrokenSource:
            def fetch(self, member):
                raise ConnectionError("feed down")

        engine = RoutingEngine(rules=[], metrics_source=BrokenSource(), cache=cache, settings=settings)

        decision = engine.route_approval(make_context())

        assert decision.target_approvers == ["approver_1"]
        seeded = cache.get("approver_1")
        assert seeded.average_response_time == settings.default_response_time_hours
        assert seeded.approval_rate == settings.default_approval_rate

    def test_metrics_source_values_are_cached(self, cache, settings):
        """Test metrics from the feed are used for ranking."""
        class Source:
            def fetch(self, member):
                hours = 5 if member.id == "approver_2" else 50
                return metrics(member.id, hours=hours)

        engine = RoutingEngine(rules=[], metrics_source=Source(), cache=cache, settings=settings)
        stage = ApprovalStage(id="s1", name="Review", order=1, approvers=["approver_1", "approver_2"])

        assert engine.route_approval(make_context(stage)).target_approvers == ["approver_2", "approver_1"]

    def test_cached_metrics_are_not_refetched(self, cache, settings):
        """Test refresh only seeds members missing from the cache."""
        calls = []

        class Source:
            def fetch(self, member):
                calls.append(member.id)
                return None

        engine = RoutingEngine(rules=[], metrics_source=Source(), cache=cache, settings=settings)
        engine.route_approval(make_context())
        engine.route_approval(make_context())

        assert sorted(calls) == sorted(m.id for m in TEAM)


class TestRuleManagement:
    """Test routing rule CRUD."""

    def test_add_rule_from_dict(self, settings):
        """Test a rule can be added from plain data."""
        engine = RoutingEngine(rules=[], settings=settings)

        result = engine.add_routing_rule({
            "name": "Brand to reviewers",
            "priority": 5,
            "conditions": [{"type": "content_type", "operator": "equals", "value": "brand"}],
            "actions": [{"type": "assign_to_role", "roles": ["reviewer"]}],
        })

        assert result.ok
        assert result.data.id.startswith("rule_")
        assert isinstance(result.data.actions[0], AssignToRoleAction)

    def test_add_invalid_rule(self, settings):
        """Test an unknown action type is refused."""
        engine = RoutingEngine(rules=[], settings=settings)

        result = engine.add_routing_rule({"name": "Bad", "actions": [{"type": "assign_to_moon"}]})

        assert result.error_code == INVALID_RULE
        assert engine.get_routing_rules().data == []

    def test_update_rule(self, settings):
        """Test updating a rule keeps its id."""
        engine = RoutingEngine(rules=[rule("a", [], priority=10)], settings=settings)

        result = engine.update_routing_rule("rule_a", {"priority": 1, "is_active": False})

        assert result.ok
        assert result.data.id == "rule_a"
        assert result.data.priority == 1
        assert result.data.is_active is False

    def test_update_rule_with_invalid_data(self, settings):
        """Test an invalid update leaves the rule unchanged."""
        engine = RoutingEngine(rules=[rule("a", [], priority=10)], settings=settings)

        result = engine.update_routing_rule("rule_a", {"priority": "soon"})

        assert result.error_code == INVALID_RULE
        assert engine.get_routing_rules().data[0].priority == 10

    def test_update_unknown_rule(self, settings):
        """Test updating a rule that does not exist."""
        engine = RoutingEngine(rules=[], settings=settings)

        assert engine.update_routing_rule("rule_missing", {"priority": 1}).error_code == NOT_FOUND

    def test_delete_rule(self, settings):
        """Test deleting a rule."""
        engine = RoutingEngine(rules=[rule("a", []), rule("b", [])], settings=settings)

        assert engine.delete_routing_rule("rule_a").ok
        assert [r.id for r in engine.get_routing_rules().data] == ["rule_b"]
        assert engine.delete_routing_rule("rule_a").error_code == NOT_FOUND

    def test_rules_listed_by_priority(self, settings):
        """Test rules come back lowest priority value first."""
        engine = RoutingEngine(rules=[rule("late", [], priority=50), rule("early", [], priority=1)], settings=settings)

        assert [r.name for r in engine.get_routing_rules().data] == ["early", "late"]

    def test_default_rules_loaded_from_settings(self):
        """Test the built-in rules are installed when configured."""
        engine = RoutingEngine(settings=Settings(load_default_routing_rules=True))

        ids = [r.id for r in engine.get_routing_rules().data]
        assert ids == [r.id for r in default_routing_rules()]
        assert ids[0] == "urgent_escalation"

    def test_default_high_value_rule(self):
        """Test the built-in parallel rule fires above the budget threshold."""
        engine = RoutingEngine(settings=Settings(load_default_routing_rules=True))
        request = ApprovalRequest(
            id="req_1", workflow_id="wf_1", target_type="campaign", target_id="c1",
            requester_id="creator_1", metadata={"budget": 50000},
        )

        decision = engine.route_approval(make_context(request=request))

        assert sorted(decision.target_approvers) == ["admin_1", "admin_2"]
        assert "Applied rule: Parallel Approval for High Value" in decision.reasoning


class TestApproverMetrics:
    """Test approver metrics access."""

    def test_get_single_metrics(self, cache, settings):
        """Test fetching one approver's metrics."""
        cache.set(metrics("approver_1", hours=7))
        engine = RoutingEngine(rules=[], cache=cache, settings=settings)

        assert engine.get_approver_metrics("approver_1").data.average_response_time == 7

    def test_get_unknown_metrics(self, settings):
        """Test metrics for an unknown approver."""
        engine = RoutingEngine(rules=[], settings=settings)

        assert engine.get_approver_metrics("nobody").error_code == NOT_FOUND

    def test_get_all_metrics_after_routing(self, settings):
        """Test routing seeds metrics for the whole team."""
        engine = RoutingEngine(rules=[], settings=settings)
        engine.route_approval(make_context())

        assert len(engine.get_approver_metrics().data) == len(TEAM)

    def test_cache_returns_copies(self, cache):
        """Test callers cannot mutate cached entries."""
        cache.set(metrics("approver_1", workload=1))

        cache.get("approver_1").current_workload = 99

        assert cache.get("approver_1").current_workload == 1
