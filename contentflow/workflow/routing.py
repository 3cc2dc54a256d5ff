"""
Approval Routing Engine

Chooses who is responsible for a stage:
- Priority-ordered routing rules (conditions -> actions), all matches accumulate
- Static stage approvers / role defaults when no rule matches
- Ranking by responsiveness and approval rate, offline approvers dropped
- Turnaround estimate and a confidence score for the selection

Routing never raises to the caller. Any failure degrades to the static
approver list.
"""

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union, get_args

from pydantic import ValidationError as SchemaValidationError

from ..config import Settings, get_settings
from ..logging_config import routing_logger, timed
from ..responses import (
    INVALID_RULE,
    EngineError,
    EngineResult,
    NotFoundError,
    RoutingFallbackWarning,
    ValidationError,
    failure,
    success,
)
from ..schemas.routing import (
    ApproverMetrics,
    AssignToRoleAction,
    AssignToUserAction,
    Availability,
    EscalateAction,
    LoadBalanceAction,
    ParallelRouteAction,
    RoutingAction,
    RoutingContext,
    RoutingDecision,
    RoutingRule,
    RoutingRuleCreate,
    TeamMember,
)
from ..schemas.workflow import (
    ApprovalCondition,
    ApprovalRequest,
    ConditionOperator,
    ConditionType,
)
from .conditions import ConditionSubject, evaluate_all
from .metrics_cache import ApproverMetricsCache, MetricsSource, default_metrics

# (approver ids, reasoning lines)
ActionOutcome = Tuple[List[str], List[str]]


def default_routing_rules() -> List[RoutingRule]:
    """Rules installed on a fresh engine when load_default_routing_rules is set"""
    return [
        RoutingRule(
            id="urgent_escalation",
            name="Urgent Request Escalation",
            description="Route urgent requests to senior approvers",
            priority=1,
            conditions=[ApprovalCondition(type=ConditionType.CUSTOM, operator=ConditionOperator.EQUALS, value="urgent")],
            actions=[AssignToRoleAction(roles=["admin", "approver"])],
        ),
        RoutingRule(
            id="workload_balancing",
            name="Workload Load Balancing",
            description="Distribute approvals based on current workload",
            priority=2,
            conditions=[ApprovalCondition(type=ConditionType.CUSTOM, operator=ConditionOperator.EQUALS, value="high_workload")],
            actions=[LoadBalanceAction()],
        ),
        RoutingRule(
            id="expertise_routing",
            name="Expertise-Based Routing",
            description="Route to approvers with relevant expertise",
            priority=3,
            conditions=[ApprovalCondition(type=ConditionType.CONTENT_TYPE, operator=ConditionOperator.EQUALS, value="brand")],
            actions=[AssignToRoleAction(roles=["reviewer"], expertise_required=True)],
        ),
        RoutingRule(
            id="parallel_high_value",
            name="Parallel Approval for High Value",
            description="Route high-value content to multiple approvers simultaneously",
            priority=4,
            conditions=[ApprovalCondition(type=ConditionType.BUDGET_THRESHOLD, operator=ConditionOperator.GREATER_THAN, value=10000)],
            actions=[ParallelRouteAction(min_approvers=2, roles=["admin"])],
        ),
    ]


class RoutingEngine:
    """
    Rule-based approver selection.

    Owns its routing rules and its ApproverMetricsCache. Both are safe to use
    from concurrent routing calls.
    """

    def __init__(
        self,
        rules: Optional[List[RoutingRule]] = None,
        metrics_source: Optional[MetricsSource] = None,
        cache: Optional[ApproverMetricsCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else ApproverMetricsCache()
        self.metrics_source = metrics_source

        if rules is None:
            rules = default_routing_rules() if self.settings.load_default_routing_rules else []
        self._rules: List[RoutingRule] = list(rules)
        self._rules_lock = threading.Lock()

        self._action_handlers: Dict[type, Callable[[Any, RoutingContext], ActionOutcome]] = {
            AssignToUserAction: self._assign_to_user,
            AssignToRoleAction: self._assign_to_role,
            LoadBalanceAction: self._load_balance,
            ParallelRouteAction: self._parallel_route,
            EscalateAction: self._escalate,
        }
        action_types = set(get_args(get_args(RoutingAction)[0]))
        if action_types != set(self._action_handlers):
            raise RuntimeError("Routing action handlers do not cover every routing action type")

    # ============================================================
    # ROUTING
    # ============================================================

    @timed(routing_logger)
    def route_approval(self, context: RoutingContext) -> RoutingDecision:
        """
        Select and rank approvers for the context's stage.

        Returns:
            RoutingDecision; on any internal failure a fallback decision built
            from the stage's static approvers with confidence 0.5
        """
        try:
            self.refresh_metrics(context.team_members)

            rules = self.applicable_rules(context)
            if rules:
                approvers, reasoning = self._apply_rules(rules, context)
                used_fallback = False
            else:
                approvers = self.default_approvers(context)
                reasoning = ["No routing rule matched; applied default routing strategy"]
                used_fallback = True

            ranked = self._optimize_selection(approvers)
            decision = RoutingDecision(
                should_route=len(ranked) > 0,
                target_approvers=ranked,
                estimated_time=self._estimate_time(ranked, context),
                confidence=self._confidence(ranked, context),
                reasoning=reasoning,
                used_fallback=used_fallback,
                warning_code=RoutingFallbackWarning.error_code if used_fallback else None,
            )
        except Exception as e:
            routing_logger.error(
                "Approval routing failed, using fallback",
                error=e,
                request_id=context.request.id,
                stage_id=context.stage.id,
            )
            return self._fallback_decision(context)

        routing_logger.info(
            "Routed approval",
            request_id=context.request.id,
            stage_id=context.stage.id,
            approvers=decision.target_approvers,
            confidence=round(decision.confidence, 3),
            used_fallback=decision.used_fallback,
        )
        return decision

    def _fallback_decision(self, context: RoutingContext) -> RoutingDecision:
        try:
            approvers = self.default_approvers(context)
        except Exception as e:
            routing_logger.error("Default approver lookup failed", error=e, stage_id=context.stage.id)
            approvers = list(context.stage.approvers)

        return RoutingDecision(
            should_route=len(approvers) > 0,
            target_approvers=approvers,
            estimated_time=self.settings.fallback_estimate_hours,
            confidence=0.5,
            reasoning=["Used fallback routing due to error"],
            used_fallback=True,
            warning_code=RoutingFallbackWarning.error_code,
        )

    def refresh_metrics(self, members: List[TeamMember]) -> None:
        """Seed the cache for members not yet in it. Never raises."""
        loader = self.metrics_source.fetch if self.metrics_source else (lambda member: None)
        self.cache.ensure(members, loader, lambda member: default_metrics(member, self.settings))

    def condition_subject(
        self,
        request: ApprovalRequest,
        requester_role: Optional[str],
        team_member_ids: Optional[List[str]] = None,
    ) -> ConditionSubject:
        return ConditionSubject(
            requester_role=requester_role,
            content_type=request.metadata.content_type or request.target_type,
            budget=request.metadata.budget,
            urgency_level=request.priority,
            escalation_level=request.escalation_level,
            total_workload=self.cache.total_workload(team_member_ids),
            high_workload_threshold=self.settings.high_workload_threshold,
        )

    def applicable_rules(self, context: RoutingContext) -> List[RoutingRule]:
        """Active rules whose conditions all hold, lowest priority value first"""
        subject = self.condition_subject(
            context.request,
            context.requester.role if context.requester else None,
            [m.id for m in context.team_members],
        )
        with self._rules_lock:
            rules = list(self._rules)

        matching = [r for r in rules if r.is_active and evaluate_all(r.conditions, subject)]
        return sorted(matching, key=lambda r: r.priority)

    def _apply_rules(self, rules: List[RoutingRule], context: RoutingContext) -> ActionOutcome:
        approvers: List[str] = []
        reasoning: List[str] = []

        for rule in rules:
            rule_approvers: List[str] = []
            rule_reasoning: List[str] = []
            for action in rule.actions:
                ids, notes = self._action_handlers[type(action)](action, context)
                rule_approvers.extend(ids)
                rule_reasoning.extend(notes)

            if rule_approvers:
                approvers.extend(rule_approvers)
                reasoning.append(f"Applied rule: {rule.name}")
                reasoning.extend(rule_reasoning)

        return list(dict.fromkeys(approvers)), reasoning

    def default_approvers(self, context: RoutingContext) -> List[str]:
        """Stage approvers, else members holding the stage roles (or the default roles)"""
        if context.stage.approvers:
            return list(context.stage.approvers)

        roles = context.stage.approver_roles or self.settings.default_approver_roles
        return [m.id for m in context.team_members if m.role in roles]

    def escalation_targets(self, roles: List[str], team_members: List[TeamMember]) -> List[str]:
        """Every member holding one of the escalation roles, no filtering"""
        return [m.id for m in team_members if m.role in roles]

    # ============================================================
    # ROUTING ACTIONS
    # ============================================================

    def _assign_to_user(self, action: AssignToUserAction, context: RoutingContext) -> ActionOutcome:
        return list(action.user_ids), [f"Assigned to specific users: {', '.join(action.user_ids)}"]

    def _assign_to_role(self, action: AssignToRoleAction, context: RoutingContext) -> ActionOutcome:
        candidates = [m for m in context.team_members if m.role in action.roles]
        reasoning = [f"Assigned to roles: {', '.join(action.roles)}"]

        if action.expertise_required:
            candidates = [
                m for m in candidates
                if self._has_expertise(self.cache.get(m.id), context)
            ]
            reasoning.append("Filtered by expertise requirements")

        return [m.id for m in candidates], reasoning

    def _load_balance(self, action: LoadBalanceAction, context: RoutingContext) -> ActionOutcome:
        cap = action.max_workload if action.max_workload is not None else self.settings.default_max_workload
        pool = []
        for member in context.team_members:
            if member.role not in action.roles:
                continue
            metrics = self.cache.get(member.id)
            workload = metrics.current_workload if metrics else 0
            availability = metrics.availability if metrics else Availability.AVAILABLE
            # At or above the cap is excluded outright
            if workload < cap and availability == Availability.AVAILABLE:
                pool.append((workload, member.id))

        pool.sort(key=lambda item: item[0])
        selected = [member_id for _, member_id in pool[:1]]
        return selected, [
            "Applied load balancing",
            f"Selected approver(s) with lowest workload (max: {cap})",
        ]

    def _parallel_route(self, action: ParallelRouteAction, context: RoutingContext) -> ActionOutcome:
        candidates = []
        for member in context.team_members:
            if member.role not in action.roles:
                continue
            metrics = self.cache.get(member.id)
            if metrics and metrics.availability == Availability.AVAILABLE:
                candidates.append(member.id)

        selected = candidates[:action.min_approvers]
        return selected, [
            "Set up parallel approval routing",
            f"Selected {len(selected)} approvers for parallel processing",
        ]

    def _escalate(self, action: EscalateAction, context: RoutingContext) -> ActionOutcome:
        return self.escalation_targets(action.roles, context.team_members), [
            "Escalated approval to senior roles",
            f"Assigned to roles: {', '.join(action.roles)}",
        ]

    # ============================================================
    # RANKING AND ESTIMATES
    # ============================================================

    def _optimize_selection(self, approvers: List[str]) -> List[str]:
        """Drop offline approvers, rank the rest by score; unknown approvers go last"""
        ranked = []
        for approver_id in approvers:
            metrics = self.cache.get(approver_id)
            if metrics and metrics.availability == Availability.OFFLINE:
                continue
            ranked.append((approver_id, metrics))

        ranked.sort(key=lambda item: (0, -item[1].score) if item[1] else (1, 0.0))
        return [approver_id for approver_id, _ in ranked]

    def _estimate_time(self, approvers: List[str], context: RoutingContext) -> float:
        if not approvers:
            return self.settings.fallback_estimate_hours

        estimates = []
        for approver_id in approvers:
            metrics = self.cache.get(approver_id)
            estimates.append(
                metrics.average_response_time if metrics else self.settings.default_response_time_hours
            )

        parallel = context.stage.approvers_required == 1 or bool(
            context.workflow and context.workflow.allow_parallel_stages
        )
        # Parallel approvers wait on the slowest one; sequential ones add up
        return max(estimates) if parallel else sum(estimates)

    def _confidence(self, approvers: List[str], context: RoutingContext) -> float:
        if not approvers:
            return 0.0

        metrics = [self.cache.get(a) for a in approvers]
        available = sum(1 for m in metrics if m and m.availability == Availability.AVAILABLE)
        expert = sum(1 for m in metrics if self._has_expertise(m, context))

        confidence = 0.5
        confidence += (available / len(approvers)) * 0.3
        confidence += (expert / len(approvers)) * 0.2
        return max(0.0, min(confidence, 1.0))

    @staticmethod
    def _has_expertise(metrics: Optional[ApproverMetrics], context: RoutingContext) -> bool:
        if metrics is None:
            return False
        return context.content_type in metrics.expertise_areas or "general" in metrics.expertise_areas

    # ============================================================
    # RULE MANAGEMENT
    # ============================================================

    def add_routing_rule(self, rule: Union[RoutingRuleCreate, Dict[str, Any]]) -> EngineResult:
        try:
            if isinstance(rule, dict):
                rule = RoutingRuleCreate.model_validate(rule)
            new_rule = RoutingRule(id=f"rule_{uuid.uuid4().hex[:12]}", **rule.model_dump())
        except SchemaValidationError as e:
            return failure(ValidationError("Invalid routing rule", INVALID_RULE, {"errors": e.errors(include_url=False)}))

        with self._rules_lock:
            self._rules.append(new_rule)

        routing_logger.info("Added routing rule", rule_id=new_rule.id, name=new_rule.name)
        return success(new_rule)

    def update_routing_rule(self, rule_id: str, updates: Dict[str, Any]) -> EngineResult:
        try:
            with self._rules_lock:
                index = self._rule_index(rule_id)
                merged = self._rules[index].model_dump()
                merged.update(updates)
                merged["id"] = rule_id
                try:
                    updated = RoutingRule.model_validate(merged)
                except SchemaValidationError as e:
                    raise ValidationError("Invalid routing rule update", INVALID_RULE, {"errors": e.errors(include_url=False)})
                self._rules[index] = updated
        except EngineError as e:
            return failure(e)

        routing_logger.info("Updated routing rule", rule_id=rule_id, fields=sorted(updates))
        return success(updated)

    def delete_routing_rule(self, rule_id: str) -> EngineResult:
        try:
            with self._rules_lock:
                del self._rules[self._rule_index(rule_id)]
        except EngineError as e:
            return failure(e)

        routing_logger.info("Deleted routing rule", rule_id=rule_id)
        return success(True)

    def get_routing_rules(self) -> EngineResult:
        with self._rules_lock:
            rules = sorted(self._rules, key=lambda r: r.priority)
        return success([r.model_copy(deep=True) for r in rules])

    def get_approver_metrics(self, user_id: Optional[str] = None) -> EngineResult:
        if user_id is None:
            return success(self.cache.values())

        metrics = self.cache.get(user_id)
        if metrics is None:
            return failure(NotFoundError("Approver metrics", user_id))
        return success(metrics)

    def _rule_index(self, rule_id: str) -> int:
        for index, rule in enumerate(self._rules):
            if rule.id == rule_id:
                return index
        raise NotFoundError("Routing rule", rule_id)
