"""
Execution Planner: Approved Proposals to Ordered Plans

Expands pre-approved proposals into execution items, orders them with a
dependency DAG (priority first, then approval time, then input order),
assigns strictly increasing sequence numbers and seeds the plan's safety
thresholds. Input problems raise ValidationError before anything is stored.
"""

from typing import Any, Dict, List, Optional, Union
from dataclasses import replace
import threading
import uuid
import logging

import networkx as nx

from . import (
    ExecutionItem,
    ExecutionPlan,
    PlanConfig,
    PlanMode,
    PlanStatus,
    Proposal,
)
from .audit_logger import AuditSink
from .errors import ValidationError
from .risk_scorer import RiskScorer

logger = logging.getLogger(__name__)


class ExecutionPlanner:
    """Builds and stores execution plans. The only writer of plan and item creation."""

    def __init__(
        self,
        audit: AuditSink,
        default_config: Optional[PlanConfig] = None,
        risk_scorer: Optional[RiskScorer] = None,
    ):
        self.audit = audit
        self.default_config = default_config or PlanConfig()
        self.risk_scorer = risk_scorer or RiskScorer()
        self._lock = threading.Lock()
        self._plans: Dict[str, ExecutionPlan] = {}

        problems = self.default_config.validate()
        if problems:
            raise ValidationError("Invalid default plan config", problems)

    def _resolve_config(
        self, overrides: Union[PlanConfig, Dict[str, Any], None], errors: List[str]
    ) -> PlanConfig:
        if isinstance(overrides, PlanConfig):
            config = replace(overrides)
        else:
            config = replace(self.default_config)
            for key, value in (overrides or {}).items():
                if not hasattr(config, key):
                    errors.append(f"Unknown config key '{key}'")
                    continue
                setattr(config, key, value)
        errors.extend(config.validate())
        return config

    def _validate_proposals(self, proposals: List[Proposal], errors: List[str]) -> None:
        seen = set()
        for proposal in proposals:
            if proposal.id in seen:
                errors.append(f"Duplicate proposal id '{proposal.id}'")
            seen.add(proposal.id)

        for proposal in proposals:
            if not proposal.approved_by or proposal.approved_at is None:
                errors.append(f"Proposal '{proposal.id}' is not approved")
            if not proposal.changes:
                errors.append(f"Proposal '{proposal.id}' has no changes")
            for dep in proposal.depends_on:
                if dep == proposal.id:
                    errors.append(f"Proposal '{proposal.id}' depends on itself")
                elif dep not in seen:
                    errors.append(f"Proposal '{proposal.id}' depends on unknown proposal '{dep}'")

    def _order(self, proposals: List[Proposal]) -> List[str]:
        """Topological order with priority, approval time and input position as tie-breaks."""
        by_id = {p.id: p for p in proposals}
        position = {p.id: i for i, p in enumerate(proposals)}

        graph = nx.DiGraph()
        graph.add_nodes_from(by_id)
        for proposal in proposals:
            for dep in proposal.depends_on:
                graph.add_edge(dep, proposal.id)

        if not nx.is_directed_acyclic_graph(graph):
            cycles = list(nx.simple_cycles(graph))
            raise ValidationError(
                f"Proposal dependencies contain cycles: {cycles}",
                [f"Dependency cycle: {' -> '.join(c + [c[0]])}" for c in cycles],
            )

        def sort_key(pid: str):
            proposal = by_id[pid]
            return (-proposal.priority.rank, proposal.approved_at.timestamp(), position[pid])

        return list(nx.lexicographical_topological_sort(graph, key=sort_key))

    def create_plan(
        self,
        name: str,
        approved_proposals: List[Proposal],
        config: Union[PlanConfig, Dict[str, Any], None] = None,
        mode: PlanMode = PlanMode.SUPERVISED,
        created_by: str = "system",
    ) -> ExecutionPlan:
        """
        Expand approved proposals into a draft plan.

        Each proposal becomes one item per distinct change target. An item
        depends on every item of the proposals its proposal depends on, and
        on the latest earlier item touching the same target.

        Raises:
            ValidationError: empty input, unapproved or empty proposals,
                unknown or cyclic dependencies, or unusable thresholds
        """
        if not approved_proposals:
            raise ValidationError("At least one approved proposal is required")

        errors: List[str] = []
        self._validate_proposals(approved_proposals, errors)
        plan_config = self._resolve_config(config, errors)
        if errors:
            raise ValidationError(f"Invalid plan input ({len(errors)} problem(s))", errors)

        order = self._order(approved_proposals)
        by_id = {p.id: p for p in approved_proposals}
        plan_id = f"plan-{uuid.uuid4().hex[:12]}"

        items: List[ExecutionItem] = []
        items_by_proposal: Dict[str, List[str]] = {}
        last_item_for_target: Dict[str, str] = {}
        sequence = 0

        for pid in order:
            proposal = by_id[pid]
            groups: Dict[str, list] = {}
            for change in proposal.changes:
                groups.setdefault(change.target, []).append(change)

            items_by_proposal[pid] = []
            for target, changes in groups.items():
                sequence += 1
                dependencies: List[str] = []
                for dep in proposal.depends_on:
                    dependencies.extend(i for i in items_by_proposal[dep] if i not in dependencies)
                previous = last_item_for_target.get(target)
                if previous and previous not in dependencies:
                    dependencies.append(previous)

                item = ExecutionItem(
                    id=f"{plan_id}-{sequence:04d}",
                    proposal_id=proposal.id,
                    proposal_type=proposal.type,
                    priority=proposal.priority,
                    sequence=sequence,
                    changes=list(changes),
                    dependencies=dependencies,
                    forecast=proposal.forecast or self.risk_scorer.forecast(changes),
                )
                items.append(item)
                items_by_proposal[pid].append(item.id)
                last_item_for_target[target] = item.id

        plan = ExecutionPlan(
            id=plan_id,
            name=name,
            items=items,
            config=plan_config,
            status=PlanStatus.DRAFT,
            mode=mode,
            created_by=created_by,
        )

        with self._lock:
            self._plans[plan.id] = plan

        self.audit.log_execution(
            "plan.created",
            plan.id,
            actor_id=created_by,
            decision=PlanStatus.DRAFT.value,
            name=name,
            proposals=[p.id for p in approved_proposals],
            items=len(items),
            mode=mode.value,
            config=dict(plan_config.__dict__),
        )
        logger.info(f"Created plan {plan.id} '{name}' with {len(items)} items from {len(approved_proposals)} proposals")
        return plan

    def get_plan(self, plan_id: str) -> Optional[ExecutionPlan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list_plans(self, status: Optional[PlanStatus] = None) -> List[ExecutionPlan]:
        with self._lock:
            plans = list(self._plans.values())
        if status is not None:
            plans = [p for p in plans if p.status == status]
        return sorted(plans, key=lambda p: p.created_at)

    def remove_plan(self, plan_id: str) -> bool:
        with self._lock:
            return self._plans.pop(plan_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._plans.clear()
