"""
Control Plane Composition

Wires the gate, override registry, governor, planner, safety guards,
rollback manager and execution controller around one shared security
state and one audit sink.
"""

from typing import Any, Dict, List, Optional
import logging

from . import Actor, ExecutionPlan, PlanConfig, PlanMode, Proposal, SecurityMode, ThreatLevel
from .appliers import ChangeApplier, InMemoryChangeApplier, MetricsSource
from .audit_logger import AuditLogger
from .decision_gate import DecisionGate
from .execution_controller import ExecutionController, ExecutionReport
from .execution_planner import ExecutionPlanner
from .override_registry import OverrideRegistry
from .policy_store import PermissionPolicyStore
from .rate_limiter import RateLimitStore, create_rate_limit_store
from .rollback_manager import PlanRollbackResult, RollbackManager
from .rule_evaluator import GovernorDecision, PlatformGovernor
from .safety_guards import SafetyGuardEngine
from .security_state import SecurityState
from controlplane.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ControlPlane:
    """Single entry point over every governance component"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        applier: Optional[ChangeApplier] = None,
        metrics_source: Optional[MetricsSource] = None,
        rate_limiter: Optional[RateLimitStore] = None,
        policy_store: Optional[PermissionPolicyStore] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = settings or default_settings
        s = self.settings

        self.audit = audit or AuditLogger(max_entries=s.AUDIT_MAX_ENTRIES)
        self.security_state = SecurityState(
            mode=SecurityMode(s.DEFAULT_SECURITY_MODE),
            threat_level=ThreatLevel(s.DEFAULT_THREAT_LEVEL),
        )
        self.policy_store = policy_store or PermissionPolicyStore()
        self.applier = applier or InMemoryChangeApplier()

        self.overrides = OverrideRegistry.from_settings(s, self.security_state, self.audit)
        self.gate = DecisionGate(
            self.policy_store,
            self.security_state,
            self.audit,
            rate_limiter or create_rate_limit_store(s),
            rate_limit_requests=s.GATE_RATE_LIMIT_REQUESTS,
            rate_limit_window_sec=s.GATE_RATE_LIMIT_WINDOW_SEC,
            override_registry=self.overrides,
        )
        self.governor = PlatformGovernor(self.audit)
        self.planner = ExecutionPlanner(self.audit, default_config=PlanConfig.from_settings(s))
        self.safety = SafetyGuardEngine(self.audit)
        self.rollback = RollbackManager(
            self.applier,
            self.audit,
            self.planner.get_plan,
            complexity_threshold=s.ROLLBACK_COMPLEXITY_THRESHOLD,
        )
        self.executor = ExecutionController(
            self.planner,
            self.gate,
            self.safety,
            self.rollback,
            self.applier,
            self.audit,
            metrics_source=metrics_source,
            governor=self.governor,
            auto_rollback_on_signal=s.AUTO_ROLLBACK_ON_SIGNAL,
        )
        logger.info(
            f"Control plane ready (mode={self.security_state.mode.value}, "
            f"threat={self.security_state.threat_level.value})"
        )

    def create_plan(
        self,
        name: str,
        proposals: List[Proposal],
        config: Optional[Dict[str, Any]] = None,
        mode: PlanMode = PlanMode.SUPERVISED,
        created_by: str = "system",
    ) -> ExecutionPlan:
        return self.planner.create_plan(name, proposals, config=config, mode=mode, created_by=created_by)

    async def execute_plan(self, plan_id: str, actor: Actor) -> ExecutionReport:
        return await self.executor.execute_plan(plan_id, actor)

    async def rollback_plan(self, plan_id: str, actor: Actor) -> PlanRollbackResult:
        return await self.executor.rollback(plan_id, actor)

    def halt_plan(self, plan_id: str, actor_id: str, reason: str = "Manual halt") -> bool:
        return self.executor.halt(plan_id, actor_id, reason)

    def evaluate_platform(self, context: Dict[str, Any]) -> List[GovernorDecision]:
        return self.governor.evaluate_rules(context)

    def status(self) -> Dict[str, Any]:
        return {
            "security": self.gate.get_threat_state(),
            "gate": self.gate.get_stats(),
            "overrides": self.overrides.get_stats(),
            "restrictions": [r.key for r in self.governor.get_active_restrictions()],
            "plans": {plan.id: plan.status.value for plan in self.planner.list_plans()},
            "rollback": self.rollback.get_stats(),
            "audit_entries": len(self.audit),
        }

    def reset(self) -> None:
        """Clear every component's runtime state. Configuration survives."""
        self.gate.reset()
        self.overrides.reset()
        self.governor.reset()
        self.planner.clear()
        self.rollback.clear()
        self.executor.reset()
        self.audit.clear()
        self.security_state.reset(
            SecurityMode(self.settings.DEFAULT_SECURITY_MODE),
            ThreatLevel(self.settings.DEFAULT_THREAT_LEVEL),
        )
