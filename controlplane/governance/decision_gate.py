"""
DecisionGate: Fail-Closed Action Authorization

Authorizes a single action request against rate limits, dependency health,
security mode, threat level, role hierarchy and the approval policy. The
first matching layer decides:

1. Rate limit per (actor, action)             -> RATE_LIMITED
2. Permission lookup / dependency failure     -> DENY
3. Lockdown mode / elevated threat level      -> DENY
4. Role hierarchy and permission table        -> DENY
5. Approval-required action sets              -> REQUIRE_APPROVAL
6. Everything else                            -> ALLOW

Every evaluation, including ALLOW, writes exactly one audit entry.
"""

from typing import Any, Callable, Dict, List, Optional
from functools import wraps
import inspect
import threading
import logging

from . import (
    Actor,
    DecisionCode,
    GateDecision,
    GateOutcome,
    GateRequest,
    SecurityMode,
    ThreatLevel,
    Role,
    ROLE_LEVELS,
    role_level,
    utcnow,
)
from .audit_logger import AuditSink
from .errors import PolicyDenied
from .override_registry import OverrideRegistry, OverrideType
from .policy_store import PermissionPolicyStore
from .rate_limiter import RateLimitStore
from .security_state import SecurityState
from controlplane.core.metrics import GATE_DECISIONS

logger = logging.getLogger(__name__)

PermissionLookup = Callable[[Actor, str, str], Optional[bool]]


class DecisionGate:
    """
    Evaluates action requests and returns typed decisions. Never raises
    from ``assert_allowed``; use ``enforce`` for the raising variant.
    """

    def __init__(
        self,
        policy_store: PermissionPolicyStore,
        security_state: SecurityState,
        audit: AuditSink,
        rate_limiter: RateLimitStore,
        rate_limit_requests: int = 60,
        rate_limit_window_sec: int = 60,
        override_registry: Optional[OverrideRegistry] = None,
        dependencies: Optional[Dict[str, Callable[[], bool]]] = None,
        permission_lookup: Optional[PermissionLookup] = None,
    ):
        self.policy_store = policy_store
        self.security_state = security_state
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.rate_limit_requests = rate_limit_requests
        self.rate_limit_window_sec = rate_limit_window_sec
        self.override_registry = override_registry
        self.dependencies: Dict[str, Callable[[], bool]] = dict(dependencies or {})
        self.permission_lookup: PermissionLookup = permission_lookup or self._table_lookup

        self._stats_lock = threading.Lock()
        self._stats = self._empty_stats()

    def _table_lookup(self, actor: Actor, action: str, resource: str) -> Optional[bool]:
        return self.policy_store.is_permitted(actor.roles, action, resource)

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total": 0,
            "by_outcome": {outcome.value: 0 for outcome in GateOutcome},
            "by_code": {code.value: 0 for code in DecisionCode},
        }

    def register_dependency(self, name: str, probe: Callable[[], bool]) -> None:
        """Register a health probe that must succeed for any request to pass."""
        self.dependencies[name] = probe

    def assert_allowed(self, request: GateRequest) -> GateDecision:
        """Evaluate ``request``. The first matching layer wins."""
        mode = self.security_state.mode
        threat = self.security_state.threat_level
        actor = request.actor
        action = request.action

        # 1. Rate limit, before any permission evaluation
        key = f"gate:{actor.user_id}:{action}"
        try:
            limit = self.rate_limiter.hit(key, self.rate_limit_requests, self.rate_limit_window_sec)
        except Exception as e:
            logger.error(f"Rate limiter unavailable for {key}: {e}")
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.DEPENDENCY_UNAVAILABLE,
                f"Rate limiter unavailable: {e}", ["dependency:rate_limiter"],
            )
        if not limit.allowed:
            return self._decide(
                request, mode, threat, GateOutcome.RATE_LIMITED, DecisionCode.RATE_LIMITED,
                f"Rate limit of {self.rate_limit_requests} per {self.rate_limit_window_sec}s exceeded for {action}",
                ["rate_limit"], retry_after=limit.retry_after,
            )

        # 2. Fail closed on unknown permissions or unhealthy dependencies
        for name, probe in self.dependencies.items():
            try:
                healthy = bool(probe())
            except Exception as e:
                logger.error(f"Dependency probe {name} raised: {e}")
                healthy = False
            if not healthy:
                return self._decide(
                    request, mode, threat, GateOutcome.DENY, DecisionCode.DEPENDENCY_UNAVAILABLE,
                    f"Required dependency '{name}' is unavailable", [f"dependency:{name}"],
                )

        try:
            permitted = self.permission_lookup(actor, action, request.resource)
        except Exception as e:
            logger.error(f"Permission lookup failed for {actor.user_id}/{action}: {e}")
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.PERMISSION_UNKNOWN,
                f"Permission lookup failed: {e}", ["permission_table"],
            )
        if permitted is None:
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.PERMISSION_UNKNOWN,
                f"No permission entry for action '{action}' and roles {actor.roles}",
                ["permission_table"],
            )

        # 3. Mode and threat restrictions
        mutating = self.policy_store.is_mutating(action)
        if mode == SecurityMode.LOCKDOWN and mutating:
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.SYSTEM_LOCKDOWN,
                f"System is in lockdown; '{action}' is blocked", ["security_mode"],
            )
        if threat.at_least(ThreatLevel.ORANGE) and self.policy_store.is_high_autonomy(action):
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.THREAT_DENY,
                f"Threat level {threat.value} disables high-autonomy action '{action}'",
                ["threat_level"],
            )
        if (
            threat.at_least(ThreatLevel.RED)
            and mutating
            and actor.level < ROLE_LEVELS[Role.SUPER_ADMIN]
        ):
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.THREAT_DENY,
                f"Threat level {threat.value} restricts '{action}' to super_admin",
                ["threat_level"],
            )

        # 4. Role hierarchy, then the permission table
        privilege = self.policy_store.privilege_of(action)
        if privilege is not None and privilege > actor.level:
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.ROLE_ESCALATION,
                f"'{action}' requires privilege {privilege}, actor has {actor.level}",
                ["role_hierarchy"],
            )
        target_role = request.context.get("target_role")
        if target_role is not None and role_level([target_role]) > actor.level:
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.ROLE_ESCALATION,
                f"Cannot act on role '{target_role}' above own level", ["role_hierarchy"],
            )
        if not permitted:
            return self._decide(
                request, mode, threat, GateOutcome.DENY, DecisionCode.RBAC_DENY,
                f"Roles {actor.roles} are not permitted to '{action}'", ["permission_table"],
            )

        # 5. Approval policy
        sources: List[str] = ["permission_table"]
        if mode != SecurityMode.MONITOR:
            required = self.policy_store.required_approvals(
                action, supervised=(mode == SecurityMode.SUPERVISED)
            )
            if required:
                override_id = request.context.get("override_id")
                if override_id and self._consume_override(override_id, request):
                    sources.append(f"override:{override_id}")
                else:
                    return self._decide(
                        request, mode, threat, GateOutcome.REQUIRE_APPROVAL,
                        DecisionCode.APPROVAL_REQUIRED,
                        f"'{action}' requires approval in {mode.value} mode",
                        ["approval_policy"], required_approvals=required,
                    )

        # 6. Allow
        return self._decide(
            request, mode, threat, GateOutcome.ALLOW, DecisionCode.ALLOWED,
            f"'{action}' allowed for {actor.user_id}", sources,
        )

    def _consume_override(self, override_id: str, request: GateRequest) -> bool:
        if self.override_registry is None:
            return False
        check = self.override_registry.validate_override(
            override_id, request.actor.user_id, request.action, request.resource,
            required_type=OverrideType.APPROVAL_BYPASS,
        )
        if not check.valid:
            logger.info(f"Override {override_id} not applicable: {check.reason}")
            return False
        return self.override_registry.use_override(override_id, request.actor.user_id)

    def _decide(
        self,
        request: GateRequest,
        mode: SecurityMode,
        threat: ThreatLevel,
        outcome: GateOutcome,
        code: DecisionCode,
        reason: str,
        sources: List[str],
        required_approvals: Optional[List[str]] = None,
        retry_after: Optional[float] = None,
    ) -> GateDecision:
        evaluated_at = utcnow()
        try:
            audit_id = self.audit.log_gate_decision(
                request,
                outcome.value,
                code.value,
                reason,
                security_mode=mode.value,
                threat_level=threat.value,
                sources=list(sources),
                required_approvals=list(required_approvals or []),
            )
        except Exception as e:
            # An unaudited decision is never returned as anything but DENY
            logger.error(f"Audit sink failed for {request.actor.user_id}/{request.action}: {e}")
            audit_id = ""
            outcome = GateOutcome.DENY
            code = DecisionCode.DEPENDENCY_UNAVAILABLE
            reason = f"Audit sink unavailable: {e}"
            sources = ["dependency:audit"]
            required_approvals = None
            retry_after = None

        with self._stats_lock:
            self._stats["total"] += 1
            self._stats["by_outcome"][outcome.value] += 1
            self._stats["by_code"][code.value] += 1
        GATE_DECISIONS.labels(decision=outcome.value, code=code.value).inc()

        if outcome != GateOutcome.ALLOW:
            logger.info(f"Gate {outcome.value} ({code.value}) for {request.actor.user_id}/{request.action}: {reason}")

        return GateDecision(
            decision=outcome,
            code=code,
            reason=reason,
            audit_id=audit_id,
            evaluated_at=evaluated_at,
            security_mode=mode,
            threat_level=threat,
            required_approvals=list(required_approvals or []),
            sources=list(sources),
            retry_after=retry_after,
        )

    def enforce(self, request: GateRequest) -> GateDecision:
        """Like ``assert_allowed`` but raises PolicyDenied unless the outcome is ALLOW."""
        decision = self.assert_allowed(request)
        if not decision.allowed:
            raise PolicyDenied(decision)
        return decision

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "total": self._stats["total"],
                "by_outcome": dict(self._stats["by_outcome"]),
                "by_code": dict(self._stats["by_code"]),
            }

    def get_mode(self) -> SecurityMode:
        return self.security_state.mode

    def get_threat_state(self) -> Dict[str, Any]:
        snapshot = self.security_state.snapshot()
        level: ThreatLevel = snapshot["threat_level"]
        restrictions = []
        if level.at_least(ThreatLevel.ORANGE):
            restrictions.append("high_autonomy_disabled")
        if level.at_least(ThreatLevel.RED):
            restrictions.append("mutations_super_admin_only")
        if level == ThreatLevel.BLACK:
            restrictions.append("overrides_blocked")
        return {
            "level": level.value,
            "reason": snapshot["threat_reason"],
            "changed_at": snapshot["changed_at"],
            "changed_by": snapshot["changed_by"],
            "restrictions": restrictions,
        }

    def set_mode(self, mode: SecurityMode, changed_by: str) -> None:
        previous = self.security_state.set_mode(mode, changed_by)
        self.audit.log_mode_change(changed_by, "security_mode", previous.value, mode.value)

    def set_threat_level(self, level: ThreatLevel, changed_by: str, reason: Optional[str] = None) -> None:
        previous = self.security_state.set_threat_level(level, changed_by, reason)
        self.audit.log_mode_change(
            changed_by, "threat_level", previous.value, level.value, reason=reason
        )

    def reset(self) -> None:
        """Clear statistics and rate-limit counters."""
        with self._stats_lock:
            self._stats = self._empty_stats()
        self.rate_limiter.reset()


def requires_gate(gate: DecisionGate, action: str, resource: str = "*"):
    """
    Decorator enforcing the gate before the wrapped call. The wrapped
    callable takes the requesting ``Actor`` as its first argument.

    Usage:
        @requires_gate(gate, "publish", "articles")
        def publish(actor, article_id): ...
    """

    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(actor: Actor, *args, **kwargs):
                gate.enforce(GateRequest(actor=actor, action=action, resource=resource))
                return await func(actor, *args, **kwargs)

            return async_wrapper

        @wraps(func)
        def wrapper(actor: Actor, *args, **kwargs):
            gate.enforce(GateRequest(actor=actor, action=action, resource=resource))
            return func(actor, *args, **kwargs)

        return wrapper

    return decorator
