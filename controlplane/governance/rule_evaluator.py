"""
Platform Governor: Systemic Rule Evaluation

Evaluates health signals (cost, error rate, incident severity, backlog)
against prioritized rules. A rule whose conditions all hold and whose
cooldown has elapsed fires and produces restrictions keyed by rule and
feature. Admin escape hatches (override one decision, reset everything)
are audited like the decisions themselves.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import operator
import threading
import uuid
import logging

from . import utcnow
from .audit_logger import AuditSink
from controlplane.core.metrics import GOVERNOR_RESTRICTIONS

logger = logging.getLogger(__name__)


class RestrictionType(Enum):
    BLOCK = "BLOCK"
    THROTTLE = "THROTTLE"
    RESTRICT_FEATURE = "RESTRICT_FEATURE"


# Higher wins when summarizing a decision
_RESTRICTION_WEIGHT = {
    RestrictionType.THROTTLE: 1,
    RestrictionType.RESTRICT_FEATURE: 2,
    RestrictionType.BLOCK: 3,
}


class ConditionOperator(Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"


_OPERATORS = {
    ConditionOperator.GT: operator.gt,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.LTE: operator.le,
    ConditionOperator.EQ: operator.eq,
    ConditionOperator.NEQ: operator.ne,
}

# Enum-valued signals compare by rank
ENUM_ORDINALS: Dict[str, Dict[str, int]] = {
    "incident_severity": {"none": 0, "low": 1, "medium": 2, "high": 3, "critical": 4},
    "threat_level": {"green": 0, "yellow": 1, "orange": 2, "red": 3, "black": 4},
}


@dataclass
class RuleCondition:
    field: str
    operator: ConditionOperator
    value: Any

    def __post_init__(self):
        if not isinstance(self.operator, ConditionOperator):
            self.operator = ConditionOperator(self.operator)

    def matches(self, context: Dict[str, Any]) -> bool:
        if self.field not in context or context[self.field] is None:
            return False
        actual = context[self.field]
        expected = self.value

        ordinals = ENUM_ORDINALS.get(self.field)
        if ordinals is not None:
            actual = getattr(actual, "value", actual)
            expected = getattr(expected, "value", expected)
            if actual not in ordinals or expected not in ordinals:
                return False
            actual, expected = ordinals[actual], ordinals[expected]

        try:
            return bool(_OPERATORS[self.operator](actual, expected))
        except TypeError:
            logger.warning(f"Cannot compare {self.field}={actual!r} with {expected!r}")
            return False


@dataclass
class RuleAction:
    type: RestrictionType
    feature: str = "*"
    throttle_factor: Optional[float] = None   # Fraction of normal throughput for THROTTLE
    duration_seconds: Optional[int] = None    # None keeps the restriction until lifted

    def __post_init__(self):
        if not isinstance(self.type, RestrictionType):
            self.type = RestrictionType(self.type)


@dataclass
class GovernorRule:
    id: str
    name: str
    conditions: List[RuleCondition]
    actions: List[RuleAction]
    priority: int = 0
    cooldown_seconds: int = 300
    enabled: bool = True
    description: str = ""


@dataclass
class Restriction:
    id: str
    rule_id: str
    decision_id: str
    feature: str
    type: RestrictionType
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    throttle_factor: Optional[float] = None

    @property
    def key(self) -> str:
        return f"{self.rule_id}:{self.feature}"


@dataclass
class GovernorDecision:
    id: str
    timestamp: datetime
    rule_id: str
    rule_name: str
    decision: RestrictionType
    actions: List[RuleAction]
    context: Dict[str, Any] = field(default_factory=dict)
    restriction_keys: List[str] = field(default_factory=list)
    overridden_by: Optional[str] = None
    overridden_at: Optional[datetime] = None


def default_rules() -> List[GovernorRule]:
    return [
        GovernorRule(
            id="critical_incident",
            name="Critical incident freeze",
            conditions=[RuleCondition("incident_severity", ConditionOperator.GTE, "high")],
            actions=[RuleAction(RestrictionType.BLOCK, "*")],
            priority=100,
            cooldown_seconds=1800,
            description="Freeze all autonomous activity during a high or critical incident",
        ),
        GovernorRule(
            id="error_rate_spike",
            name="Error rate spike",
            conditions=[RuleCondition("error_rate", ConditionOperator.GT, 0.1)],
            actions=[RuleAction(RestrictionType.BLOCK, "autonomous_execution")],
            priority=80,
            cooldown_seconds=600,
        ),
        GovernorRule(
            id="cost_spike",
            name="Cost spike",
            conditions=[RuleCondition("cost_usd_per_hour", ConditionOperator.GT, 100)],
            actions=[RuleAction(RestrictionType.THROTTLE, "autonomous_execution", throttle_factor=0.5)],
            priority=50,
            cooldown_seconds=900,
        ),
        GovernorRule(
            id="backlog_overflow",
            name="Backlog overflow",
            conditions=[RuleCondition("backlog_size", ConditionOperator.GT, 1000)],
            actions=[RuleAction(RestrictionType.RESTRICT_FEATURE, "seo_autopilot", duration_seconds=3600)],
            priority=30,
            cooldown_seconds=600,
        ),
    ]


class PlatformGovernor:
    """Evaluates governor rules and tracks the restrictions they produce"""

    def __init__(
        self,
        audit: AuditSink,
        rules: Optional[List[GovernorRule]] = None,
        clock: Callable[[], datetime] = utcnow,
        max_decisions: int = 1000,
    ):
        self.audit = audit
        self.clock = clock
        self.max_decisions = max_decisions
        self._lock = threading.RLock()
        self._rules: Dict[str, GovernorRule] = {}
        self._restrictions: Dict[str, Restriction] = {}
        self._decisions: List[GovernorDecision] = []
        self._last_fired: Dict[str, datetime] = {}

        for rule in (default_rules() if rules is None else rules):
            self.add_rule(rule)

    def add_rule(self, rule: GovernorRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def get_rules(self) -> List[GovernorRule]:
        with self._lock:
            return sorted(self._rules.values(), key=lambda r: -r.priority)

    def evaluate_rules(self, context: Dict[str, Any]) -> List[GovernorDecision]:
        """Fire every enabled rule whose conditions hold and whose cooldown elapsed."""
        now = self.clock()
        fired: List[GovernorDecision] = []

        with self._lock:
            for rule in sorted(self._rules.values(), key=lambda r: -r.priority):
                if not rule.enabled or not rule.conditions:
                    continue
                if not all(c.matches(context) for c in rule.conditions):
                    continue
                last = self._last_fired.get(rule.id)
                if last is not None and now - last < timedelta(seconds=rule.cooldown_seconds):
                    logger.debug(f"Rule {rule.id} matched but is cooling down")
                    continue

                decision = GovernorDecision(
                    id=str(uuid.uuid4()),
                    timestamp=now,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    decision=max(rule.actions, key=lambda a: _RESTRICTION_WEIGHT[a.type]).type
                    if rule.actions else RestrictionType.THROTTLE,
                    actions=list(rule.actions),
                    context=dict(context),
                )
                for action in rule.actions:
                    restriction = Restriction(
                        id=str(uuid.uuid4()),
                        rule_id=rule.id,
                        decision_id=decision.id,
                        feature=action.feature,
                        type=action.type,
                        reason=f"{rule.name} ({rule.id})",
                        created_at=now,
                        expires_at=now + timedelta(seconds=action.duration_seconds)
                        if action.duration_seconds else None,
                        throttle_factor=action.throttle_factor,
                    )
                    self._restrictions[restriction.key] = restriction
                    decision.restriction_keys.append(restriction.key)
                    GOVERNOR_RESTRICTIONS.labels(action=action.type.value).inc()

                self._last_fired[rule.id] = now
                self._decisions.append(decision)
                fired.append(decision)

            if len(self._decisions) > self.max_decisions:
                self._decisions = self._decisions[-self.max_decisions:]

        for decision in fired:
            self.audit.log_governor_decision(
                "governor.rule_fired",
                decision.decision.value,
                decision_id=decision.id,
                rule_id=decision.rule_id,
                actions=[{"type": a.type.value, "feature": a.feature} for a in decision.actions],
            )
            logger.warning(f"Governor rule {decision.rule_id} fired: {decision.decision.value}")

        return fired

    def _prune_expired(self, now: datetime) -> None:
        expired = [k for k, r in self._restrictions.items() if r.expires_at and r.expires_at <= now]
        for key in expired:
            del self._restrictions[key]

    def get_active_restrictions(self) -> List[Restriction]:
        with self._lock:
            self._prune_expired(self.clock())
            return list(self._restrictions.values())

    def is_system_restricted(self, feature: str) -> bool:
        """True when a BLOCK or RESTRICT_FEATURE applies to ``feature`` or to everything."""
        for restriction in self.get_active_restrictions():
            if restriction.type == RestrictionType.THROTTLE:
                continue
            if restriction.feature in (feature, "*"):
                return True
        return False

    def get_throttle_factor(self, feature: str) -> float:
        """Smallest active throttle factor for ``feature``; 1.0 when unthrottled."""
        factor = 1.0
        for restriction in self.get_active_restrictions():
            if restriction.type == RestrictionType.THROTTLE and restriction.feature in (feature, "*"):
                factor = min(factor, restriction.throttle_factor if restriction.throttle_factor is not None else 1.0)
        return factor

    def get_decisions(self, limit: Optional[int] = None) -> List[GovernorDecision]:
        with self._lock:
            return list(self._decisions[-limit:] if limit else self._decisions)

    def override_decision(self, decision_id: str, admin: str, reason: str = "") -> bool:
        """Lift the restrictions a decision produced."""
        with self._lock:
            decision = next((d for d in self._decisions if d.id == decision_id), None)
            if decision is None:
                return False
            lifted = [
                key for key, r in self._restrictions.items() if r.decision_id == decision_id
            ]
            for key in lifted:
                del self._restrictions[key]
            decision.overridden_by = admin
            decision.overridden_at = self.clock()

        self.audit.log_governor_decision(
            "governor.decision_overridden",
            "OVERRIDDEN",
            actor_id=admin,
            decision_id=decision_id,
            rule_id=decision.rule_id,
            lifted=lifted,
            reason=reason,
        )
        logger.warning(f"Governor decision {decision_id} overridden by {admin}")
        return True

    def reset_all_restrictions(self, admin: str, reason: str = "") -> int:
        """Drop every active restriction. Cooldowns are kept."""
        with self._lock:
            cleared = list(self._restrictions)
            self._restrictions.clear()

        self.audit.log_governor_decision(
            "governor.restrictions_reset", "RESET", actor_id=admin, cleared=cleared, reason=reason,
        )
        logger.warning(f"All governor restrictions reset by {admin} ({len(cleared)} cleared)")
        return len(cleared)

    def reset(self) -> None:
        with self._lock:
            self._restrictions.clear()
            self._decisions.clear()
            self._last_fired.clear()
