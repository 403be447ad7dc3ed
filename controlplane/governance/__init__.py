"""
Governance Layer: Safety-Gated Autonomous Execution

Shared types for the control plane. Every automated action is either:
1. Allowed by the decision gate and executed under safety guards
2. Held for human approval
3. Denied by policy, mode or threat level

Key Features:
- Fail-closed authorization with rate limits and role hierarchy
- Time-boxed, audited policy overrides
- Threshold-driven systemic restrictions
- Ordered, dependency-aware execution plans
- Pre/during/post execution safety checks
- Reverse-ordered compensation of completed changes
- Ordered audit trail with integrity-hashed evidence export
"""

from typing import Dict, List, Any, Optional, Iterable
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityMode(Enum):
    """Global security posture"""
    MONITOR = "monitor"         # Log everything, require no approvals
    ENFORCE = "enforce"         # Normal enforcement
    SUPERVISED = "supervised"   # Extra approval list applies
    LOCKDOWN = "lockdown"       # Mutating actions denied


class ThreatLevel(Enum):
    """Global threat signal, ordered from calm to critical"""
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"
    BLACK = "black"

    @property
    def rank(self) -> int:
        return _THREAT_RANK[self]

    def at_least(self, other: "ThreatLevel") -> bool:
        return self.rank >= other.rank


_THREAT_RANK = {
    ThreatLevel.GREEN: 0,
    ThreatLevel.YELLOW: 1,
    ThreatLevel.ORANGE: 2,
    ThreatLevel.RED: 3,
    ThreatLevel.BLACK: 4,
}


class Role(Enum):
    """Platform roles"""
    SUPER_ADMIN = "super_admin"
    SYSTEM_ADMIN = "system_admin"
    MANAGER = "manager"
    OPS = "ops"
    EDITOR = "editor"
    ANALYST = "analyst"
    VIEWER = "viewer"


ROLE_LEVELS: Dict[Role, int] = {
    Role.SUPER_ADMIN: 100,
    Role.SYSTEM_ADMIN: 90,
    Role.MANAGER: 70,
    Role.OPS: 60,
    Role.EDITOR: 50,
    Role.ANALYST: 30,
    Role.VIEWER: 10,
}


def role_level(roles: Iterable[str]) -> int:
    """Highest hierarchy level among the given role names. Unknown roles count as 0."""
    level = 0
    for name in roles:
        try:
            level = max(level, ROLE_LEVELS[Role(name)])
        except ValueError:
            continue
    return level


class GateOutcome(Enum):
    """Decision gate outcomes"""
    ALLOW = "ALLOW"
    DENY = "DENY"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    RATE_LIMITED = "RATE_LIMITED"


class DecisionCode(Enum):
    """Machine-checkable reason attached to every gate decision"""
    ALLOWED = "ALLOWED"
    RATE_LIMITED = "RATE_LIMITED"
    PERMISSION_UNKNOWN = "PERMISSION_UNKNOWN"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    SYSTEM_LOCKDOWN = "SYSTEM_LOCKDOWN"
    THREAT_DENY = "THREAT_DENY"
    RBAC_DENY = "RBAC_DENY"
    ROLE_ESCALATION = "ROLE_ESCALATION"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class ProposalPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ProposalPriority.LOW: 1,
    ProposalPriority.MEDIUM: 2,
    ProposalPriority.HIGH: 3,
    ProposalPriority.CRITICAL: 4,
}


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Numeric score for each forecast risk level
RISK_SCORES: Dict[RiskLevel, float] = {
    RiskLevel.LOW: 0.2,
    RiskLevel.MEDIUM: 0.5,
    RiskLevel.HIGH: 0.8,
    RiskLevel.CRITICAL: 1.0,
}


class ChangeType(Enum):
    """Closed set of change kinds the engine knows how to compensate"""
    CONTENT_UPDATE = "content_update"
    METADATA_UPDATE = "metadata_update"
    URL_CHANGE = "url_change"
    REDIRECT_CREATE = "redirect_create"
    SCHEMA_UPDATE = "schema_update"
    INTERNAL_LINK = "internal_link"
    STATUS_CHANGE = "status_change"
    CONFIG_CHANGE = "config_change"
    CACHE_INVALIDATION = "cache_invalidation"


class RollbackAction(Enum):
    REVERT_CONTENT_UPDATE = "revert_content_update"
    REVERT_METADATA_UPDATE = "revert_metadata_update"
    REVERT_URL_CHANGE = "revert_url_change"
    REVERT_REDIRECT_CREATE = "revert_redirect_create"
    REVERT_SCHEMA_UPDATE = "revert_schema_update"
    REVERT_INTERNAL_LINK = "revert_internal_link"
    REVERT_STATUS_CHANGE = "revert_status_change"
    REVERT_CONFIG_CHANGE = "revert_config_change"
    REVERT_CACHE_INVALIDATION = "revert_cache_invalidation"


REVERSE_ACTIONS: Dict[ChangeType, RollbackAction] = {
    ChangeType.CONTENT_UPDATE: RollbackAction.REVERT_CONTENT_UPDATE,
    ChangeType.METADATA_UPDATE: RollbackAction.REVERT_METADATA_UPDATE,
    ChangeType.URL_CHANGE: RollbackAction.REVERT_URL_CHANGE,
    ChangeType.REDIRECT_CREATE: RollbackAction.REVERT_REDIRECT_CREATE,
    ChangeType.SCHEMA_UPDATE: RollbackAction.REVERT_SCHEMA_UPDATE,
    ChangeType.INTERNAL_LINK: RollbackAction.REVERT_INTERNAL_LINK,
    ChangeType.STATUS_CHANGE: RollbackAction.REVERT_STATUS_CHANGE,
    ChangeType.CONFIG_CHANGE: RollbackAction.REVERT_CONFIG_CHANGE,
    ChangeType.CACHE_INVALIDATION: RollbackAction.REVERT_CACHE_INVALIDATION,
}

_unmapped = set(ChangeType) - set(REVERSE_ACTIONS)
if _unmapped:
    raise RuntimeError(
        f"ChangeType members without a reverse action: {sorted(t.value for t in _unmapped)}"
    )


class ItemStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PlanStatus(Enum):
    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"
    ROLLED_BACK = "rolled_back"


class PlanMode(Enum):
    SUPERVISED = "supervised"   # Human watches, driver runs
    AUTONOMOUS = "autonomous"
    DRY_RUN = "dry_run"         # Checks run, applier is never called


class CheckPhase(Enum):
    PRE_EXECUTION = "pre_execution"
    DURING_EXECUTION = "during_execution"
    POST_EXECUTION = "post_execution"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditCategory(Enum):
    GATE = "gate"
    OVERRIDE = "override"
    GOVERNOR = "governor"
    SAFETY_CHECK = "safety_check"
    EXECUTION = "execution"
    ROLLBACK = "rollback"
    MODE_CHANGE = "mode_change"
    EVIDENCE = "evidence"


@dataclass
class Actor:
    """Identity requesting an action"""
    user_id: str
    roles: List[str] = field(default_factory=list)

    @property
    def level(self) -> int:
        return role_level(self.roles)


@dataclass
class GateRequest:
    """A single action request evaluated by the decision gate"""
    actor: Actor
    action: str
    resource: str = "*"
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GateDecision:
    """Outcome of a gate evaluation, complete enough to explain itself"""
    decision: GateOutcome
    code: DecisionCode
    reason: str
    audit_id: str
    evaluated_at: datetime
    security_mode: SecurityMode
    threat_level: ThreatLevel
    required_approvals: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    retry_after: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return self.decision == GateOutcome.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "code": self.code.value,
            "reason": self.reason,
            "audit_id": self.audit_id,
            "evaluated_at": self.evaluated_at.isoformat(),
            "security_mode": self.security_mode.value,
            "threat_level": self.threat_level.value,
            "required_approvals": list(self.required_approvals),
            "sources": list(self.sources),
            "retry_after": self.retry_after,
        }


@dataclass
class Change:
    """Atomic field mutation within a proposal"""
    type: ChangeType
    target: str
    field: str
    current_value: Any = None
    new_value: Any = None
    is_reversible: bool = True

    def __post_init__(self):
        if not isinstance(self.type, ChangeType):
            self.type = ChangeType(self.type)


@dataclass
class RiskForecast:
    risk_level: RiskLevel
    risk_score: Optional[float] = None  # Overrides the level's score when set
    reasons: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.risk_level, RiskLevel):
            self.risk_level = RiskLevel(self.risk_level)

    @property
    def score(self) -> float:
        if self.risk_score is not None:
            return self.risk_score
        return RISK_SCORES[self.risk_level]


@dataclass
class Proposal:
    """Pre-approved unit of intended change from an upstream workflow"""
    id: str
    type: str
    target: str
    changes: List[Change]
    priority: ProposalPriority = ProposalPriority.MEDIUM
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    depends_on: List[str] = field(default_factory=list)
    forecast: Optional[RiskForecast] = None

    def __post_init__(self):
        if not isinstance(self.priority, ProposalPriority):
            self.priority = ProposalPriority(self.priority)


@dataclass
class ExecutionItem:
    """Schedulable unit wrapping one proposal's changes plus runtime state"""
    id: str
    proposal_id: str
    proposal_type: str
    priority: ProposalPriority
    sequence: int
    changes: List[Change]
    dependencies: List[str] = field(default_factory=list)
    status: ItemStatus = ItemStatus.PENDING
    forecast: Optional[RiskForecast] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def targets(self) -> List[str]:
        seen: List[str] = []
        for change in self.changes:
            if change.target not in seen:
                seen.append(change.target)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "proposal_type": self.proposal_type,
            "priority": self.priority.value,
            "sequence": self.sequence,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "targets": self.targets,
            "risk_level": self.forecast.risk_level.value if self.forecast else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


@dataclass
class PlanConfig:
    """Per-plan safety thresholds"""
    max_concurrent: int = 1
    delay_between_ms: int = 1000
    max_risk_score: float = 0.6
    max_affected_content: int = 50
    rollback_on_error_rate: float = 0.2
    rollback_on_metric_drop: float = 0.15
    timeout_ms: int = 300_000

    @classmethod
    def from_settings(cls, settings) -> "PlanConfig":
        return cls(
            max_concurrent=settings.PLAN_MAX_CONCURRENT,
            delay_between_ms=settings.PLAN_DELAY_BETWEEN_MS,
            max_risk_score=settings.PLAN_MAX_RISK_SCORE,
            max_affected_content=settings.PLAN_MAX_AFFECTED_CONTENT,
            rollback_on_error_rate=settings.PLAN_ROLLBACK_ON_ERROR_RATE,
            rollback_on_metric_drop=settings.PLAN_ROLLBACK_ON_METRIC_DROP,
            timeout_ms=settings.PLAN_TIMEOUT_MS,
        )

    def validate(self) -> List[str]:
        """Return a list of problems; empty when every threshold is usable."""
        errors = []
        for name in ("max_concurrent", "delay_between_ms", "max_affected_content", "timeout_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer, got {value!r}")
        for name in ("max_risk_score", "rollback_on_error_rate", "rollback_on_metric_drop"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0 < value <= 1:
                errors.append(f"{name} must be in (0, 1], got {value!r}")
        return errors


@dataclass
class ExecutionPlan:
    """Ordered, threshold-configured batch of execution items"""
    id: str
    name: str
    items: List[ExecutionItem]
    config: PlanConfig
    status: PlanStatus = PlanStatus.DRAFT
    mode: PlanMode = PlanMode.SUPERVISED
    created_at: datetime = field(default_factory=utcnow)
    created_by: str = "system"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    completion_order: List[str] = field(default_factory=list)
    halt_reason: Optional[str] = None

    def get_item(self, item_id: str) -> Optional[ExecutionItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def items_with_status(self, *statuses: ItemStatus) -> List[ExecutionItem]:
        return [item for item in self.items if item.status in statuses]

    def completed_in_reverse_order(self) -> List[ExecutionItem]:
        """Completed items, most recently completed first.

        Items marked completed without a recorded completion fall back to
        reverse sequence order after the recorded ones.
        """
        by_id = {item.id: item for item in self.items}
        ordered = [by_id[i] for i in reversed(self.completion_order) if i in by_id]
        recorded = {item.id for item in ordered}
        unrecorded = sorted(
            (item for item in self.items if item.id not in recorded),
            key=lambda item: item.sequence,
            reverse=True,
        )
        return [item for item in ordered + unrecorded if item.status == ItemStatus.COMPLETED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "mode": self.mode.value,
            "items": [item.to_dict() for item in self.items],
            "config": dict(self.config.__dict__),
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "halt_reason": self.halt_reason,
        }


@dataclass
class SafetyCheckResult:
    passed: bool
    message: str
    severity: Severity = Severity.INFO
    should_halt: bool = False
    should_rollback: bool = False
    check_id: str = ""      # Filled in by the engine when a check leaves it empty
    check_name: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RollbackStep:
    action: RollbackAction
    data: Dict[str, Any]
    change: Change


@dataclass
class RollbackPlan:
    """Precomputed, reverse-ordered compensating steps for one item"""
    item_id: str
    steps: List[RollbackStep]
    risks: List[str]
    plan_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEntry:
    """Immutable audit record"""
    id: str
    sequence: int
    timestamp: datetime
    category: AuditCategory
    event: str
    actor_id: Optional[str] = None
    decision: Optional[str] = None
    plan_id: Optional[str] = None
    item_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "event": self.event,
            "actor_id": self.actor_id,
            "decision": self.decision,
            "plan_id": self.plan_id,
            "item_id": self.item_id,
            "details": self.details,
        }
