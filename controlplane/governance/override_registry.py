"""
OverrideRegistry: Time-Boxed Policy Exceptions

Issues audited overrides that let a grantee bypass a specific policy for a
bounded time. Requests are validated (justification, ticket, no self-grant,
duration, per-scope role policy, role escalation, mode and threat level)
and then screened for abuse:

- Circular chains: grantee already grants to the granter on an overlapping scope
- Rubber-stamping: approved faster than the minimum deliberation delay
- Collusion: one approver dominates a grantee's or a scope's approvals
- Flooding: one approver issuing too many overrides per hour
"""

from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import threading
import uuid
import logging

from . import Role, SecurityMode, ThreatLevel, role_level, utcnow
from .approval_graph import ApprovalGraph
from .audit_logger import AuditSink
from .security_state import SecurityState
from controlplane.core.metrics import OVERRIDE_REQUESTS

logger = logging.getLogger(__name__)


class OverrideType(Enum):
    SECURITY_GATE = "security_gate"
    MODE_RESTRICTION = "mode_restriction"
    RBAC_PERMISSION = "rbac_permission"
    EXFILTRATION_LIMIT = "exfiltration_limit"
    APPROVAL_BYPASS = "approval_bypass"
    LOCKDOWN_ACCESS = "lockdown_access"


class OverrideStatus(Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AbuseType(Enum):
    CIRCULAR_CHAIN = "circular_chain"
    RUBBER_STAMP = "rubber_stamp"
    COLLUSION = "collusion"
    FLOODING = "flooding"


class AbuseSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RejectionCode(Enum):
    JUSTIFICATION_TOO_SHORT = "JUSTIFICATION_TOO_SHORT"
    TICKET_REQUIRED = "TICKET_REQUIRED"
    SELF_GRANT = "SELF_GRANT"
    INVALID_DURATION = "INVALID_DURATION"
    ROLE_NOT_PERMITTED = "ROLE_NOT_PERMITTED"
    GRANTER_NOT_AUTHORIZED = "GRANTER_NOT_AUTHORIZED"
    ROLE_ESCALATION = "ROLE_ESCALATION"
    MODE_RESTRICTED = "MODE_RESTRICTED"
    THREAT_BLOCKED = "THREAT_BLOCKED"
    CIRCULAR_CHAIN = "CIRCULAR_CHAIN"
    COLLUSION = "COLLUSION"


@dataclass
class OverrideScope:
    """What an override covers. Empty action/resource lists mean 'any'."""
    type: OverrideType
    actions: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.type, OverrideType):
            self.type = OverrideType(self.type)

    def covers(self, action: str, resource: str) -> bool:
        if self.actions and action not in self.actions:
            return False
        if self.resources and resource not in self.resources and "*" not in self.resources:
            return False
        return True

    def overlaps(self, other: "OverrideScope") -> bool:
        if self.type != other.type:
            return False
        if self.actions and other.actions and not set(self.actions) & set(other.actions):
            return False
        if self.resources and other.resources and not set(self.resources) & set(other.resources):
            return False
        return True


@dataclass
class ScopePolicy:
    granter_roles: Set[Role]
    grantee_roles: Set[Role]
    max_duration_minutes: int


DEFAULT_SCOPE_POLICIES: Dict[OverrideType, ScopePolicy] = {
    OverrideType.SECURITY_GATE: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN},
        grantee_roles={Role.SYSTEM_ADMIN, Role.MANAGER, Role.OPS},
        max_duration_minutes=60,
    ),
    OverrideType.MODE_RESTRICTION: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN, Role.SYSTEM_ADMIN},
        grantee_roles={Role.MANAGER, Role.OPS, Role.EDITOR},
        max_duration_minutes=240,
    ),
    OverrideType.RBAC_PERMISSION: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN, Role.SYSTEM_ADMIN},
        grantee_roles={Role.MANAGER, Role.OPS, Role.EDITOR, Role.ANALYST},
        max_duration_minutes=480,
    ),
    OverrideType.EXFILTRATION_LIMIT: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN},
        grantee_roles={Role.MANAGER, Role.ANALYST},
        max_duration_minutes=60,
    ),
    OverrideType.APPROVAL_BYPASS: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN, Role.SYSTEM_ADMIN, Role.MANAGER},
        grantee_roles={Role.MANAGER, Role.OPS, Role.EDITOR},
        max_duration_minutes=30,
    ),
    OverrideType.LOCKDOWN_ACCESS: ScopePolicy(
        granter_roles={Role.SUPER_ADMIN},
        grantee_roles={Role.SYSTEM_ADMIN, Role.OPS},
        max_duration_minutes=15,
    ),
}

# Override types that may be issued in each security mode
OVERRIDABLE_IN_MODE: Dict[SecurityMode, Set[OverrideType]] = {
    SecurityMode.MONITOR: set(OverrideType) - {OverrideType.LOCKDOWN_ACCESS},
    SecurityMode.ENFORCE: {
        OverrideType.MODE_RESTRICTION,
        OverrideType.APPROVAL_BYPASS,
        OverrideType.EXFILTRATION_LIMIT,
    },
    SecurityMode.SUPERVISED: {
        OverrideType.MODE_RESTRICTION,
        OverrideType.APPROVAL_BYPASS,
        OverrideType.EXFILTRATION_LIMIT,
    },
    SecurityMode.LOCKDOWN: {OverrideType.LOCKDOWN_ACCESS},
}


@dataclass
class OverrideRequest:
    scope: OverrideScope
    granter_id: str
    granter_role: str
    grantee_user_id: str
    grantee_role: str
    justification: str
    ticket_reference: str
    duration_minutes: int
    requested_at: Optional[datetime] = None  # When the grantee asked; None skips deliberation timing
    max_uses: Optional[int] = None


@dataclass
class AbuseFlag:
    type: AbuseType
    severity: AbuseSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Rejection:
    code: RejectionCode
    message: str


@dataclass
class Override:
    id: str
    scope: OverrideScope
    granter_id: str
    granter_role: str
    grantee_user_id: str
    grantee_role: str
    justification: str
    ticket_reference: str
    duration_minutes: int
    created_at: datetime
    expires_at: datetime
    status: OverrideStatus = OverrideStatus.ACTIVE
    use_count: int = 0
    max_uses: Optional[int] = None
    flags: List[AbuseFlag] = field(default_factory=list)
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None


@dataclass
class OverrideResult:
    """Either an issued override or the complete list of rejection reasons"""
    override: Optional[Override] = None
    rejections: List[Rejection] = field(default_factory=list)
    flags: List[AbuseFlag] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.override is not None and not self.rejections


@dataclass
class OverrideCheck:
    valid: bool
    reason: Optional[str] = None
    override: Optional[Override] = None


@dataclass
class _GrantRecord:
    override_id: str
    granter_id: str
    grantee_user_id: str
    scope_type: OverrideType
    created_at: datetime


class OverrideRegistry:
    """
    Issues and tracks overrides. History is append-only; validation, abuse
    screening and the append happen under one lock.
    """

    def __init__(
        self,
        security_state: SecurityState,
        audit: AuditSink,
        scope_policies: Optional[Dict[OverrideType, ScopePolicy]] = None,
        min_justification_length: int = 20,
        min_duration_minutes: int = 1,
        min_deliberation_sec: int = 30,
        collusion_threshold: float = 0.8,
        collusion_min_approvals: int = 5,
        collusion_window_hours: int = 24,
        flood_per_hour: int = 20,
        reject_on_collusion: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.security_state = security_state
        self.audit = audit
        self.scope_policies = dict(scope_policies or DEFAULT_SCOPE_POLICIES)
        self.min_justification_length = min_justification_length
        self.min_duration_minutes = min_duration_minutes
        self.min_deliberation = timedelta(seconds=min_deliberation_sec)
        self.collusion_threshold = collusion_threshold
        self.collusion_min_approvals = collusion_min_approvals
        self.collusion_window = timedelta(hours=collusion_window_hours)
        self.flood_per_hour = flood_per_hour
        self.reject_on_collusion = reject_on_collusion
        self.clock = clock

        self._lock = threading.RLock()
        self._overrides: Dict[str, Override] = {}
        self._history: List[_GrantRecord] = []
        self._graph = ApprovalGraph()
        self._rejected_count = 0

    @classmethod
    def from_settings(cls, settings, security_state: SecurityState, audit: AuditSink) -> "OverrideRegistry":
        return cls(
            security_state,
            audit,
            min_justification_length=settings.OVERRIDE_MIN_JUSTIFICATION_LENGTH,
            min_duration_minutes=settings.OVERRIDE_MIN_DURATION_MINUTES,
            min_deliberation_sec=settings.OVERRIDE_MIN_DELIBERATION_SEC,
            collusion_threshold=settings.OVERRIDE_COLLUSION_THRESHOLD,
            collusion_min_approvals=settings.OVERRIDE_COLLUSION_MIN_APPROVALS,
            collusion_window_hours=settings.OVERRIDE_COLLUSION_WINDOW_HOURS,
            flood_per_hour=settings.OVERRIDE_FLOOD_PER_HOUR,
            reject_on_collusion=settings.OVERRIDE_REJECT_ON_COLLUSION,
        )

    # Request / validation

    def validate_request(self, request: OverrideRequest) -> List[Rejection]:
        """Every validation problem with ``request``, in check order."""
        rejections: List[Rejection] = []

        if len((request.justification or "").strip()) < self.min_justification_length:
            rejections.append(Rejection(
                RejectionCode.JUSTIFICATION_TOO_SHORT,
                f"Justification must be at least {self.min_justification_length} characters",
            ))

        if not (request.ticket_reference or "").strip():
            rejections.append(Rejection(
                RejectionCode.TICKET_REQUIRED, "A ticket reference is required",
            ))

        if request.grantee_user_id == request.granter_id:
            rejections.append(Rejection(
                RejectionCode.SELF_GRANT, "Overrides cannot be granted to oneself",
            ))

        policy = self.scope_policies.get(request.scope.type)
        max_duration = policy.max_duration_minutes if policy else 0
        if not self.min_duration_minutes <= request.duration_minutes <= max_duration:
            rejections.append(Rejection(
                RejectionCode.INVALID_DURATION,
                f"Duration must be between {self.min_duration_minutes} and {max_duration} minutes "
                f"for {request.scope.type.value}",
            ))

        grantee_role = _as_role(request.grantee_role)
        granter_role = _as_role(request.granter_role)
        if policy is None or grantee_role not in policy.grantee_roles:
            rejections.append(Rejection(
                RejectionCode.ROLE_NOT_PERMITTED,
                f"Role '{request.grantee_role}' may not receive {request.scope.type.value} overrides",
            ))
        if policy is None or granter_role not in policy.granter_roles:
            rejections.append(Rejection(
                RejectionCode.GRANTER_NOT_AUTHORIZED,
                f"Role '{request.granter_role}' may not grant {request.scope.type.value} overrides",
            ))

        if role_level([request.grantee_role]) > role_level([request.granter_role]):
            rejections.append(Rejection(
                RejectionCode.ROLE_ESCALATION,
                "Cannot grant an override to a role above one's own",
            ))

        mode = self.security_state.mode
        if request.scope.type not in OVERRIDABLE_IN_MODE.get(mode, set()):
            rejections.append(Rejection(
                RejectionCode.MODE_RESTRICTED,
                f"{request.scope.type.value} overrides are not allowed in {mode.value} mode",
            ))

        if self.security_state.threat_level == ThreatLevel.BLACK:
            rejections.append(Rejection(
                RejectionCode.THREAT_BLOCKED, "Overrides are blocked at threat level black",
            ))

        return rejections

    def request_override(self, request: OverrideRequest) -> OverrideResult:
        """Validate, screen for abuse and, if clean, issue an override."""
        with self._lock:
            now = self.clock()
            rejections = self.validate_request(request)
            flags: List[AbuseFlag] = []

            if not rejections:
                cycle = self._graph.find_cycle(request.granter_id, request.grantee_user_id, request.scope)
                if cycle is not None:
                    chain = " -> ".join(cycle + [request.grantee_user_id])
                    flags.append(AbuseFlag(
                        AbuseType.CIRCULAR_CHAIN, AbuseSeverity.CRITICAL,
                        f"Circular grant chain detected: {chain}",
                        {"chain": cycle},
                    ))
                    rejections.append(Rejection(
                        RejectionCode.CIRCULAR_CHAIN, f"Circular grant chain detected: {chain}",
                    ))

            if not rejections:
                flags.extend(self._screen(request, now))
                if self.reject_on_collusion and any(f.type == AbuseType.COLLUSION for f in flags):
                    rejections.append(Rejection(
                        RejectionCode.COLLUSION, "Approval concentration exceeds policy",
                    ))

            if rejections:
                self._rejected_count += 1
                OVERRIDE_REQUESTS.labels(outcome="rejected").inc()
                self.audit.log_override(
                    "override.rejected", None, request.granter_id, "rejected",
                    grantee=request.grantee_user_id,
                    scope=request.scope.type.value,
                    reasons=[r.code.value for r in rejections],
                    flags=[f.type.value for f in flags],
                )
                logger.warning(
                    f"Override rejected for {request.grantee_user_id} by {request.granter_id}: "
                    f"{[r.code.value for r in rejections]}"
                )
                return OverrideResult(rejections=rejections, flags=flags)

            override = Override(
                id=f"OVR-{int(now.timestamp())}-{uuid.uuid4().hex[:8]}",
                scope=request.scope,
                granter_id=request.granter_id,
                granter_role=request.granter_role,
                grantee_user_id=request.grantee_user_id,
                grantee_role=request.grantee_role,
                justification=request.justification,
                ticket_reference=request.ticket_reference,
                duration_minutes=request.duration_minutes,
                created_at=now,
                expires_at=now + timedelta(minutes=request.duration_minutes),
                max_uses=request.max_uses,
                flags=flags,
            )
            self._overrides[override.id] = override
            self._history.append(_GrantRecord(
                override.id, request.granter_id, request.grantee_user_id, request.scope.type, now,
            ))
            self._graph.add_grant(request.granter_id, request.grantee_user_id, request.scope, override.id)

        OVERRIDE_REQUESTS.labels(outcome="flagged" if flags else "granted").inc()
        self.audit.log_override(
            "override.granted", override.id, request.granter_id, "granted",
            grantee=request.grantee_user_id,
            scope=request.scope.type.value,
            ticket=request.ticket_reference,
            expires_at=override.expires_at.isoformat(),
            flags=[{"type": f.type.value, "severity": f.severity.value, "message": f.message} for f in flags],
        )
        if flags:
            logger.warning(f"Override {override.id} granted with abuse flags: {[f.type.value for f in flags]}")
        else:
            logger.info(f"Override {override.id} granted to {override.grantee_user_id} by {override.granter_id}")
        return OverrideResult(override=override, flags=flags)

    def _screen(self, request: OverrideRequest, now: datetime) -> List[AbuseFlag]:
        flags: List[AbuseFlag] = []

        if request.requested_at is not None:
            elapsed = now - request.requested_at
            if elapsed < self.min_deliberation:
                flags.append(AbuseFlag(
                    AbuseType.RUBBER_STAMP, AbuseSeverity.MEDIUM,
                    f"Approved {elapsed.total_seconds():.0f}s after request "
                    f"(minimum {self.min_deliberation.total_seconds():.0f}s)",
                    {"elapsed_sec": elapsed.total_seconds()},
                ))

        window_start = now - self.collusion_window
        recent = [r for r in self._history if r.created_at >= window_start]

        for label, matches in (
            ("grantee", lambda r: r.grantee_user_id == request.grantee_user_id),
            ("scope", lambda r: r.scope_type == request.scope.type),
        ):
            related = [r for r in recent if matches(r)]
            total = len(related) + 1
            from_granter = sum(1 for r in related if r.granter_id == request.granter_id) + 1
            share = from_granter / total
            if total >= self.collusion_min_approvals and share > self.collusion_threshold:
                flags.append(AbuseFlag(
                    AbuseType.COLLUSION, AbuseSeverity.HIGH,
                    f"{request.granter_id} issued {share:.0%} of {total} approvals for this {label}",
                    {"dimension": label, "share": share, "total": total},
                ))

        hour_ago = now - timedelta(hours=1)
        issued_last_hour = sum(
            1 for r in self._history if r.granter_id == request.granter_id and r.created_at >= hour_ago
        ) + 1
        if issued_last_hour > self.flood_per_hour:
            flags.append(AbuseFlag(
                AbuseType.FLOODING, AbuseSeverity.MEDIUM,
                f"{request.granter_id} issued {issued_last_hour} overrides in the last hour",
                {"count": issued_last_hour},
            ))

        return flags

    # Lifecycle

    def _refresh_status(self, override: Override, now: datetime) -> None:
        if override.status == OverrideStatus.ACTIVE and now >= override.expires_at:
            override.status = OverrideStatus.EXPIRED

    def validate_override(
        self,
        override_id: str,
        user_id: str,
        action: str,
        resource: str = "*",
        required_type: Optional[OverrideType] = None,
    ) -> OverrideCheck:
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None:
                return OverrideCheck(False, "Override not found")
            self._refresh_status(override, self.clock())
            if override.status != OverrideStatus.ACTIVE:
                return OverrideCheck(False, f"Override is {override.status.value}", override)
            if override.grantee_user_id != user_id:
                return OverrideCheck(False, "Override belongs to another user", override)
            if override.max_uses is not None and override.use_count >= override.max_uses:
                return OverrideCheck(False, "Override has no remaining uses", override)
            if required_type is not None and override.scope.type != required_type:
                return OverrideCheck(False, f"Override scope is {override.scope.type.value}", override)
            if not override.scope.covers(action, resource):
                return OverrideCheck(False, f"Override does not cover {action} on {resource}", override)
            return OverrideCheck(True, None, override)

    def use_override(self, override_id: str, user_id: str) -> bool:
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None or override.grantee_user_id != user_id:
                return False
            self._refresh_status(override, self.clock())
            if override.status != OverrideStatus.ACTIVE:
                return False
            override.use_count += 1
            if override.max_uses is not None and override.use_count >= override.max_uses:
                override.status = OverrideStatus.USED
            use_count = override.use_count

        self.audit.log_override("override.used", override_id, user_id, "used", use_count=use_count)
        return True

    def revoke_override(self, override_id: str, revoked_by: str, reason: str = "") -> bool:
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None or override.status != OverrideStatus.ACTIVE:
                return False
            override.status = OverrideStatus.REVOKED
            override.revoked_by = revoked_by
            override.revoked_at = self.clock()
            override.revoke_reason = reason

        self.audit.log_override("override.revoked", override_id, revoked_by, "revoked", reason=reason)
        logger.info(f"Override {override_id} revoked by {revoked_by}")
        return True

    def expire_overrides(self) -> int:
        """Mark every lapsed override expired; returns how many changed."""
        now = self.clock()
        expired = []
        with self._lock:
            for override in self._overrides.values():
                before = override.status
                self._refresh_status(override, now)
                if before != override.status:
                    expired.append(override.id)
        for override_id in expired:
            self.audit.log_override("override.expired", override_id, "system", "expired")
        return len(expired)

    def get_override(self, override_id: str) -> Optional[Override]:
        with self._lock:
            return self._overrides.get(override_id)

    def get_active_overrides(self, user_id: Optional[str] = None) -> List[Override]:
        self.expire_overrides()
        with self._lock:
            return [
                o for o in self._overrides.values()
                if o.status == OverrideStatus.ACTIVE
                and (user_id is None or o.grantee_user_id == user_id)
            ]

    def get_stats(self) -> Dict[str, Any]:
        self.expire_overrides()
        with self._lock:
            by_status = {status.value: 0 for status in OverrideStatus}
            by_type: Dict[str, int] = {}
            flagged = 0
            for override in self._overrides.values():
                by_status[override.status.value] += 1
                by_type[override.scope.type.value] = by_type.get(override.scope.type.value, 0) + 1
                if override.flags:
                    flagged += 1
            return {
                "total": len(self._overrides),
                "active": by_status[OverrideStatus.ACTIVE.value],
                "by_status": by_status,
                "by_type": by_type,
                "flagged": flagged,
                "rejected": self._rejected_count,
            }

    def reset(self) -> None:
        with self._lock:
            self._overrides.clear()
            self._history.clear()
            self._graph.clear()
            self._rejected_count = 0


def _as_role(name: str) -> Optional[Role]:
    try:
        return Role(name)
    except ValueError:
        return None
