"""
Safety Guard Engine

Pluggable checks run at three phases of every execution item:

- pre_execution: risk score, reversibility, scope
- during_execution: error rate, timeout
- post_execution: relative metric drop

Checks are plain records ``{id, name, type, check}`` held in an ordered
registry per phase. A check that raises is converted into a failing,
critical result that halts the plan.
"""

from typing import Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
import logging

from . import (
    CheckPhase,
    ExecutionItem,
    ExecutionPlan,
    ItemStatus,
    RiskLevel,
    RISK_SCORES,
    SafetyCheckResult,
    Severity,
    utcnow,
)
from .audit_logger import AuditSink
from .errors import ThresholdBreach
from controlplane.core.metrics import SAFETY_CHECK_FAILURES

logger = logging.getLogger(__name__)


@dataclass
class MetricsSnapshot:
    baseline: Dict[str, float] = field(default_factory=dict)
    current: Dict[str, float] = field(default_factory=dict)


CheckFn = Callable[[ExecutionPlan, ExecutionItem, Optional[MetricsSnapshot]], SafetyCheckResult]


@dataclass
class SafetyCheck:
    id: str
    name: str
    type: CheckPhase
    check: CheckFn
    enabled: bool = True
    description: str = ""


@dataclass
class CheckRunSummary:
    phase: CheckPhase
    passed: bool
    should_halt: bool
    should_rollback: bool
    results: List[SafetyCheckResult] = field(default_factory=list)

    @property
    def failures(self) -> List[SafetyCheckResult]:
        return [r for r in self.results if not r.passed]

    @property
    def warnings(self) -> List[SafetyCheckResult]:
        return [r for r in self.results if r.passed and r.severity == Severity.WARNING]

    def raise_for_breach(self) -> None:
        """Raise ThresholdBreach if any critical check failed."""
        if any(r.severity == Severity.CRITICAL for r in self.failures):
            raise ThresholdBreach(self)


# Built-in checks

def risk_score_check(plan: ExecutionPlan, item: ExecutionItem,
                     metrics: Optional[MetricsSnapshot] = None) -> SafetyCheckResult:
    limit = plan.config.max_risk_score
    if item.forecast is None:
        score = RISK_SCORES[RiskLevel.MEDIUM]
        note = "no forecast, assuming medium risk"
    else:
        score = item.forecast.score
        note = f"forecast {item.forecast.risk_level.value}"

    details = {"risk_score": score, "max_risk_score": limit}
    if score > limit:
        return SafetyCheckResult(
            passed=False,
            message=f"Risk score {score:.2f} exceeds maximum {limit:.2f} ({note})",
            severity=Severity.CRITICAL,
            details=details,
        )
    return SafetyCheckResult(
        passed=True,
        message=f"Risk score {score:.2f} within maximum {limit:.2f} ({note})",
        details=details,
    )


def reversibility_check(plan: ExecutionPlan, item: ExecutionItem,
                        metrics: Optional[MetricsSnapshot] = None) -> SafetyCheckResult:
    irreversible = [c for c in item.changes if not c.is_reversible]
    if irreversible:
        fields = [f"{c.target}.{c.field}" for c in irreversible]
        return SafetyCheckResult(
            passed=True,
            message=f"Warning: non-reversible change detected ({len(irreversible)} of "
                    f"{len(item.changes)}: {', '.join(fields)})",
            severity=Severity.WARNING,
            details={"non_reversible": fields},
        )
    return SafetyCheckResult(passed=True, message="All changes are reversible")


def scope_check(plan: ExecutionPlan, item: ExecutionItem,
                metrics: Optional[MetricsSnapshot] = None) -> SafetyCheckResult:
    """Distinct targets touched by the item's whole proposal, across every item it was split into."""
    targets = set(item.targets)
    for other in plan.items:
        if other.proposal_id == item.proposal_id:
            targets.update(other.targets)

    count = len(targets)
    limit = plan.config.max_affected_content
    details = {"targets": count, "max_affected_content": limit, "proposal_id": item.proposal_id}
    if count > limit:
        return SafetyCheckResult(
            passed=False,
            message=f"Too many affected targets: {count} > {limit}",
            severity=Severity.CRITICAL,
            details=details,
        )
    return SafetyCheckResult(
        passed=True,
        message=f"{count} affected target(s) within limit {limit}",
        details=details,
    )


def error_rate_check(plan: ExecutionPlan, item: ExecutionItem,
                     metrics: Optional[MetricsSnapshot] = None) -> SafetyCheckResult:
    failed = len(plan.items_with_status(ItemStatus.FAILED))
    completed = len(plan.items_with_status(ItemStatus.COMPLETED))
    total = failed + completed
    threshold = plan.config.rollback_on_error_rate
    if total == 0:
        return SafetyCheckResult(passed=True, message="No finished items yet")

    rate = failed / total
    details = {"failed": failed, "completed": completed, "error_rate": rate, "threshold": threshold}
    if rate > threshold:
        return SafetyCheckResult(
            passed=False,
            message=f"Error rate {rate:.0%} ({failed}/{total}) exceeds rollback threshold {threshold:.0%}",
            severity=Severity.CRITICAL,
            should_rollback=True,
            details=details,
        )
    return SafetyCheckResult(
        passed=True,
        message=f"Error rate {rate:.0%} within threshold {threshold:.0%}",
        details=details,
    )


def timeout_check(plan: ExecutionPlan, item: ExecutionItem,
                  metrics: Optional[MetricsSnapshot] = None,
                  now: Optional[datetime] = None) -> SafetyCheckResult:
    """Elapsed time since the item started, or since the plan started if the item has not."""
    started = item.started_at or plan.started_at
    if started is None:
        return SafetyCheckResult(passed=True, message="Not started")

    if now is None:
        now = utcnow()
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    elapsed_ms = (now - started).total_seconds() * 1000
    limit = plan.config.timeout_ms
    details = {"elapsed_ms": elapsed_ms, "timeout_ms": limit,
               "measured_from": "item" if item.started_at else "plan"}
    if elapsed_ms > limit:
        return SafetyCheckResult(
            passed=False,
            message=f"Execution timeout: {elapsed_ms:.0f}ms elapsed exceeds {limit}ms",
            severity=Severity.CRITICAL,
            should_halt=True,
            details=details,
        )
    return SafetyCheckResult(
        passed=True, message=f"{elapsed_ms:.0f}ms elapsed of {limit}ms", details=details,
    )


def metric_drop_check(plan: ExecutionPlan, item: ExecutionItem,
                      metrics: Optional[MetricsSnapshot] = None) -> SafetyCheckResult:
    if metrics is None or not metrics.baseline:
        return SafetyCheckResult(passed=True, message="No baseline metrics to compare")

    threshold = plan.config.rollback_on_metric_drop
    drops: Dict[str, float] = {}
    missing: List[str] = []
    for name, base in metrics.baseline.items():
        if base is None or base <= 0:
            continue
        current = metrics.current.get(name)
        if current is None:
            missing.append(name)
            continue
        drops[name] = (base - current) / base

    breaches = {name: drop for name, drop in drops.items() if drop > threshold}
    details = {"drops": drops, "threshold": threshold, "missing": missing}
    if breaches:
        summary = ", ".join(f"{name} -{drop:.1%}" for name, drop in breaches.items())
        return SafetyCheckResult(
            passed=False,
            message=f"Metric drop exceeds {threshold:.0%}: {summary}",
            severity=Severity.CRITICAL,
            should_rollback=True,
            details=details,
        )
    if missing:
        return SafetyCheckResult(
            passed=True,
            message=f"Metrics missing from current snapshot: {', '.join(missing)}",
            severity=Severity.WARNING,
            details=details,
        )
    return SafetyCheckResult(passed=True, message="No tracked metric dropped past threshold", details=details)


class SafetyGuardEngine:
    """Ordered per-phase check registry plus the aggregation rules."""

    def __init__(
        self,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
        register_builtin: bool = True,
    ):
        self.audit = audit
        self.clock = clock
        self._lock = threading.Lock()
        self._checks: Dict[CheckPhase, List[SafetyCheck]] = {phase: [] for phase in CheckPhase}

        if register_builtin:
            for check in self._builtin_checks():
                self.add_check(check)

    def _builtin_checks(self) -> List[SafetyCheck]:
        def clocked_timeout(plan, item, metrics=None):
            return timeout_check(plan, item, metrics, now=self.clock())

        return [
            SafetyCheck("risk_score", "Risk score", CheckPhase.PRE_EXECUTION, risk_score_check),
            SafetyCheck("reversibility", "Reversibility", CheckPhase.PRE_EXECUTION, reversibility_check),
            SafetyCheck("scope", "Affected scope", CheckPhase.PRE_EXECUTION, scope_check),
            SafetyCheck("error_rate", "Error rate", CheckPhase.DURING_EXECUTION, error_rate_check),
            SafetyCheck("timeout", "Timeout", CheckPhase.DURING_EXECUTION, clocked_timeout),
            SafetyCheck("metric_drop", "Metric drop", CheckPhase.POST_EXECUTION, metric_drop_check),
        ]

    def add_check(self, check: SafetyCheck) -> None:
        with self._lock:
            for registered in self._checks.values():
                if any(c.id == check.id for c in registered):
                    raise ValueError(f"Safety check '{check.id}' is already registered")
            self._checks[check.type].append(check)
        logger.debug(f"Registered safety check {check.id} for {check.type.value}")

    def remove_check(self, check_id: str) -> bool:
        with self._lock:
            for checks in self._checks.values():
                for check in checks:
                    if check.id == check_id:
                        checks.remove(check)
                        return True
        return False

    def get_checks_by_type(self, phase: CheckPhase) -> List[SafetyCheck]:
        with self._lock:
            return list(self._checks[phase])

    def set_enabled(self, check_id: str, enabled: bool) -> bool:
        with self._lock:
            for checks in self._checks.values():
                for check in checks:
                    if check.id == check_id:
                        check.enabled = enabled
                        return True
        return False

    def run_checks(
        self,
        phase: CheckPhase,
        plan: ExecutionPlan,
        item: ExecutionItem,
        metrics: Optional[MetricsSnapshot] = None,
    ) -> CheckRunSummary:
        """Run every enabled check for ``phase`` and aggregate the results."""
        results: List[SafetyCheckResult] = []
        for check in self.get_checks_by_type(phase):
            if not check.enabled:
                continue
            try:
                result = check.check(plan, item, metrics)
                if not isinstance(result, SafetyCheckResult):
                    raise TypeError(f"returned {type(result).__name__}, not SafetyCheckResult")
            except Exception as e:
                logger.error(f"Safety check {check.id} raised on item {item.id}: {e}")
                result = SafetyCheckResult(
                    passed=False,
                    message=f"Check '{check.name}' failed with an unexpected error: {e}",
                    severity=Severity.CRITICAL,
                    should_halt=True,
                    details={"exception": type(e).__name__},
                )

            if not result.check_id:
                result.check_id = check.id
            if not result.check_name:
                result.check_name = check.name
            results.append(result)

            if not result.passed:
                SAFETY_CHECK_FAILURES.labels(phase=phase.value, check=check.id).inc()
                logger.warning(f"[{phase.value}] {check.id} failed for item {item.id}: {result.message}")
            if self.audit is not None:
                self.audit.log_check_result(phase.value, plan.id, item.id, result)

        return CheckRunSummary(
            phase=phase,
            passed=all(r.passed for r in results),
            should_halt=any(r.should_halt for r in results),
            should_rollback=any(r.should_rollback for r in results),
            results=results,
        )

    def run_pre_execution_checks(self, plan: ExecutionPlan, item: ExecutionItem) -> CheckRunSummary:
        return self.run_checks(CheckPhase.PRE_EXECUTION, plan, item)

    def run_during_execution_checks(self, plan: ExecutionPlan, item: ExecutionItem) -> CheckRunSummary:
        return self.run_checks(CheckPhase.DURING_EXECUTION, plan, item)

    def run_post_execution_checks(
        self,
        plan: ExecutionPlan,
        item: ExecutionItem,
        baseline: Dict[str, float],
        current: Dict[str, float],
    ) -> CheckRunSummary:
        return self.run_checks(
            CheckPhase.POST_EXECUTION, plan, item, MetricsSnapshot(baseline=baseline, current=current)
        )
