"""
RollbackManager: Reverse-Ordered Compensation

Builds rollback plans from an item's changes and executes them through the
injected ChangeApplier. Steps undo the last-applied change first, so
layered edits to the same field unwind correctly. Non-reversible changes
never become steps; they are recorded as risk notes.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import threading
import logging

from . import (
    AuditCategory,
    ExecutionItem,
    ExecutionPlan,
    REVERSE_ACTIONS,
    RollbackPlan,
    RollbackStep,
    utcnow,
)
from .appliers import ChangeApplier
from .audit_logger import AuditSink
from controlplane.core.metrics import ROLLBACK_STEPS

logger = logging.getLogger(__name__)

StepCallback = Callable[[Dict[str, Any]], None]


@dataclass
class RollbackResult:
    success: bool
    error: Optional[str] = None
    item_id: Optional[str] = None
    steps_executed: int = 0


@dataclass
class PlanRollbackResult:
    success: bool
    rolled_back: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    rolled_back_item_ids: List[str] = field(default_factory=list)


@dataclass
class RollbackAvailability:
    can_rollback: bool
    reason: Optional[str] = None


class RollbackManager:
    """
    Owns keyed RollbackPlan records. Reads items and plans, never writes
    their status.
    """

    def __init__(
        self,
        applier: ChangeApplier,
        audit: AuditSink,
        plan_lookup: Callable[[str], Optional[ExecutionPlan]],
        complexity_threshold: int = 5,
        max_history: int = 100,
    ):
        self.applier = applier
        self.audit = audit
        self.plan_lookup = plan_lookup
        self.complexity_threshold = complexity_threshold
        self.max_history = max_history
        self._lock = threading.Lock()
        self._plans: Dict[str, RollbackPlan] = {}
        self._history: List[Dict[str, Any]] = []

    def create_rollback_plan(self, item: ExecutionItem, plan_id: Optional[str] = None) -> RollbackPlan:
        """Build and store the compensating steps for ``item``, last change first."""
        steps: List[RollbackStep] = []
        risks: List[str] = []

        for change in reversed(item.changes):
            if not change.is_reversible:
                risks.append(
                    f"Change to {change.target}.{change.field} ({change.type.value}) cannot be rolled back"
                )
                continue
            steps.append(RollbackStep(
                action=REVERSE_ACTIONS[change.type],
                data={
                    "target": change.target,
                    "field": change.field,
                    "restore_value": change.current_value,
                    "applied_value": change.new_value,
                },
                change=change,
            ))

        if len(steps) > self.complexity_threshold:
            risks.append(
                f"Complex rollback: {len(steps)} steps exceeds {self.complexity_threshold}; "
                f"partial failure is more likely"
            )

        rollback_plan = RollbackPlan(item_id=item.id, steps=steps, risks=risks, plan_id=plan_id)
        with self._lock:
            self._plans[item.id] = rollback_plan
        logger.debug(f"Rollback plan for {item.id}: {len(steps)} steps, {len(risks)} risks")
        return rollback_plan

    def get_rollback_plan(self, item_id: str) -> Optional[RollbackPlan]:
        with self._lock:
            return self._plans.get(item_id)

    def can_rollback(self, item_id: str) -> RollbackAvailability:
        rollback_plan = self.get_rollback_plan(item_id)
        if rollback_plan is None:
            return RollbackAvailability(False, "No rollback plan available")
        if not rollback_plan.steps:
            return RollbackAvailability(False, "No reversible changes")
        return RollbackAvailability(True)

    def execute_rollback(self, item_id: str, on_step: Optional[StepCallback] = None) -> RollbackResult:
        """Run the stored steps in order; the first failing step stops the item."""
        rollback_plan = self.get_rollback_plan(item_id)
        if rollback_plan is None:
            return RollbackResult(False, "Rollback plan not found", item_id)
        if not rollback_plan.steps:
            logger.warning(f"Rollback requested for {item_id} with no reversible changes")
            return RollbackResult(False, "No reversible changes to rollback", item_id)

        executed = 0
        for index, step in enumerate(rollback_plan.steps, start=1):
            try:
                result = self.applier.revert(step.change)
            except Exception as e:
                ROLLBACK_STEPS.labels(outcome="failed").inc()
                self.audit.log_rollback_step(
                    item_id, rollback_plan.plan_id, step.action.value, False,
                    step=index, target=step.data["target"], field=step.data["field"], error=str(e),
                )
                logger.error(f"Rollback step {index} ({step.action.value}) failed for {item_id}: {e}")
                self._record(item_id, rollback_plan.plan_id, False, executed, str(e))
                return RollbackResult(
                    False, f"Step {index} ({step.action.value}) failed: {e}", item_id, executed
                )

            executed += 1
            ROLLBACK_STEPS.labels(outcome="success").inc()
            self.audit.log_rollback_step(
                item_id, rollback_plan.plan_id, step.action.value, True,
                step=index, target=step.data["target"], field=step.data["field"],
            )
            if on_step is not None:
                try:
                    on_step({
                        "action": "item_rolled_back",
                        "item_id": item_id,
                        "step": step.action.value,
                        "result": result,
                    })
                except Exception:
                    logger.exception(f"Rollback step callback failed for {item_id}")

        self._record(item_id, rollback_plan.plan_id, True, executed, None)
        logger.info(f"Rolled back {item_id} in {executed} steps")
        return RollbackResult(True, None, item_id, executed)

    def rollback_plan(self, plan_id: str, on_step: Optional[StepCallback] = None) -> PlanRollbackResult:
        """
        Roll back every completed item of a plan, most recently completed
        first. One item's failure never stops the rest.
        """
        plan = self.plan_lookup(plan_id)
        if plan is None:
            return PlanRollbackResult(success=False, errors=["Plan not found"])

        outcome = PlanRollbackResult(success=True)
        for item in plan.completed_in_reverse_order():
            if self.get_rollback_plan(item.id) is None:
                self.create_rollback_plan(item, plan.id)
            result = self.execute_rollback(item.id, on_step)
            if result.success:
                outcome.rolled_back += 1
                outcome.rolled_back_item_ids.append(item.id)
            else:
                outcome.failed += 1
                outcome.errors.append(f"{item.id}: {result.error}")

        outcome.success = outcome.failed == 0
        self.audit.record(
            AuditCategory.ROLLBACK,
            "rollback.plan",
            decision="success" if outcome.success else "partial",
            plan_id=plan_id,
            details={
                "rolled_back": outcome.rolled_back,
                "failed": outcome.failed,
                "errors": list(outcome.errors),
            },
        )
        logger.info(f"Plan {plan_id} rollback: {outcome.rolled_back} rolled back, {outcome.failed} failed")
        return outcome

    def _record(self, item_id: str, plan_id: Optional[str], success: bool, steps: int, error: Optional[str]) -> None:
        with self._lock:
            self._history.append({
                "item_id": item_id,
                "plan_id": plan_id,
                "success": success,
                "steps_executed": steps,
                "error": error,
                "timestamp": utcnow(),
            })
            if len(self._history) > self.max_history:
                self._history = self._history[-self.max_history:]

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history[-limit:] if limit else self._history)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "stored_plans": len(self._plans),
                "executed": len(self._history),
                "succeeded": sum(1 for h in self._history if h["success"]),
                "failed": sum(1 for h in self._history if not h["success"]),
            }

    def clear(self) -> None:
        """Drop every stored rollback plan and the execution history."""
        with self._lock:
            self._plans.clear()
            self._history.clear()
