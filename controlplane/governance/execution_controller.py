"""
ExecutionController: Governed Plan Execution

Drives an execution plan item by item:

1. Authorize the intent to run autonomously through the decision gate
2. Start ready items (dependencies completed) in sequence order, bounded by
   ``max_concurrent`` and paced by ``delay_between_ms``
3. Per item: pre-checks -> apply (external) -> during-checks -> post-checks
4. Honor halt and rollback signals: stop new starts, never preempt an
   in-flight change, and compensate completed items on rollback

The controller is the only writer of item and plan status.
"""

from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import time
import logging

from . import (
    Actor,
    ExecutionItem,
    ExecutionPlan,
    GateDecision,
    GateRequest,
    ItemStatus,
    PlanMode,
    PlanStatus,
    utcnow,
)
from .appliers import ChangeApplier, MetricsSource
from .audit_logger import AuditSink
from .decision_gate import DecisionGate
from .errors import ValidationError
from .execution_planner import ExecutionPlanner
from .rollback_manager import PlanRollbackResult, RollbackManager
from .rule_evaluator import PlatformGovernor
from .safety_guards import CheckRunSummary, SafetyGuardEngine
from controlplane.core.metrics import EXECUTION_ITEMS, ITEM_DURATION

logger = logging.getLogger(__name__)

EXECUTION_FEATURE = "autonomous_execution"


@dataclass
class _PlanRun:
    """Runtime signals for one plan execution"""
    halt_requested: bool = False
    rollback_requested: bool = False
    manual_rollback: bool = False
    reason: Optional[str] = None
    summaries: Dict[str, List[CheckRunSummary]] = field(default_factory=dict)
    rollback_result: Optional[PlanRollbackResult] = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stop_requested(self) -> bool:
        return self.halt_requested or self.rollback_requested

    def request_halt(self, reason: str) -> None:
        if not self.halt_requested:
            self.halt_requested = True
            self.reason = self.reason or reason

    def request_rollback(self, reason: str) -> None:
        if not self.rollback_requested:
            self.rollback_requested = True
            self.reason = self.reason or reason


@dataclass
class ExecutionReport:
    plan_id: str
    status: PlanStatus
    authorized: bool
    decision: Optional[GateDecision] = None
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    rolled_back: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    halt_reason: Optional[str] = None
    rollback: Optional[PlanRollbackResult] = None
    checks: Dict[str, List[CheckRunSummary]] = field(default_factory=dict)


class ExecutionController:
    """Runs plans through the gate, the safety guards and the rollback manager"""

    def __init__(
        self,
        planner: ExecutionPlanner,
        gate: DecisionGate,
        guards: SafetyGuardEngine,
        rollback_manager: RollbackManager,
        applier: ChangeApplier,
        audit: AuditSink,
        metrics_source: Optional[MetricsSource] = None,
        governor: Optional[PlatformGovernor] = None,
        auto_rollback_on_signal: bool = True,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.planner = planner
        self.gate = gate
        self.guards = guards
        self.rollback_manager = rollback_manager
        self.applier = applier
        self.audit = audit
        self.metrics_source = metrics_source
        self.governor = governor
        self.auto_rollback_on_signal = auto_rollback_on_signal
        self._sleep = sleep
        self.clock = clock
        self._runs: Dict[str, _PlanRun] = {}

    def _get_plan(self, plan_id: str) -> ExecutionPlan:
        plan = self.planner.get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Plan {plan_id} not found")
        return plan

    async def execute_plan(self, plan_id: str, actor: Actor) -> ExecutionReport:
        """Authorize and run a draft plan to completion, halt or rollback."""
        plan = self._get_plan(plan_id)
        if plan.status != PlanStatus.DRAFT:
            raise ValidationError(f"Plan {plan_id} is {plan.status.value}, expected draft")

        decision = self.gate.assert_allowed(GateRequest(
            actor=actor,
            action="autonomous_execute",
            resource=f"plan:{plan.id}",
            context={"plan_id": plan.id, "items": len(plan.items), "mode": plan.mode.value},
        ))
        if not decision.allowed:
            logger.warning(f"Plan {plan.id} not authorized: {decision.decision.value} ({decision.reason})")
            self.audit.log_execution(
                "plan.not_authorized", plan.id, actor_id=actor.user_id,
                decision=decision.decision.value, gate_audit_id=decision.audit_id,
            )
            return self._report(plan, decision, None, authorized=False)

        run = _PlanRun()
        self._runs[plan.id] = run
        plan.status = PlanStatus.RUNNING
        plan.started_at = self.clock()
        self.audit.log_execution(
            "plan.started", plan.id, actor_id=actor.user_id, decision=PlanStatus.RUNNING.value,
            gate_audit_id=decision.audit_id,
        )
        logger.info(f"Starting plan {plan.id} ({len(plan.items)} items, mode={plan.mode.value})")

        try:
            await self._drive(plan, run)
            await self._finalize(plan, run, actor.user_id)
        finally:
            run.finished.set()

        return self._report(plan, decision, run, authorized=True)

    def _ready_items(self, plan: ExecutionPlan, started: Set[str]) -> List[ExecutionItem]:
        status_by_id = {item.id: item.status for item in plan.items}
        ready = [
            item for item in plan.items
            if item.status == ItemStatus.PENDING
            and item.id not in started
            and all(status_by_id.get(dep) == ItemStatus.COMPLETED for dep in item.dependencies)
        ]
        return sorted(ready, key=lambda item: item.sequence)

    def _fail_blocked(self, plan: ExecutionPlan) -> None:
        """Fail pending items whose dependencies can no longer complete, transitively."""
        dead = (ItemStatus.FAILED, ItemStatus.ROLLED_BACK)
        changed = True
        while changed:
            changed = False
            status_by_id = {item.id: item.status for item in plan.items}
            for item in plan.items_with_status(ItemStatus.PENDING):
                blocker = next((d for d in item.dependencies if status_by_id.get(d) in dead), None)
                if blocker is not None:
                    self._finish(plan, item, ItemStatus.FAILED, f"Dependency {blocker} did not complete")
                    changed = True

    def _start_delay(self, plan: ExecutionPlan) -> float:
        delay = plan.config.delay_between_ms / 1000.0
        if self.governor is not None:
            factor = self.governor.get_throttle_factor(EXECUTION_FEATURE)
            if 0 < factor < 1:
                delay = delay / factor
        return delay

    async def _may_start(self, plan: ExecutionPlan, run: _PlanRun, last_start: Optional[float]) -> bool:
        """Gate the next item start on signals, governor restrictions and pacing."""
        if run.stop_requested:
            return False
        if self.governor is not None and self.governor.is_system_restricted(EXECUTION_FEATURE):
            run.request_halt("Governor restriction active on autonomous_execution")
            return False
        if last_start is not None:
            wait = self._start_delay(plan) - (time.monotonic() - last_start)
            if wait > 0:
                await self._sleep(wait)
        return not run.stop_requested

    async def _drive(self, plan: ExecutionPlan, run: _PlanRun) -> None:
        semaphore = asyncio.Semaphore(plan.config.max_concurrent)
        in_flight: Set[asyncio.Task] = set()
        started: Set[str] = set()
        last_start: Optional[float] = None

        while not run.stop_requested:
            self._fail_blocked(plan)
            ready = self._ready_items(plan, started)
            if not ready:
                if not in_flight:
                    break
                await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                continue

            await semaphore.acquire()
            try:
                may_start = await self._may_start(plan, run, last_start)
            except BaseException:
                semaphore.release()
                raise
            if not may_start:
                semaphore.release()
                break

            item = ready[0]
            last_start = time.monotonic()
            started.add(item.id)
            task = asyncio.create_task(self._run_item(plan, item, run))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
            task.add_done_callback(lambda _task: semaphore.release())

        # Halt and rollback stop new starts; in-flight items always finish
        if in_flight:
            await asyncio.gather(*in_flight)

    async def _run_item(self, plan: ExecutionPlan, item: ExecutionItem, run: _PlanRun) -> None:
        summaries = run.summaries.setdefault(item.id, [])
        item.status = ItemStatus.RUNNING
        item.started_at = self.clock()
        self.audit.log_execution("item.started", plan.id, item.id, decision=ItemStatus.RUNNING.value,
                                 sequence=item.sequence)
        try:
            pre = self.guards.run_pre_execution_checks(plan, item)
            summaries.append(pre)
            self._apply_signals(run, pre)
            if not pre.passed:
                reasons = "; ".join(r.message for r in pre.failures)
                self._finish(plan, item, ItemStatus.FAILED, f"Pre-execution checks failed: {reasons}")
                during = self.guards.run_during_execution_checks(plan, item)
                summaries.append(during)
                self._apply_signals(run, during)
                return

            baseline = self.metrics_source.baseline(plan, item) if self.metrics_source else {}
            self.rollback_manager.create_rollback_plan(item, plan.id)

            error = None
            if plan.mode != PlanMode.DRY_RUN:
                error = await self._apply_changes(plan, item)

            if error is not None:
                self._finish(plan, item, ItemStatus.FAILED, error)
            else:
                self._finish(plan, item, ItemStatus.COMPLETED)

            during = self.guards.run_during_execution_checks(plan, item)
            summaries.append(during)
            self._apply_signals(run, during)

            if item.status == ItemStatus.COMPLETED and self.metrics_source is not None:
                current = self.metrics_source.current(plan, item)
                post = self.guards.run_post_execution_checks(plan, item, baseline, current)
                summaries.append(post)
                self._apply_signals(run, post)
        except Exception as e:
            logger.exception(f"Unexpected error executing item {item.id}")
            if item.status in (ItemStatus.PENDING, ItemStatus.RUNNING):
                self._finish(plan, item, ItemStatus.FAILED, f"Unexpected error: {e}")
            run.request_halt(f"Unexpected error in item {item.id}: {e}")

    async def _apply_changes(self, plan: ExecutionPlan, item: ExecutionItem) -> Optional[str]:
        """Apply every change; on failure undo the ones already applied and return the error."""
        applied = []
        for change in item.changes:
            try:
                await asyncio.to_thread(self.applier.apply, change)
            except Exception as e:
                logger.error(f"Apply failed for {item.id} at {change.target}.{change.field}: {e}")
                await self._compensate_partial(plan, item, applied)
                return f"Apply failed at {change.target}.{change.field}: {e}"
            applied.append(change)
        return None

    async def _compensate_partial(self, plan: ExecutionPlan, item: ExecutionItem, applied: list) -> None:
        for change in reversed(applied):
            if not change.is_reversible:
                continue
            try:
                await asyncio.to_thread(self.applier.revert, change)
                self.audit.log_rollback_step(item.id, plan.id, "compensate_partial_apply", True,
                                             target=change.target, field=change.field)
            except Exception as e:
                logger.error(f"Partial-apply compensation failed for {item.id}: {e}")
                self.audit.log_rollback_step(item.id, plan.id, "compensate_partial_apply", False,
                                             target=change.target, field=change.field, error=str(e))

    def _finish(self, plan: ExecutionPlan, item: ExecutionItem, status: ItemStatus,
                error: Optional[str] = None) -> None:
        item.status = status
        item.completed_at = self.clock()
        item.error = error
        if status == ItemStatus.COMPLETED:
            plan.completion_order.append(item.id)
        if item.started_at is not None:
            ITEM_DURATION.observe((item.completed_at - item.started_at).total_seconds())
        EXECUTION_ITEMS.labels(status=status.value).inc()
        self.audit.log_execution(f"item.{status.value}", plan.id, item.id, decision=status.value, error=error)
        if error:
            logger.warning(f"Item {item.id} {status.value}: {error}")

    def _apply_signals(self, run: _PlanRun, summary: CheckRunSummary) -> None:
        reason = "; ".join(r.message for r in summary.failures) or summary.phase.value
        if summary.should_rollback:
            if self.auto_rollback_on_signal:
                run.request_rollback(reason)
            else:
                run.request_halt(f"Rollback signal (auto-rollback disabled): {reason}")
        if summary.should_halt:
            run.request_halt(reason)

    async def _finalize(self, plan: ExecutionPlan, run: _PlanRun, actor_id: str) -> None:
        wants_rollback = run.rollback_requested and (self.auto_rollback_on_signal or run.manual_rollback)
        if wants_rollback and plan.mode != PlanMode.DRY_RUN:
            run.rollback_result = await self._rollback(plan, actor_id)
            if run.rollback_result.failed:
                plan.status = PlanStatus.HALTED
                plan.halt_reason = (
                    f"Rollback incomplete ({run.rollback_result.failed} failed) after: {run.reason}"
                )
            elif run.rollback_result.rolled_back:
                plan.status = PlanStatus.ROLLED_BACK
                plan.halt_reason = run.reason
            else:
                # Nothing had completed, so nothing was compensated
                plan.status = PlanStatus.HALTED
                plan.halt_reason = run.reason
        elif run.stop_requested:
            plan.status = PlanStatus.HALTED
            plan.halt_reason = run.reason
        elif plan.items_with_status(ItemStatus.PENDING):
            plan.status = PlanStatus.HALTED
            plan.halt_reason = "Items blocked by dependencies that did not complete"
        else:
            plan.status = PlanStatus.COMPLETED

        plan.finished_at = self.clock()
        self.audit.log_execution(
            "plan.finished", plan.id, actor_id=actor_id, decision=plan.status.value,
            reason=plan.halt_reason,
            completed=len(plan.items_with_status(ItemStatus.COMPLETED)),
            failed=len(plan.items_with_status(ItemStatus.FAILED)),
            rolled_back=len(plan.items_with_status(ItemStatus.ROLLED_BACK)),
        )
        logger.info(f"Plan {plan.id} finished: {plan.status.value}")

    async def _rollback(self, plan: ExecutionPlan, actor_id: str) -> PlanRollbackResult:
        result = await asyncio.to_thread(self.rollback_manager.rollback_plan, plan.id)
        for item_id in result.rolled_back_item_ids:
            item = plan.get_item(item_id)
            if item is not None:
                item.status = ItemStatus.ROLLED_BACK
                EXECUTION_ITEMS.labels(status=ItemStatus.ROLLED_BACK.value).inc()
        self.audit.log_execution(
            "plan.rolled_back", plan.id, actor_id=actor_id,
            decision="success" if result.success else "partial",
            rolled_back=result.rolled_back, failed=result.failed,
        )
        return result

    def halt(self, plan_id: str, actor_id: str, reason: str = "Manual halt") -> bool:
        """Stop new item starts. In-flight items finish; nothing is rolled back."""
        plan = self._get_plan(plan_id)
        run = self._runs.get(plan_id)
        if plan.status == PlanStatus.RUNNING and run is not None:
            run.request_halt(f"{reason} (by {actor_id})")
        elif plan.status == PlanStatus.DRAFT:
            plan.status = PlanStatus.HALTED
            plan.halt_reason = f"{reason} (by {actor_id})"
            plan.finished_at = self.clock()
        else:
            return False
        self.audit.log_execution("plan.halt_requested", plan_id, actor_id=actor_id, decision="halt", reason=reason)
        logger.warning(f"Halt requested for plan {plan_id} by {actor_id}: {reason}")
        return True

    async def rollback(self, plan_id: str, actor: Actor, reason: str = "Manual rollback") -> PlanRollbackResult:
        """
        Explicitly roll back a plan's completed items. Authorized through the
        gate; a running plan stops starting items and rolls back once
        in-flight items finish.
        """
        plan = self._get_plan(plan_id)
        decision = self.gate.assert_allowed(GateRequest(
            actor=actor, action="rollback", resource=f"plan:{plan.id}", context={"plan_id": plan.id},
        ))
        if not decision.allowed:
            return PlanRollbackResult(success=False, errors=[f"{decision.decision.value}: {decision.reason}"])
        if plan.mode == PlanMode.DRY_RUN:
            return PlanRollbackResult(success=False, errors=["Dry-run plans have nothing to roll back"])

        run = self._runs.get(plan_id)
        if plan.status == PlanStatus.RUNNING and run is not None:
            run.manual_rollback = True
            run.request_rollback(f"{reason} (by {actor.user_id})")
            await run.finished.wait()
            return run.rollback_result or PlanRollbackResult(success=False, errors=["Rollback did not run"])

        if plan.status == PlanStatus.DRAFT:
            return PlanRollbackResult(success=False, errors=["Plan has not run"])

        result = await self._rollback(plan, actor.user_id)
        if result.rolled_back and not result.failed:
            plan.status = PlanStatus.ROLLED_BACK
        elif result.failed:
            plan.status = PlanStatus.HALTED
            plan.halt_reason = f"Rollback incomplete ({result.failed} failed)"
        return result

    def get_report(self, plan_id: str) -> ExecutionReport:
        plan = self._get_plan(plan_id)
        return self._report(plan, None, self._runs.get(plan_id), authorized=plan.started_at is not None)

    def _report(self, plan: ExecutionPlan, decision: Optional[GateDecision],
                run: Optional[_PlanRun], authorized: bool) -> ExecutionReport:
        def ids(status: ItemStatus) -> List[str]:
            return [item.id for item in plan.items_with_status(status)]

        return ExecutionReport(
            plan_id=plan.id,
            status=plan.status,
            authorized=authorized,
            decision=decision,
            completed=ids(ItemStatus.COMPLETED),
            failed=ids(ItemStatus.FAILED),
            rolled_back=ids(ItemStatus.ROLLED_BACK),
            pending=ids(ItemStatus.PENDING),
            halt_reason=plan.halt_reason,
            rollback=run.rollback_result if run else None,
            checks=dict(run.summaries) if run else {},
        )

    def reset(self) -> None:
        self._runs.clear()
