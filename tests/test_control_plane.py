"""
End-to-end tests for the ControlPlane composition.
"""

import pytest

from controlplane.core.config import Settings
from controlplane.governance import (
    Actor,
    AuditCategory,
    ItemStatus,
    PlanStatus,
    SecurityMode,
    ThreatLevel,
)
from controlplane.governance.appliers import InMemoryChangeApplier
from controlplane.governance.control_plane import ControlPlane


@pytest.fixture
def applier():
    return InMemoryChangeApplier()


@pytest.fixture
def control_plane(applier):
    return ControlPlane(settings=Settings(PLAN_DELAY_BETWEEN_MS=1), applier=applier)


class TestComposition:
    def test_components_share_state(self, control_plane):
        assert control_plane.gate.security_state is control_plane.security_state
        assert control_plane.overrides.security_state is control_plane.security_state
        assert control_plane.executor.governor is control_plane.governor
        assert control_plane.rollback.plan_lookup == control_plane.planner.get_plan
        assert control_plane.security_state.mode == SecurityMode.ENFORCE

    def test_settings_drive_defaults(self):
        control_plane = ControlPlane(settings=Settings(
            DEFAULT_SECURITY_MODE="supervised", DEFAULT_THREAT_LEVEL="yellow",
            PLAN_MAX_CONCURRENT=3, AUTO_ROLLBACK_ON_SIGNAL=False,
        ))
        assert control_plane.security_state.mode == SecurityMode.SUPERVISED
        assert control_plane.security_state.threat_level == ThreatLevel.YELLOW
        assert control_plane.planner.default_config.max_concurrent == 3
        assert control_plane.executor.auto_rollback_on_signal is False


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_run_then_roll_back(self, control_plane, applier, make_proposal, manager):
        proposals = [make_proposal(f"p-{t}", target=t) for t in ("home", "pricing")]
        plan = control_plane.create_plan("landing pages", proposals, created_by="mgr-1")

        report = await control_plane.execute_plan(plan.id, manager)
        assert report.status == PlanStatus.COMPLETED
        assert applier.get("pricing", "title") == "new-p-pricing"

        result = await control_plane.rollback_plan(plan.id, manager)
        assert result.success
        assert plan.status == PlanStatus.ROLLED_BACK
        assert all(item.status == ItemStatus.ROLLED_BACK for item in plan.items)
        assert applier.get("home", "title") == "old-p-home"

        categories = {e.category for e in control_plane.audit.get_audit_trail(plan_id=plan.id)}
        assert {AuditCategory.GATE, AuditCategory.EXECUTION, AuditCategory.SAFETY_CHECK,
                AuditCategory.ROLLBACK} <= categories

    @pytest.mark.asyncio
    async def test_governor_blocks_execution(self, control_plane, make_proposal, manager):
        control_plane.evaluate_platform({"incident_severity": "critical"})
        plan = control_plane.create_plan("blocked", [make_proposal()])

        report = await control_plane.execute_plan(plan.id, manager)
        assert report.status == PlanStatus.HALTED
        assert report.pending == [plan.items[0].id]

    @pytest.mark.asyncio
    async def test_lockdown_denies(self, control_plane, make_proposal):
        control_plane.security_state.set_mode(SecurityMode.LOCKDOWN, "root-1")
        plan = control_plane.create_plan("locked", [make_proposal()])

        report = await control_plane.execute_plan(plan.id, Actor("root-1", ["super_admin"]))
        assert not report.authorized
        assert plan.status == PlanStatus.DRAFT

    def test_halt_plan(self, control_plane, make_proposal):
        plan = control_plane.create_plan("paused", [make_proposal()])
        assert control_plane.halt_plan(plan.id, "mgr-1", "change freeze")
        assert plan.halt_reason == "change freeze (by mgr-1)"


class TestStatusAndReset:
    @pytest.mark.asyncio
    async def test_status_snapshot(self, control_plane, make_proposal, manager):
        plan = control_plane.create_plan("batch", [make_proposal()])
        await control_plane.execute_plan(plan.id, manager)
        control_plane.evaluate_platform({"error_rate": 0.5})

        status = control_plane.status()
        assert status["plans"] == {plan.id: "completed"}
        assert status["restrictions"] == ["error_rate_spike:autonomous_execution"]
        assert status["gate"]["total"] == 1
        assert status["security"]["level"] == "green"
        assert status["audit_entries"] == len(control_plane.audit)

    @pytest.mark.asyncio
    async def test_reset_clears_runtime_state(self, control_plane, make_proposal, manager):
        plan = control_plane.create_plan("batch", [make_proposal()])
        await control_plane.execute_plan(plan.id, manager)
        control_plane.evaluate_platform({"error_rate": 0.5})
        control_plane.security_state.set_threat_level(ThreatLevel.RED, "soc")

        control_plane.reset()

        status = control_plane.status()
        assert status["plans"] == {}
        assert status["restrictions"] == []
        assert status["gate"]["total"] == 0
        assert status["rollback"]["stored_plans"] == 0
        assert control_plane.security_state.threat_level == ThreatLevel.GREEN
        assert len(control_plane.audit) == 0
