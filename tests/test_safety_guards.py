"""
Unit tests for the SafetyGuardEngine and its built-in checks.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from controlplane.governance import (
    AuditCategory,
    Change,
    ChangeType,
    CheckPhase,
    ExecutionItem,
    ExecutionPlan,
    ItemStatus,
    PlanConfig,
    ProposalPriority,
    RiskForecast,
    RiskLevel,
    SafetyCheckResult,
    Severity,
)
from controlplane.governance.errors import ThresholdBreach
from controlplane.governance.execution_planner import ExecutionPlanner
from controlplane.governance.safety_guards import SafetyCheck, SafetyGuardEngine, timeout_check


def make_item(item_id="item-1", changes=None, forecast=None, status=ItemStatus.PENDING, sequence=1):
    return ExecutionItem(
        id=item_id,
        proposal_id=f"prop-{item_id}",
        proposal_type="seo_fix",
        priority=ProposalPriority.MEDIUM,
        sequence=sequence,
        changes=changes or [Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b")],
        forecast=forecast,
        status=status,
    )


def make_plan(items=None, **config):
    return ExecutionPlan(id="plan-test", name="test", items=items or [make_item()], config=PlanConfig(**config))


@pytest.fixture
def engine(audit, clock):
    return SafetyGuardEngine(audit, clock=clock)


class TestRiskCheck:
    def test_high_risk_over_low_ceiling_fails(self, engine):
        item = make_item(forecast=RiskForecast(RiskLevel.HIGH))
        plan = make_plan([item], max_risk_score=0.3)

        summary = engine.run_pre_execution_checks(plan, item)
        assert not summary.passed
        failure = summary.failures[0]
        assert failure.check_id == "risk_score"
        assert failure.severity == Severity.CRITICAL

    @pytest.mark.parametrize("limit", [0.1, 0.3, 0.5, 0.79, 0.8, 0.95, 1.0])
    @pytest.mark.parametrize("score", [0.05, 0.3, 0.5, 0.8, 1.0])
    def test_threshold_is_monotonic(self, engine, limit, score):
        item = make_item(forecast=RiskForecast(RiskLevel.LOW, risk_score=score))
        plan = make_plan([item], max_risk_score=limit)

        risk = engine.run_pre_execution_checks(plan, item).results[0]
        assert risk.check_id == "risk_score"
        assert risk.passed is (score <= limit)

    def test_explicit_score_wins_over_level(self, engine):
        item = make_item(forecast=RiskForecast(RiskLevel.CRITICAL, risk_score=0.1))
        assert engine.run_pre_execution_checks(make_plan([item]), item).passed

    def test_missing_forecast_treated_as_medium(self, engine):
        item = make_item(forecast=None)
        summary = engine.run_pre_execution_checks(make_plan([item], max_risk_score=0.4), item)
        assert not summary.passed
        assert "assuming medium" in summary.failures[0].message


class TestReversibilityAndScope:
    def test_irreversible_change_only_warns(self, engine):
        item = make_item(changes=[
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b"),
            Change(ChangeType.URL_CHANGE, "page-1", "slug", "old", "new", is_reversible=False),
        ], forecast=RiskForecast(RiskLevel.LOW))

        summary = engine.run_pre_execution_checks(make_plan([item]), item)
        assert summary.passed
        assert len(summary.warnings) == 1
        assert "non-reversible change detected" in summary.warnings[0].message

    def test_too_many_targets(self, engine):
        changes = [Change(ChangeType.CONTENT_UPDATE, f"page-{n}", "title", "a", "b") for n in range(4)]
        item = make_item(changes=changes, forecast=RiskForecast(RiskLevel.LOW))

        summary = engine.run_pre_execution_checks(make_plan([item], max_affected_content=3), item)
        assert [r.message for r in summary.failures] == ["Too many affected targets: 4 > 3"]


class TestErrorRateCheck:
    def test_breach_requests_rollback(self, engine):
        items = [
            make_item("i1", status=ItemStatus.FAILED),
            make_item("i2", status=ItemStatus.FAILED),
            make_item("i3", status=ItemStatus.COMPLETED),
        ]
        plan = make_plan(items, rollback_on_error_rate=0.3)

        summary = engine.run_during_execution_checks(plan, items[2])
        assert summary.should_rollback
        assert not summary.should_halt
        result = next(r for r in summary.results if r.check_id == "error_rate")
        assert result.details["error_rate"] == pytest.approx(2 / 3)

    def test_rate_at_threshold_passes(self, engine):
        items = [make_item("i1", status=ItemStatus.FAILED)] + [
            make_item(f"ok{n}", status=ItemStatus.COMPLETED) for n in range(4)
        ]
        summary = engine.run_during_execution_checks(make_plan(items, rollback_on_error_rate=0.2), items[0])
        assert not summary.should_rollback

    def test_nothing_finished(self, engine):
        item = make_item()
        summary = engine.run_during_execution_checks(make_plan([item]), item)
        assert summary.passed


class TestTimeoutCheck:
    def test_plan_start_used_before_item_starts(self, engine, clock):
        item = make_item()
        plan = make_plan([item], timeout_ms=1000)
        plan.started_at = clock.now - timedelta(seconds=100)

        summary = engine.run_during_execution_checks(plan, item)
        result = next(r for r in summary.results if r.check_id == "timeout")
        assert not result.passed
        assert "timeout" in result.message.lower()
        assert result.should_halt
        assert summary.should_halt
        assert result.details["measured_from"] == "plan"

    def test_item_start_wins_over_plan_start(self, clock):
        item = make_item()
        item.started_at = clock.now - timedelta(milliseconds=200)
        plan = make_plan([item], timeout_ms=1000)
        plan.started_at = clock.now - timedelta(seconds=100)

        result = timeout_check(plan, item, now=clock.now)
        assert result.passed
        assert result.details["measured_from"] == "item"

    def test_naive_timestamps(self, clock):
        item = make_item()
        item.started_at = (clock.now - timedelta(seconds=5)).replace(tzinfo=None)
        result = timeout_check(make_plan([item], timeout_ms=1000), item, now=clock.now)
        assert not result.passed

    def test_not_started(self):
        item = make_item()
        assert timeout_check(make_plan([item]), item).passed


class TestMetricDropCheck:
    def test_large_drop_requests_rollback(self, engine):
        item = make_item()
        plan = make_plan([item], rollback_on_metric_drop=0.1)

        summary = engine.run_post_execution_checks(plan, item, {"traffic": 1000}, {"traffic": 500})
        assert not summary.passed
        assert summary.should_rollback
        assert summary.failures[0].details["drops"]["traffic"] == pytest.approx(0.5)

    def test_small_drop_passes(self, engine):
        item = make_item()
        summary = engine.run_post_execution_checks(
            make_plan([item], rollback_on_metric_drop=0.1), item, {"traffic": 1000}, {"traffic": 950},
        )
        assert summary.passed

    def test_missing_metric_warns(self, engine):
        item = make_item()
        summary = engine.run_post_execution_checks(make_plan([item]), item, {"traffic": 1000}, {})
        assert summary.passed
        assert summary.warnings[0].details["missing"] == ["traffic"]

    def test_zero_baseline_ignored(self, engine):
        item = make_item()
        summary = engine.run_post_execution_checks(make_plan([item]), item, {"errors": 0}, {"errors": 10})
        assert summary.passed


class TestRegistry:
    def test_builtin_checks_by_phase(self, engine):
        assert [c.id for c in engine.get_checks_by_type(CheckPhase.PRE_EXECUTION)] == [
            "risk_score", "reversibility", "scope",
        ]
        assert [c.id for c in engine.get_checks_by_type(CheckPhase.DURING_EXECUTION)] == ["error_rate", "timeout"]
        assert [c.id for c in engine.get_checks_by_type(CheckPhase.POST_EXECUTION)] == ["metric_drop"]

    def test_duplicate_id_rejected(self, engine):
        check = SafetyCheck("scope", "Again", CheckPhase.PRE_EXECUTION, MagicMock())
        with pytest.raises(ValueError):
            engine.add_check(check)

    def test_custom_check_runs_and_is_labelled(self, engine):
        engine.add_check(SafetyCheck(
            "business_hours", "Business hours", CheckPhase.PRE_EXECUTION,
            lambda plan, item, metrics: SafetyCheckResult(False, "Outside change window", Severity.WARNING),
        ))
        item = make_item(forecast=RiskForecast(RiskLevel.LOW))

        summary = engine.run_pre_execution_checks(make_plan([item]), item)
        assert [r.check_id for r in summary.failures] == ["business_hours"]
        assert summary.failures[0].check_name == "Business hours"

    def test_raising_check_becomes_critical_halt(self, engine):
        engine.add_check(SafetyCheck(
            "flaky", "Flaky", CheckPhase.DURING_EXECUTION, MagicMock(side_effect=KeyError("boom")),
        ))
        item = make_item()

        summary = engine.run_during_execution_checks(make_plan([item]), item)
        failure = next(r for r in summary.results if r.check_id == "flaky")
        assert not failure.passed
        assert failure.severity == Severity.CRITICAL
        assert failure.should_halt
        assert summary.should_halt

    def test_wrong_return_type_is_a_failure(self, engine):
        engine.add_check(SafetyCheck("sloppy", "Sloppy", CheckPhase.POST_EXECUTION, lambda p, i, m: True))
        item = make_item()
        summary = engine.run_post_execution_checks(make_plan([item]), item, {}, {})
        assert summary.should_halt

    def test_disabled_and_removed_checks_skip(self, engine):
        item = make_item(forecast=RiskForecast(RiskLevel.CRITICAL))
        plan = make_plan([item])

        assert engine.set_enabled("risk_score", False)
        assert engine.run_pre_execution_checks(plan, item).passed
        assert engine.remove_check("risk_score")
        assert not engine.remove_check("risk_score")

    def test_results_are_audited(self, engine, audit):
        item = make_item(forecast=RiskForecast(RiskLevel.LOW))
        engine.run_pre_execution_checks(make_plan([item]), item)

        entries = audit.get_audit_trail(category=AuditCategory.SAFETY_CHECK, item_id=item.id)
        assert [e.details["check_id"] for e in entries] == ["risk_score", "reversibility", "scope"]
        assert all(e.event == "check.pre_execution" for e in entries)

    def test_raise_for_breach(self, engine):
        item = make_item(forecast=RiskForecast(RiskLevel.CRITICAL))
        summary = engine.run_pre_execution_checks(make_plan([item]), item)

        with pytest.raises(ThresholdBreach) as exc_info:
            summary.raise_for_breach()
        assert exc_info.value.details["failed_checks"] == ["risk_score"]
        assert exc_info.value.details["phase"] == "pre_execution"


class TestPlannerBuiltItems:
    """Checks run against items the planner split out of real proposals."""

    @pytest.fixture
    def planner(self, audit):
        return ExecutionPlanner(audit)

    @staticmethod
    def wide_proposal(make_proposal, proposal_id, count):
        changes = [Change(ChangeType.CONTENT_UPDATE, f"page-{n}", "title", "a", "b") for n in range(count)]
        return make_proposal(proposal_id, changes=changes)

    def test_scope_counts_the_whole_proposal(self, engine, planner, make_proposal):
        plan = planner.create_plan(
            "wide", [self.wide_proposal(make_proposal, "wide", 60)], config={"max_affected_content": 50}
        )
        assert len(plan.items) == 60

        for item in plan.items:
            summary = engine.run_pre_execution_checks(plan, item)
            assert not summary.passed
            assert [r.check_id for r in summary.failures] == ["scope"]
            assert summary.failures[0].message == "Too many affected targets: 60 > 50"

    def test_scope_at_limit_passes(self, engine, planner, make_proposal):
        plan = planner.create_plan(
            "wide", [self.wide_proposal(make_proposal, "wide", 60)], config={"max_affected_content": 60}
        )
        assert all(engine.run_pre_execution_checks(plan, item).passed for item in plan.items)

    def test_scope_is_per_proposal(self, engine, planner, make_proposal):
        proposals = [self.wide_proposal(make_proposal, f"p-{n}", 30) for n in range(2)]
        plan = planner.create_plan("two", proposals, config={"max_affected_content": 50})

        assert len(plan.items) == 60
        for item in plan.items:
            scope = engine.run_pre_execution_checks(plan, item).results[2]
            assert scope.check_id == "scope"
            assert scope.passed
            assert scope.details["targets"] == 30

    def test_supplied_forecast_over_ceiling_fails(self, engine, planner, make_proposal):
        proposal = make_proposal(forecast=RiskForecast(RiskLevel.HIGH))
        plan = planner.create_plan("risky", [proposal], config={"max_risk_score": 0.3})

        summary = engine.run_pre_execution_checks(plan, plan.items[0])
        assert [r.check_id for r in summary.failures] == ["risk_score"]
        assert summary.failures[0].message.startswith("Risk score 0.80 exceeds maximum 0.30")

    def test_derived_forecast_passes_default_ceiling(self, engine, planner, make_proposal):
        plan = planner.create_plan("routine", [make_proposal()])
        item = plan.items[0]

        assert item.forecast.risk_level == RiskLevel.LOW
        assert engine.run_pre_execution_checks(plan, item).passed
