"""
Unit tests for the RollbackManager.

Tests reverse-ordered step construction, step execution through the
injected applier, and plan-level rollback accounting.
"""

from unittest.mock import MagicMock

import pytest

from controlplane.governance import (
    AuditCategory,
    Change,
    ChangeType,
    ExecutionItem,
    ExecutionPlan,
    ItemStatus,
    PlanConfig,
    ProposalPriority,
    RollbackAction,
)
from controlplane.governance.appliers import InMemoryChangeApplier
from controlplane.governance.rollback_manager import RollbackManager


def make_item(item_id, changes, status=ItemStatus.COMPLETED, sequence=1):
    return ExecutionItem(
        id=item_id,
        proposal_id=f"prop-{item_id}",
        proposal_type="seo_fix",
        priority=ProposalPriority.MEDIUM,
        sequence=sequence,
        changes=changes,
        status=status,
    )


@pytest.fixture
def plans():
    return {}


@pytest.fixture
def applier():
    return InMemoryChangeApplier()


@pytest.fixture
def manager(applier, audit, plans):
    return RollbackManager(applier, audit, plans.get, complexity_threshold=3)


class TestRollbackPlans:
    def test_steps_reverse_change_order(self, manager):
        item = make_item("item-1", [
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b"),
            Change(ChangeType.METADATA_UPDATE, "page-1", "description", "c", "d"),
            Change(ChangeType.SCHEMA_UPDATE, "page-1", "schema", "e", "f"),
        ])

        rollback_plan = manager.create_rollback_plan(item, "plan-1")
        assert [s.action for s in rollback_plan.steps] == [
            RollbackAction.REVERT_SCHEMA_UPDATE,
            RollbackAction.REVERT_METADATA_UPDATE,
            RollbackAction.REVERT_CONTENT_UPDATE,
        ]
        assert rollback_plan.steps[0].data == {
            "target": "page-1", "field": "schema", "restore_value": "e", "applied_value": "f",
        }
        assert rollback_plan.risks == []
        assert manager.get_rollback_plan("item-1") is rollback_plan

    def test_irreversible_change_becomes_a_risk(self, manager):
        item = make_item("item-1", [
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b"),
            Change(ChangeType.URL_CHANGE, "page-1", "slug", "/old", "/new", is_reversible=False),
        ])

        rollback_plan = manager.create_rollback_plan(item)
        assert len(rollback_plan.steps) == 1
        assert rollback_plan.steps[0].action == RollbackAction.REVERT_CONTENT_UPDATE
        assert len(rollback_plan.risks) == 1
        assert "cannot be rolled back" in rollback_plan.risks[0]

    def test_complexity_risk(self, manager):
        changes = [Change(ChangeType.CONTENT_UPDATE, "page-1", f"f{n}", n, n + 1) for n in range(4)]
        rollback_plan = manager.create_rollback_plan(make_item("item-1", changes))
        assert any(r.startswith("Complex rollback: 4 steps") for r in rollback_plan.risks)

    def test_can_rollback(self, manager):
        assert manager.can_rollback("missing").reason == "No rollback plan available"

        manager.create_rollback_plan(make_item("frozen", [
            Change(ChangeType.URL_CHANGE, "page-1", "slug", "a", "b", is_reversible=False),
        ]))
        assert manager.can_rollback("frozen").reason == "No reversible changes"

        manager.create_rollback_plan(make_item("ok", [Change(ChangeType.CONTENT_UPDATE, "p", "f", 1, 2)]))
        assert manager.can_rollback("ok").can_rollback


class TestExecuteRollback:
    def test_restores_previous_values_last_change_first(self, manager, applier):
        changes = [
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "v1", "v2"),
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "v2", "v3"),
        ]
        for change in changes:
            applier.apply(change)
        manager.create_rollback_plan(make_item("item-1", changes))

        result = manager.execute_rollback("item-1")
        assert result.success
        assert result.steps_executed == 2
        assert applier.get("page-1", "title") == "v1"
        assert [op for op, _ in applier.log] == ["apply", "apply", "revert", "revert"]

    def test_nothing_reversible_is_a_failure_without_applier_calls(self, audit, plans):
        applier = MagicMock()
        manager = RollbackManager(applier, audit, plans.get)
        manager.create_rollback_plan(make_item("item-1", [
            Change(ChangeType.URL_CHANGE, "page-1", "slug", "a", "b", is_reversible=False),
        ]))

        result = manager.execute_rollback("item-1")
        assert not result.success
        assert result.error == "No reversible changes to rollback"
        applier.revert.assert_not_called()

    def test_missing_plan(self, manager):
        result = manager.execute_rollback("ghost")
        assert not result.success
        assert result.error == "Rollback plan not found"

    def test_failing_step_stops_the_item(self, audit, plans):
        applier = InMemoryChangeApplier(fail_revert={("page-1", "description")})
        manager = RollbackManager(applier, audit, plans.get)
        manager.create_rollback_plan(make_item("item-1", [
            Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b"),
            Change(ChangeType.METADATA_UPDATE, "page-1", "description", "c", "d"),
            Change(ChangeType.CONTENT_UPDATE, "page-1", "body", "e", "f"),
        ]))

        result = manager.execute_rollback("item-1")
        assert not result.success
        assert result.steps_executed == 1
        assert result.error.startswith("Step 2 (revert_metadata_update) failed")
        assert [c.field for op, c in applier.log] == ["body"]

        steps = audit.get_audit_trail(category=AuditCategory.ROLLBACK, item_id="item-1")
        assert [e.decision for e in steps] == ["success", "failed"]

    def test_step_callback(self, manager):
        manager.create_rollback_plan(make_item("item-1", [Change(ChangeType.CONTENT_UPDATE, "p", "f", 1, 2)]))
        on_step = MagicMock()

        manager.execute_rollback("item-1", on_step)
        on_step.assert_called_once_with({
            "action": "item_rolled_back",
            "item_id": "item-1",
            "step": "revert_content_update",
            "result": 1,
        })

    def test_failing_callback_does_not_stop_rollback(self, manager):
        changes = [Change(ChangeType.CONTENT_UPDATE, "p", f"f{n}", n, n + 1) for n in range(2)]
        manager.create_rollback_plan(make_item("item-1", changes))

        result = manager.execute_rollback("item-1", MagicMock(side_effect=RuntimeError("listener down")))
        assert result.success
        assert result.steps_executed == 2


class TestRollbackPlan:
    def make_plan(self, plans, items, completion_order):
        plan = ExecutionPlan(id="plan-1", name="batch", items=items, config=PlanConfig())
        plan.completion_order = list(completion_order)
        plans[plan.id] = plan
        return plan

    def test_most_recent_completion_first(self, manager, applier, plans):
        items = [
            make_item(f"item-{n}", [Change(ChangeType.CONTENT_UPDATE, f"page-{n}", "title", "old", "new")],
                      sequence=n)
            for n in (1, 2, 3)
        ]
        self.make_plan(plans, items, ["item-2", "item-1", "item-3"])

        outcome = manager.rollback_plan("plan-1")
        assert outcome.success
        assert outcome.rolled_back == 3
        assert outcome.rolled_back_item_ids == ["item-3", "item-1", "item-2"]
        assert [c.target for op, c in applier.log] == ["page-3", "page-1", "page-2"]

    def test_only_completed_items(self, manager, plans):
        items = [
            make_item("done", [Change(ChangeType.CONTENT_UPDATE, "a", "f", 1, 2)]),
            make_item("failed", [Change(ChangeType.CONTENT_UPDATE, "b", "f", 1, 2)], status=ItemStatus.FAILED),
            make_item("pending", [Change(ChangeType.CONTENT_UPDATE, "c", "f", 1, 2)], status=ItemStatus.PENDING),
        ]
        self.make_plan(plans, items, ["done"])

        assert manager.rollback_plan("plan-1").rolled_back_item_ids == ["done"]

    def test_failures_are_counted_and_rest_continues(self, audit, plans):
        applier = InMemoryChangeApplier(fail_revert={("page-2", "title")})
        manager = RollbackManager(applier, audit, plans.get)
        items = [
            make_item("item-1", [Change(ChangeType.CONTENT_UPDATE, "page-1", "title", "a", "b")], sequence=1),
            make_item("item-2", [Change(ChangeType.CONTENT_UPDATE, "page-2", "title", "a", "b")], sequence=2),
            make_item("item-3", [
                Change(ChangeType.URL_CHANGE, "page-3", "slug", "a", "b", is_reversible=False),
            ], sequence=3),
        ]
        self.make_plan(plans, items, ["item-1", "item-2", "item-3"])

        outcome = manager.rollback_plan("plan-1")
        assert not outcome.success
        assert outcome.rolled_back == 1
        assert outcome.failed == 2
        assert outcome.rolled_back + outcome.failed == 3
        assert outcome.rolled_back_item_ids == ["item-1"]
        assert outcome.errors[0] == "item-3: No reversible changes to rollback"
        assert outcome.errors[1].startswith("item-2: Step 1")

        entry = audit.get_audit_trail(category=AuditCategory.ROLLBACK, plan_id="plan-1")[-1]
        assert entry.event == "rollback.plan"
        assert entry.decision == "partial"

    def test_unknown_plan(self, manager):
        outcome = manager.rollback_plan("nope")
        assert not outcome.success
        assert outcome.errors == ["Plan not found"]

    def test_history_and_stats(self, manager, plans):
        items = [make_item("item-1", [Change(ChangeType.CONTENT_UPDATE, "a", "f", 1, 2)])]
        self.make_plan(plans, items, ["item-1"])
        manager.rollback_plan("plan-1")

        history = manager.get_history()
        assert len(history) == 1
        assert history[0]["plan_id"] == "plan-1"
        assert history[0]["success"]
        assert manager.get_stats() == {"stored_plans": 1, "executed": 1, "succeeded": 1, "failed": 0}

        manager.clear()
        assert manager.get_stats()["stored_plans"] == 0
