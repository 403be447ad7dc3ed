from __future__ import annotations

from prometheus_client import Counter, Histogram

GATE_DECISIONS = Counter(
    "controlplane_gate_decisions_total",
    "Decision gate outcomes",
    ["decision", "code"],
)
OVERRIDE_REQUESTS = Counter(
    "controlplane_override_requests_total",
    "Override requests by outcome",
    ["outcome"],
)
GOVERNOR_RESTRICTIONS = Counter(
    "controlplane_governor_restrictions_total",
    "Restrictions produced by governor rules",
    ["action"],
)
SAFETY_CHECK_FAILURES = Counter(
    "controlplane_safety_check_failures_total",
    "Failing safety check results",
    ["phase", "check"],
)
EXECUTION_ITEMS = Counter(
    "controlplane_items_total",
    "Execution items by terminal status",
    ["status"],
)
ITEM_DURATION = Histogram(
    "controlplane_item_duration_seconds",
    "Wall time from item start to completion (s)",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 15, 60, 300),
)
ROLLBACK_STEPS = Counter(
    "controlplane_rollback_steps_total",
    "Rollback steps by outcome",
    ["outcome"],
)
