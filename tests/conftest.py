"""Shared fixtures for control plane tests

Provides:
- audit / security_state / policy_store: fresh core collaborators
- gate: decision gate over an in-memory rate limit store
- actors: manager, editor, viewer and super_admin identities
- make_proposal: factory for approved proposals
- FakeClock / base_time: settable clock for time-dependent components
"""

from datetime import datetime, timedelta, timezone

import pytest

from controlplane.governance import (
    Actor,
    Change,
    ChangeType,
    Proposal,
    ProposalPriority,
)
from controlplane.governance.audit_logger import AuditLogger
from controlplane.governance.decision_gate import DecisionGate
from controlplane.governance.policy_store import PermissionPolicyStore
from controlplane.governance.rate_limiter import InMemoryRateLimitStore
from controlplane.governance.security_state import SecurityState

BASE_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    return AuditLogger(max_entries=1000)


@pytest.fixture
def security_state():
    return SecurityState()


@pytest.fixture
def policy_store():
    return PermissionPolicyStore()


@pytest.fixture
def rate_store():
    return InMemoryRateLimitStore()


@pytest.fixture
def gate(policy_store, security_state, audit, rate_store):
    return DecisionGate(policy_store, security_state, audit, rate_store)


@pytest.fixture
def manager():
    return Actor("mgr-1", ["manager"])


@pytest.fixture
def editor():
    return Actor("ed-1", ["editor"])


@pytest.fixture
def viewer():
    return Actor("view-1", ["viewer"])


@pytest.fixture
def super_admin():
    return Actor("root-1", ["super_admin"])


@pytest.fixture
def make_proposal():
    """Factory for approved single-target proposals."""
    counter = {"n": 0}

    def _make(
        proposal_id=None,
        target="page-1",
        changes=None,
        priority=ProposalPriority.MEDIUM,
        approved_at=None,
        depends_on=None,
        forecast=None,
        approved_by="reviewer-1",
    ):
        counter["n"] += 1
        pid = proposal_id or f"prop-{counter['n']}"
        if changes is None:
            changes = [
                Change(ChangeType.CONTENT_UPDATE, target, "title", f"old-{pid}", f"new-{pid}"),
            ]
        return Proposal(
            id=pid,
            type="seo_fix",
            target=target,
            changes=changes,
            priority=priority,
            approved_by=approved_by,
            approved_at=approved_at or BASE_TIME + timedelta(seconds=counter["n"]),
            depends_on=list(depends_on or []),
            forecast=forecast,
        )

    return _make


@pytest.fixture
def base_time():
    return BASE_TIME
