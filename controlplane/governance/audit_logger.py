"""
AuditLogger: Ordered Audit Trail

Receives every gate decision, override, governor decision, safety check
result and rollback step. Entries carry a monotonic sequence number so the
order of calls per plan/item can be reconstructed for compliance bundles.
"""

from typing import Any, Callable, Dict, List, Optional
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import json
import threading
import uuid
import logging

import structlog

from . import AuditCategory, AuditEntry, utcnow

logger = logging.getLogger(__name__)
audit_log = structlog.get_logger(__name__)


class AuditSink:
    """
    Destination for audit events. Subclasses implement ``record``; the
    convenience ``log_*`` helpers are shared.
    """

    def record(
        self,
        category: AuditCategory,
        event: str,
        *,
        actor_id: Optional[str] = None,
        decision: Optional[str] = None,
        plan_id: Optional[str] = None,
        item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store one entry and return its id"""
        raise NotImplementedError

    def log_gate_decision(self, request, outcome: str, code: str, reason: str, **details) -> str:
        return self.record(
            AuditCategory.GATE,
            "gate.decision",
            actor_id=request.actor.user_id,
            decision=outcome,
            plan_id=request.context.get("plan_id"),
            details={
                "action": request.action,
                "resource": request.resource,
                "roles": list(request.actor.roles),
                "code": code,
                "reason": reason,
                **details,
            },
        )

    def log_override(self, event: str, override_id: Optional[str], actor_id: str, decision: str, **details) -> str:
        return self.record(
            AuditCategory.OVERRIDE,
            event,
            actor_id=actor_id,
            decision=decision,
            details={"override_id": override_id, **details},
        )

    def log_governor_decision(self, event: str, decision: str, actor_id: str = "governor", **details) -> str:
        return self.record(
            AuditCategory.GOVERNOR, event, actor_id=actor_id, decision=decision, details=details
        )

    def log_check_result(self, phase: str, plan_id: Optional[str], item_id: Optional[str], result) -> str:
        return self.record(
            AuditCategory.SAFETY_CHECK,
            f"check.{phase}",
            decision="passed" if result.passed else "failed",
            plan_id=plan_id,
            item_id=item_id,
            details={
                "check_id": result.check_id,
                "check_name": result.check_name,
                "message": result.message,
                "severity": result.severity.value,
                "should_halt": result.should_halt,
                "should_rollback": result.should_rollback,
            },
        )

    def log_execution(self, event: str, plan_id: str, item_id: Optional[str] = None,
                      actor_id: Optional[str] = None, decision: Optional[str] = None, **details) -> str:
        return self.record(
            AuditCategory.EXECUTION,
            event,
            actor_id=actor_id,
            decision=decision,
            plan_id=plan_id,
            item_id=item_id,
            details=details,
        )

    def log_rollback_step(self, item_id: str, plan_id: Optional[str], action: str,
                          success: bool, **details) -> str:
        return self.record(
            AuditCategory.ROLLBACK,
            "rollback.step",
            decision="success" if success else "failed",
            plan_id=plan_id,
            item_id=item_id,
            details={"action": action, **details},
        )

    def log_mode_change(self, actor_id: str, field_name: str, previous: str, current: str, **details) -> str:
        return self.record(
            AuditCategory.MODE_CHANGE,
            f"{field_name}.changed",
            actor_id=actor_id,
            decision=current,
            details={"previous": previous, "current": current, **details},
        )


@dataclass
class EvidenceBundle:
    """Time-windowed export of audit entries with an integrity hash"""
    id: str
    generated_at: datetime
    generated_by: str
    period_start: datetime
    period_end: datetime
    entries: List[Dict[str, Any]]
    summary: Dict[str, Any] = field(default_factory=dict)
    integrity_hash: str = ""


def _hash_entries(entries: List[Dict[str, Any]]) -> str:
    canonical = json.dumps(entries, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditLogger(AuditSink):
    """
    In-memory, append-only audit trail. Bounded: the oldest entries drop
    once ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int = 10_000):
        self._lock = threading.Lock()
        self._entries: deque = deque(maxlen=max_entries)
        self._sequence = 0
        self._subscribers: List[Callable[[AuditEntry], None]] = []

    def record(
        self,
        category: AuditCategory,
        event: str,
        *,
        actor_id: Optional[str] = None,
        decision: Optional[str] = None,
        plan_id: Optional[str] = None,
        item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        with self._lock:
            self._sequence += 1
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                sequence=self._sequence,
                timestamp=utcnow(),
                category=category,
                event=event,
                actor_id=actor_id,
                decision=decision,
                plan_id=plan_id,
                item_id=item_id,
                details=dict(details or {}),
            )
            self._entries.append(entry)
            subscribers = list(self._subscribers)

        audit_log.info(
            event,
            audit_id=entry.id,
            sequence=entry.sequence,
            category=category.value,
            actor_id=actor_id,
            decision=decision,
            plan_id=plan_id,
            item_id=item_id,
        )

        for callback in subscribers:
            try:
                callback(entry)
            except Exception:
                logger.exception(f"Audit subscriber failed for entry {entry.id}")

        return entry.id

    def subscribe(self, callback: Callable[[AuditEntry], None]) -> Callable[[], None]:
        """Register a callback for new entries. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return entry
        return None

    def get_audit_trail(
        self,
        category: Optional[AuditCategory] = None,
        plan_id: Optional[str] = None,
        item_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Entries matching all filters, in call order."""
        with self._lock:
            entries = list(self._entries)

        result = []
        for entry in entries:
            if category is not None and entry.category != category:
                continue
            if plan_id is not None and entry.plan_id != plan_id:
                continue
            if item_id is not None and entry.item_id != item_id:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if since is not None and entry.timestamp < since:
                continue
            if until is not None and entry.timestamp > until:
                continue
            result.append(entry)

        if limit is not None:
            result = result[-limit:]
        return result

    def export_bundle(self, start: datetime, end: datetime, generated_by: str) -> EvidenceBundle:
        """Export every entry in ``[start, end]`` as an integrity-hashed bundle."""
        if end < start:
            raise ValueError("Bundle period end must not precede its start")

        entries = [e.to_dict() for e in self.get_audit_trail(since=start, until=end)]

        by_category: Dict[str, int] = {}
        by_decision: Dict[str, int] = {}
        for entry in entries:
            by_category[entry["category"]] = by_category.get(entry["category"], 0) + 1
            if entry["decision"]:
                by_decision[entry["decision"]] = by_decision.get(entry["decision"], 0) + 1

        bundle = EvidenceBundle(
            id=f"EVD-{uuid.uuid4().hex[:12]}",
            generated_at=utcnow(),
            generated_by=generated_by,
            period_start=start,
            period_end=end,
            entries=entries,
            summary={
                "total": len(entries),
                "by_category": by_category,
                "by_decision": by_decision,
            },
            integrity_hash=_hash_entries(entries),
        )

        self.record(
            AuditCategory.EVIDENCE,
            "evidence.exported",
            actor_id=generated_by,
            details={"bundle_id": bundle.id, "entries": len(entries), "hash": bundle.integrity_hash},
        )
        logger.info(f"Exported evidence bundle {bundle.id} with {len(entries)} entries")
        return bundle

    @staticmethod
    def verify_bundle(bundle: EvidenceBundle) -> bool:
        return _hash_entries(bundle.entries) == bundle.integrity_hash

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._sequence = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
