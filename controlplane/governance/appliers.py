"""
Injected capabilities: the component that performs changes and the source
of metrics snapshots. The engine never touches storage directly.
"""

from typing import Any, Dict, List, Optional, Set, Tuple
import threading
import logging

from . import Change, ExecutionItem, ExecutionPlan

logger = logging.getLogger(__name__)


class ChangeApplier:
    """Base class for appliers"""

    def apply(self, change: Change) -> Any:
        """Perform ``change``. Raise on failure."""
        raise NotImplementedError

    def revert(self, change: Change) -> Any:
        """Restore ``change.current_value``. Raise on failure."""
        raise NotImplementedError


class InMemoryChangeApplier(ChangeApplier):
    """
    Dict-backed applier keyed by (target, field). Useful for dry runs,
    demos and tests; ``fail_apply`` / ``fail_revert`` inject failures.
    """

    def __init__(
        self,
        initial: Optional[Dict[Tuple[str, str], Any]] = None,
        fail_apply: Optional[Set[Tuple[str, str]]] = None,
        fail_revert: Optional[Set[Tuple[str, str]]] = None,
    ):
        self._lock = threading.Lock()
        self.store: Dict[Tuple[str, str], Any] = dict(initial or {})
        self.fail_apply: Set[Tuple[str, str]] = set(fail_apply or ())
        self.fail_revert: Set[Tuple[str, str]] = set(fail_revert or ())
        self.log: List[Tuple[str, Change]] = []

    def apply(self, change: Change) -> Any:
        key = (change.target, change.field)
        if key in self.fail_apply:
            raise RuntimeError(f"apply failed for {change.target}.{change.field}")
        with self._lock:
            self.store[key] = change.new_value
            self.log.append(("apply", change))
        return change.new_value

    def revert(self, change: Change) -> Any:
        key = (change.target, change.field)
        if key in self.fail_revert:
            raise RuntimeError(f"revert failed for {change.target}.{change.field}")
        with self._lock:
            self.store[key] = change.current_value
            self.log.append(("revert", change))
        return change.current_value

    def get(self, target: str, field_name: str, default: Any = None) -> Any:
        with self._lock:
            return self.store.get((target, field_name), default)


class MetricsSource:
    """Supplies baseline and current metric snapshots for post-execution checks"""

    def baseline(self, plan: ExecutionPlan, item: ExecutionItem) -> Dict[str, float]:
        raise NotImplementedError

    def current(self, plan: ExecutionPlan, item: ExecutionItem) -> Dict[str, float]:
        raise NotImplementedError


class StaticMetricsSource(MetricsSource):
    """Fixed snapshots, optionally overridden per item id."""

    def __init__(
        self,
        baseline: Optional[Dict[str, float]] = None,
        current: Optional[Dict[str, float]] = None,
        per_item: Optional[Dict[str, Tuple[Dict[str, float], Dict[str, float]]]] = None,
    ):
        self._baseline = dict(baseline or {})
        self._current = dict(current or baseline or {})
        self.per_item = dict(per_item or {})

    def baseline(self, plan: ExecutionPlan, item: ExecutionItem) -> Dict[str, float]:
        if item.id in self.per_item:
            return dict(self.per_item[item.id][0])
        return dict(self._baseline)

    def current(self, plan: ExecutionPlan, item: ExecutionItem) -> Dict[str, float]:
        if item.id in self.per_item:
            return dict(self.per_item[item.id][1])
        return dict(self._current)
