"""Shared global security posture: mode and threat level."""

import threading
from typing import Any, Dict, Optional
import logging

from . import SecurityMode, ThreatLevel, utcnow

logger = logging.getLogger(__name__)


class SecurityState:
    """
    Holds the security mode and threat level read by the gate and the
    override registry. One instance per control plane.
    """

    def __init__(
        self,
        mode: SecurityMode = SecurityMode.ENFORCE,
        threat_level: ThreatLevel = ThreatLevel.GREEN,
    ):
        self._lock = threading.Lock()
        self._mode = mode
        self._threat_level = threat_level
        self._threat_reason: Optional[str] = None
        self._changed_at = utcnow()
        self._changed_by = "system"

    @property
    def mode(self) -> SecurityMode:
        with self._lock:
            return self._mode

    @property
    def threat_level(self) -> ThreatLevel:
        with self._lock:
            return self._threat_level

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "mode": self._mode,
                "threat_level": self._threat_level,
                "threat_reason": self._threat_reason,
                "changed_at": self._changed_at,
                "changed_by": self._changed_by,
            }

    def set_mode(self, mode: SecurityMode, changed_by: str) -> SecurityMode:
        """Set the mode, returning the previous one."""
        with self._lock:
            previous = self._mode
            self._mode = mode
            self._changed_at = utcnow()
            self._changed_by = changed_by
        logger.warning(f"Security mode changed {previous.value} -> {mode.value} by {changed_by}")
        return previous

    def set_threat_level(
        self, level: ThreatLevel, changed_by: str, reason: Optional[str] = None
    ) -> ThreatLevel:
        """Set the threat level, returning the previous one."""
        with self._lock:
            previous = self._threat_level
            self._threat_level = level
            self._threat_reason = reason
            self._changed_at = utcnow()
            self._changed_by = changed_by
        logger.warning(
            f"Threat level changed {previous.value} -> {level.value} by {changed_by}"
            + (f": {reason}" if reason else "")
        )
        return previous

    def reset(self, mode: SecurityMode, threat_level: ThreatLevel) -> None:
        with self._lock:
            self._mode = mode
            self._threat_level = threat_level
            self._threat_reason = None
            self._changed_at = utcnow()
            self._changed_by = "system"
