"""Error taxonomy for the control plane."""

from typing import Any, Dict, Optional


class GovernanceError(Exception):
    """Base error. Carries a human-readable message plus machine-checkable details."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(GovernanceError):
    """Malformed plan or override input. Raised before any mutation."""

    def __init__(self, message: str, errors=None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.errors = list(errors or [message])


class PolicyDenied(GovernanceError):
    """Raised when a caller asks the gate to enforce and the outcome is not ALLOW."""

    def __init__(self, decision):
        super().__init__(
            f"{decision.decision.value}: {decision.reason}",
            {"decision": decision.to_dict()},
        )
        self.decision = decision


class ThresholdBreach(GovernanceError):
    """A critical safety check failure, for callers that prefer exceptions."""

    def __init__(self, summary):
        failing = [r for r in summary.results if not r.passed]
        message = "; ".join(r.message for r in failing) or "safety threshold breached"
        super().__init__(
            message,
            {
                "phase": summary.phase.value,
                "should_halt": summary.should_halt,
                "should_rollback": summary.should_rollback,
                "failed_checks": [r.check_id for r in failing],
            },
        )
        self.summary = summary
