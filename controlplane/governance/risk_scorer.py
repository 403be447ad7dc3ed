"""
RiskScorer: Explainable Risk Forecasts

Derives a risk forecast for a group of changes when the upstream proposal
does not carry one. Risk factors are weighted and combined into a score
(0.0 - 1.0) with a reason for every factor that contributed.
"""

from typing import List, Tuple
import logging

from . import Change, ChangeType, RiskForecast, RiskLevel

logger = logging.getLogger(__name__)


class RiskScorer:
    """
    Calculates risk scores for changes based on multiple factors.
    Always provides clear explanations for risk assessment.
    """

    RISK_WEIGHTS = {
        'change_sensitivity': 0.4,   # What kind of change it is
        'irreversibility': 0.3,      # Share of changes that cannot be undone
        'scope_breadth': 0.2,        # Distinct targets touched
        'change_volume': 0.1,        # Raw number of changes
    }

    CHANGE_SENSITIVITY = {
        ChangeType.URL_CHANGE: 1.0,
        ChangeType.REDIRECT_CREATE: 0.8,
        ChangeType.SCHEMA_UPDATE: 0.8,
        ChangeType.STATUS_CHANGE: 0.8,
        ChangeType.CONFIG_CHANGE: 0.9,
        ChangeType.METADATA_UPDATE: 0.5,
        ChangeType.INTERNAL_LINK: 0.4,
        ChangeType.CONTENT_UPDATE: 0.3,
        ChangeType.CACHE_INVALIDATION: 0.1,
    }

    def __init__(self, broad_scope_targets: int = 10, high_volume_changes: int = 20):
        self.broad_scope_targets = broad_scope_targets
        self.high_volume_changes = high_volume_changes

    def calculate_risk(self, changes: List[Change]) -> Tuple[float, List[str]]:
        """
        Calculate risk score and provide explanations.

        Args:
            changes: The changes one execution item will apply

        Returns:
            Tuple of (risk_score, list_of_reasons)
        """
        if not changes:
            return 0.0, ["No changes"]

        risk_factors = {}
        reasons = []

        sensitivity = max(self.CHANGE_SENSITIVITY[c.type] for c in changes)
        risk_factors['change_sensitivity'] = sensitivity
        if sensitivity >= 0.8:
            kinds = sorted({c.type.value for c in changes if self.CHANGE_SENSITIVITY[c.type] >= 0.8})
            reasons.append(f"Sensitive change types: {', '.join(kinds)}")

        irreversible = [c for c in changes if not c.is_reversible]
        if irreversible:
            risk_factors['irreversibility'] = len(irreversible) / len(changes)
            reasons.append(f"{len(irreversible)} of {len(changes)} changes cannot be undone")

        targets = {c.target for c in changes}
        breadth = min(len(targets) / self.broad_scope_targets, 1.0)
        if breadth > 0.3:
            risk_factors['scope_breadth'] = breadth
            reasons.append(f"Touches {len(targets)} distinct targets")

        volume = min(len(changes) / self.high_volume_changes, 1.0)
        if volume > 0.3:
            risk_factors['change_volume'] = volume
            reasons.append(f"{len(changes)} changes in one item")

        total_risk = 0.0
        for factor, value in risk_factors.items():
            total_risk += value * self.RISK_WEIGHTS.get(factor, 0.0)

        return min(total_risk, 1.0), reasons

    @staticmethod
    def level_for(score: float) -> RiskLevel:
        if score >= 0.85:
            return RiskLevel.CRITICAL
        if score >= 0.6:
            return RiskLevel.HIGH
        if score >= 0.3:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def forecast(self, changes: List[Change]) -> RiskForecast:
        score, reasons = self.calculate_risk(changes)
        level = self.level_for(score)
        reasons.insert(0, f"{level.value.upper()} RISK ({score:.2f})")
        return RiskForecast(risk_level=level, risk_score=round(score, 4), reasons=reasons)
