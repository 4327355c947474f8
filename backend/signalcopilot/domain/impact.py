"""
Pure impact scoring.

impact_score = sentiment x magnitude x confidence x adjusted_exposure
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from signalcopilot.config import Settings, settings as default_settings


@dataclass(frozen=True)
class PositionSnapshot:
    """Minimal view of a holding needed to compute exposure."""

    holding_id: int
    ticker: str
    shares: float
    cost_basis: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        if self.cost_basis is None or self.cost_basis <= 0:
            return None
        return max(self.shares, 0.0) * self.cost_basis


@dataclass(frozen=True)
class ImpactComputation:
    impact_score: float
    exposure: float
    adjusted_exposure: float
    concentration_applied: bool


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def compute_exposure(position: PositionSnapshot, portfolio: Sequence[PositionSnapshot]) -> float:
    """
    Holding's share of the user's tracked portfolio, clamped to [0, 1].

    Uses value (shares x cost basis) against the total value of positions
    that carry a cost basis. A position without a cost basis, or a portfolio
    with no valued positions, falls back to the share-count ratio.
    """
    total_value = sum(p.value for p in portfolio if p.value is not None)
    if position.value is not None and total_value > 0:
        return clamp_unit(position.value / total_value)

    total_shares = sum(max(p.shares, 0.0) for p in portfolio)
    if total_shares <= 0:
        return 0.0
    return clamp_unit(max(position.shares, 0.0) / total_shares)


def adjust_exposure(exposure: float, config: Optional[Settings] = None) -> float:
    """Apply the concentration multiplier when exposure is strictly above the threshold."""
    config = config or default_settings
    if exposure > config.concentration_threshold:
        return exposure * config.concentration_multiplier
    return exposure


def compute_impact(
    sentiment: int,
    magnitude: int,
    confidence: float,
    exposure: float,
    config: Optional[Settings] = None,
) -> ImpactComputation:
    exposure = clamp_unit(exposure)
    adjusted = adjust_exposure(exposure, config)
    score = sentiment * magnitude * confidence * adjusted
    return ImpactComputation(
        impact_score=score,
        exposure=exposure,
        adjusted_exposure=adjusted,
        concentration_applied=adjusted != exposure,
    )

