"""
Portfolio analytics: concentration, allocation by intent and per-holding
impact history.

Exposures come from the same ``compute_exposure`` the impact calculator
uses, so a position without a cost basis is weighted by share count here
as well.
"""

import statistics
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Holding
from signalcopilot.db.repositories import HoldingRepository, ImpactRepository
from signalcopilot.domain.impact import PositionSnapshot, compute_exposure
from signalcopilot.domain.models import (
    HoldingIntent,
    HoldingPerformance,
    IntentMetrics,
    PortfolioMetrics,
    PositionWeight,
)
from signalcopilot.log_config import logger
from signalcopilot.utils.datetime import utcnow

TOP_CONCENTRATIONS = 3
DIVERSIFIED_BELOW = 1500.0
MODERATE_UP_TO = 2500.0


def concentration_index(exposures: List[float]) -> float:
    """Herfindahl-Hirschman index on a 0-10000 scale."""
    return sum(e * e for e in exposures) * 10000


def concentration_label(index: float) -> str:
    if index < DIVERSIFIED_BELOW:
        return "diversified"
    if index <= MODERATE_UP_TO:
        return "moderate"
    return "high"


def _intent(holding: Holding) -> HoldingIntent:
    try:
        return HoldingIntent(holding.intent)
    except ValueError:
        return HoldingIntent.HOLD


def _days_held(holding: Holding, now: datetime) -> Optional[int]:
    if holding.acquired_at is None:
        return None
    return max((now - holding.acquired_at).days, 0)


class PortfolioAnalytics:
    """Read-only portfolio metrics over holdings and stored impacts."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.holdings = HoldingRepository(db)
        self.impacts = ImpactRepository(db)

    def metrics(self, user_id: int, now: Optional[datetime] = None) -> PortfolioMetrics:
        now = now or utcnow()
        holdings = self.holdings.get_for_user(user_id)
        portfolio = [PositionSnapshot(h.id, h.ticker, h.shares, h.cost_basis) for h in holdings]
        exposures = {p.holding_id: compute_exposure(p, portfolio) for p in portfolio}
        total_value = sum(p.value for p in portfolio if p.value is not None)

        weights = sorted(
            (PositionWeight(h.ticker, exposures[h.id]) for h in holdings),
            key=lambda w: (-w.exposure, w.ticker),
        )
        index = concentration_index(list(exposures.values()))

        result = PortfolioMetrics(
            user_id=user_id,
            total_value=total_value,
            concentration_index=index,
            concentration_label=concentration_label(index),
            largest_position=weights[0] if weights else None,
            top_concentrations=weights[:TOP_CONCENTRATIONS],
            intents=self._intent_metrics(holdings, portfolio, exposures, now),
            holdings=self._performance(user_id, holdings, now),
        )
        logger.info(
            f"Portfolio metrics for user {user_id}: {len(holdings)} holdings, "
            f"HHI {index:.0f} ({result.concentration_label})"
        )
        return result

    def intent_metrics(self, user_id: int, now: Optional[datetime] = None) -> Dict[HoldingIntent, IntentMetrics]:
        holdings = self.holdings.get_for_user(user_id)
        portfolio = [PositionSnapshot(h.id, h.ticker, h.shares, h.cost_basis) for h in holdings]
        exposures = {p.holding_id: compute_exposure(p, portfolio) for p in portfolio}
        return self._intent_metrics(holdings, portfolio, exposures, now or utcnow())

    def holding_performance(self, holding_id: int, now: Optional[datetime] = None) -> HoldingPerformance:
        """
        Raises:
            RecordNotFoundError: If the holding does not exist
        """
        holding = self.holdings.get_required(holding_id)
        performance = self._performance(holding.user_id, [holding], now or utcnow())
        return performance[0]

    def _intent_metrics(
        self,
        holdings: List[Holding],
        portfolio: List[PositionSnapshot],
        exposures: Dict[int, float],
        now: datetime,
    ) -> Dict[HoldingIntent, IntentMetrics]:
        values = {p.holding_id: p.value or 0.0 for p in portfolio}
        result = {}
        for intent in HoldingIntent:
            members = [h for h in holdings if _intent(h) == intent]
            days = [d for d in (_days_held(h, now) for h in members) if d is not None]
            result[intent] = IntentMetrics(
                intent=intent,
                count=len(members),
                total_value=sum(values[h.id] for h in members),
                portfolio_share=min(sum(exposures[h.id] for h in members), 1.0),
                average_holding_days=int(statistics.fmean(days)) if days else 0,
            )
        return result

    def _performance(self, user_id: int, holdings: List[Holding], now: datetime) -> List[HoldingPerformance]:
        totals = self.impacts.score_totals_by_holding(user_id)
        performance = []
        for holding in holdings:
            total, positive, negative = totals.get(holding.id, (0.0, 0, 0))
            performance.append(
                HoldingPerformance(
                    holding_id=holding.id,
                    ticker=holding.ticker,
                    intent=_intent(holding),
                    holding_period_days=_days_held(holding, now) or 0,
                    total_impact_score=total,
                    positive_impacts=positive,
                    negative_impacts=negative,
                )
            )
        return performance
