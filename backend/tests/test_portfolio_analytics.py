"""
Tests for portfolio concentration, intent allocation and holding performance.
"""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from signalcopilot.db.repositories import HoldingRepository
from signalcopilot.domain.models import HoldingIntent
from signalcopilot.services.impact_calculator import ImpactCalculator
from signalcopilot.services.portfolio_analytics import (
    PortfolioAnalytics,
    concentration_index,
    concentration_label,
)
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import RecordNotFoundError


class TestConcentrationIndex:
    def test_single_position_is_maximal(self):
        assert concentration_index([1.0]) == pytest.approx(10000)

    def test_equal_weights(self):
        assert concentration_index([0.1] * 10) == pytest.approx(1000)

    @pytest.mark.parametrize(
        "index,label",
        [(0, "diversified"), (1499.9, "diversified"), (1500, "moderate"), (2500, "moderate"), (2500.1, "high")],
    )
    def test_labels(self, index, label):
        assert concentration_label(index) == label


class TestPortfolioAnalytics:
    def _portfolio(self, db_session, make_holding, now):
        repo = HoldingRepository(db_session)
        aapl = make_holding(ticker="AAPL", shares=20, cost_basis=100.0, intent=HoldingIntent.TRADE)
        msft = make_holding(ticker="MSFT", shares=80, cost_basis=100.0, intent=HoldingIntent.HOLD)
        repo.update(aapl.id, acquired_at=now - timedelta(days=30))
        repo.update(msft.id, acquired_at=now - timedelta(days=10))
        return aapl, msft

    def test_concentration_metrics(self, db_session, make_holding):
        now = utcnow()
        self._portfolio(db_session, make_holding, now)

        metrics = PortfolioAnalytics(db_session).metrics(1, now=now)

        assert metrics.total_value == pytest.approx(10000.0)
        assert metrics.concentration_index == pytest.approx(6800.0)
        assert metrics.concentration_label == "high"
        assert metrics.largest_position.ticker == "MSFT"
        assert metrics.largest_position.exposure == pytest.approx(0.8)
        assert [p.ticker for p in metrics.top_concentrations] == ["MSFT", "AAPL"]

    def test_top_concentrations_are_capped_at_three(self, db_session, make_holding):
        for ticker in ("AAPL", "AMZN", "GOOG", "MSFT", "NVDA"):
            make_holding(ticker=ticker, shares=10, cost_basis=100.0)

        metrics = PortfolioAnalytics(db_session).metrics(1)

        assert len(metrics.top_concentrations) == 3
        assert [p.ticker for p in metrics.top_concentrations] == ["AAPL", "AMZN", "GOOG"]
        assert metrics.concentration_index == pytest.approx(2000.0)
        assert metrics.concentration_label == "moderate"

    def test_positions_without_cost_basis_use_share_counts(self, db_session, make_holding):
        make_holding(ticker="AAPL", shares=10, cost_basis=None)
        make_holding(ticker="MSFT", shares=30, cost_basis=None)

        metrics = PortfolioAnalytics(db_session).metrics(1)

        assert metrics.total_value == 0
        assert metrics.largest_position.exposure == pytest.approx(0.75)
        assert metrics.concentration_index == pytest.approx(6250.0)

    def test_empty_portfolio(self, db_session):
        metrics = PortfolioAnalytics(db_session).metrics(99)

        assert metrics.total_value == 0
        assert metrics.concentration_index == 0
        assert metrics.largest_position is None
        assert metrics.top_concentrations == []
        assert all(m.count == 0 for m in metrics.intents.values())
        assert metrics.to_dict()["largest_position"] is None

    def test_intent_metrics(self, db_session, make_holding):
        now = utcnow()
        self._portfolio(db_session, make_holding, now)

        intents = PortfolioAnalytics(db_session).intent_metrics(1, now=now)

        assert set(intents) == set(HoldingIntent)
        trade = intents[HoldingIntent.TRADE]
        assert (trade.count, trade.total_value, trade.average_holding_days) == (1, 2000.0, 30)
        assert trade.portfolio_share == pytest.approx(0.2)
        assert intents[HoldingIntent.HOLD].portfolio_share == pytest.approx(0.8)
        assert intents[HoldingIntent.ACCUMULATE].count == 0
        assert intents[HoldingIntent.INCOME].average_holding_days == 0

    def test_holding_performance(self, db_session, make_article, make_holding, make_signal):
        """AAPL is 20% of the book, so both impacts carry the 0.24 adjusted exposure."""
        now = utcnow()
        aapl, msft = self._portfolio(db_session, make_holding, now)
        beat = make_article(ticker="AAPL", headline="Apple beats estimates")
        inquiry = make_article(ticker="AAPL", headline="Regulators open inquiry into Apple")
        make_signal(beat, sentiment=1, magnitude=3, confidence=0.9)
        make_signal(inquiry, sentiment=-1, magnitude=1, confidence=0.9)
        calculator = ImpactCalculator(db_session)
        calculator.compute_for_article(beat.id)
        calculator.compute_for_article(inquiry.id)

        analytics = PortfolioAnalytics(db_session)
        performance = analytics.holding_performance(aapl.id, now=now)

        assert performance.ticker == "AAPL"
        assert performance.intent == HoldingIntent.TRADE
        assert performance.holding_period_days == 30
        assert performance.total_impact_score == pytest.approx(0.648 - 0.216)
        assert (performance.positive_impacts, performance.negative_impacts) == (1, 1)

        by_ticker = {h.ticker: h for h in analytics.metrics(1, now=now).holdings}
        assert by_ticker["MSFT"].total_impact_score == 0
        assert by_ticker["MSFT"].positive_impacts == 0

    def test_unknown_holding(self, db_session):
        with pytest.raises(RecordNotFoundError):
            PortfolioAnalytics(db_session).holding_performance(404)
