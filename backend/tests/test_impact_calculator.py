"""
Tests for impact scoring: exposure, concentration, storage semantics and
the paginated impact query.
"""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from signalcopilot.db import repositories
from signalcopilot.db.models import Impact
from signalcopilot.db.repositories import ArticleRepository, HoldingRepository, ImpactRepository
from signalcopilot.domain.impact import (
    PositionSnapshot,
    adjust_exposure,
    compute_exposure,
    compute_impact,
)
from signalcopilot.domain.models import SourceTier
from signalcopilot.services.holdings import HoldingService
from signalcopilot.services.impact_calculator import ImpactCalculator
from signalcopilot.services.pipeline import ArticlePipeline
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import RecordNotFoundError


class TestExposure:
    def test_value_weighted(self):
        portfolio = [
            PositionSnapshot(1, "AAPL", 20, 100.0),
            PositionSnapshot(2, "MSFT", 80, 100.0),
        ]
        assert compute_exposure(portfolio[0], portfolio) == pytest.approx(0.2)
        assert compute_exposure(portfolio[1], portfolio) == pytest.approx(0.8)

    def test_share_ratio_fallback_without_cost_basis(self):
        portfolio = [
            PositionSnapshot(1, "AAPL", 30, None),
            PositionSnapshot(2, "MSFT", 70, None),
        ]
        assert compute_exposure(portfolio[0], portfolio) == pytest.approx(0.3)

    def test_mixed_cost_basis_falls_back_for_unvalued_position(self):
        portfolio = [
            PositionSnapshot(1, "AAPL", 10, 100.0),
            PositionSnapshot(2, "MSFT", 30, None),
        ]
        assert compute_exposure(portfolio[0], portfolio) == pytest.approx(1.0)
        assert compute_exposure(portfolio[1], portfolio) == pytest.approx(0.75)

    def test_empty_portfolio(self):
        position = PositionSnapshot(1, "AAPL", 0, None)
        assert compute_exposure(position, [position]) == 0.0


class TestConcentration:
    def test_boundary_is_not_concentrated(self):
        assert adjust_exposure(0.15) == pytest.approx(0.15)

    def test_above_boundary_is_multiplied(self):
        assert adjust_exposure(0.16) == pytest.approx(0.192)

    def test_full_exposure_is_not_capped(self):
        assert adjust_exposure(1.0) == pytest.approx(1.2)

    def test_compute_impact(self):
        computation = compute_impact(1, 3, 0.9, 0.2)
        assert computation.adjusted_exposure == pytest.approx(0.24)
        assert computation.impact_score == pytest.approx(0.648)
        assert computation.concentration_applied is True

    def test_negative_and_neutral(self):
        assert compute_impact(-1, 2, 0.7, 0.1).impact_score == pytest.approx(-0.14)
        assert compute_impact(0, 3, 1.0, 0.5).impact_score == 0.0


class TestImpactCalculator:
    def _portfolio(self, make_holding):
        aapl = make_holding(user_id=1, ticker="AAPL", shares=20, cost_basis=100.0)
        make_holding(user_id=1, ticker="MSFT", shares=80, cost_basis=100.0)
        return aapl

    def test_end_to_end_score(self, db_session, make_article, make_holding):
        """Premium earnings beat on a 20% position scores 1 x 3 x 0.9 x 0.24."""
        aapl = self._portfolio(make_holding)
        article = make_article(ticker="AAPL", headline="AAPL beats earnings by 18%", source_tier=SourceTier.PREMIUM)
        db_session.commit()

        result = ArticlePipeline(db_session).process_article(article.id)

        assert result.signal_written is True
        assert result.impacts_written == 1
        impact = ImpactRepository(db_session).get(1, article.id, aapl.id)
        assert impact.exposure == pytest.approx(0.2)
        assert impact.adjusted_exposure == pytest.approx(0.24)
        assert impact.impact_score == pytest.approx(0.648)

    def test_upsert_is_idempotent(self, db_session, make_article, make_holding, make_signal):
        self._portfolio(make_holding)
        article = make_article(ticker="AAPL")
        make_signal(article, sentiment=1, magnitude=3, confidence=0.9)

        calculator = ImpactCalculator(db_session)
        calculator.compute_for_article(article.id)
        calculator.compute_for_article(article.id)

        rows = db_session.query(Impact).filter(Impact.article_id == article.id).all()
        assert len(rows) == 1
        assert rows[0].impact_score == pytest.approx(0.648)

    def test_related_tickers_reach_other_holdings(self, db_session, make_article, make_holding, make_signal):
        self._portfolio(make_holding)
        article = make_article(ticker="AAPL", related_tickers=["MSFT"])
        make_signal(article)

        written = ImpactCalculator(db_session).compute_for_article(article.id)
        assert written == 2

    def test_every_holder_is_scored(self, db_session, make_article, make_holding, make_signal):
        make_holding(user_id=1, ticker="AAPL", shares=10)
        make_holding(user_id=2, ticker="AAPL", shares=5)
        article = make_article(ticker="AAPL")
        make_signal(article)

        assert ImpactCalculator(db_session).compute_for_article(article.id) == 2
        assert ImpactRepository(db_session).count_for_user(2) == 1

    def test_no_holdings_writes_nothing(self, db_session, make_article, make_signal):
        article = make_article(ticker="NVDA")
        make_signal(article)
        assert ImpactCalculator(db_session).compute_for_article(article.id) == 0

    def test_missing_signal_raises(self, db_session, make_article):
        article = make_article()
        with pytest.raises(RecordNotFoundError):
            ImpactCalculator(db_session).compute_for_article(article.id)

    def test_recompute_is_restartable(self, db_session, make_article, make_holding, make_signal):
        self._portfolio(make_holding)
        first = make_article(ticker="AAPL")
        second = make_article(ticker="MSFT")
        make_signal(first)
        second_signal = make_signal(second, sentiment=-1)

        calculator = ImpactCalculator(db_session)
        assert calculator.compute_for_user(1) == 2
        assert calculator.compute_for_user(1) == 0, "Up-to-date impacts should be skipped"

        second_signal.updated_at = utcnow() + timedelta(seconds=5)
        db_session.flush()
        assert calculator.compute_for_user(1) == 1
        assert calculator.compute_for_user(1, force=True) == 2

    def test_holding_change_triggers_recompute(self, db_session, make_article, make_holding, make_signal):
        aapl = self._portfolio(make_holding)
        article = make_article(ticker="AAPL")
        make_signal(article)

        calculator = ImpactCalculator(db_session)
        calculator.compute_for_user(1)
        repo = HoldingRepository(db_session)
        repo.update(aapl.id, shares=80)
        aapl.updated_at = utcnow() + timedelta(seconds=5)
        db_session.flush()

        assert calculator.compute_for_user(1) == 1
        impact = ImpactRepository(db_session).get(1, article.id, aapl.id)
        assert impact.exposure == pytest.approx(0.5)

    def test_removed_holding_triggers_recompute(self, db_session, make_article, make_holding, make_signal, monkeypatch):
        """Dropping MSFT leaves AAPL as the whole portfolio."""
        aapl = self._portfolio(make_holding)
        msft = HoldingRepository(db_session).get_by_ticker(1, "MSFT")
        article = make_article(ticker="AAPL")
        make_signal(article)

        calculator = ImpactCalculator(db_session)
        calculator.compute_for_user(1)
        later = utcnow() + timedelta(seconds=5)
        monkeypatch.setattr(repositories, "utcnow", lambda: later)
        HoldingService(db_session).remove_holding(msft.id)

        assert HoldingRepository(db_session).latest_change(1) == later
        assert calculator.compute_for_user(1) == 1
        impact = ImpactRepository(db_session).get(1, article.id, aapl.id)
        assert impact.exposure == pytest.approx(1.0)


class TestCascadingDeletes:
    def test_deleting_holding_removes_impacts(self, db_session, make_article, make_holding, make_signal):
        aapl = make_holding(ticker="AAPL")
        article = make_article(ticker="AAPL")
        make_signal(article)
        ImpactCalculator(db_session).compute_for_article(article.id)
        assert ImpactRepository(db_session).count_for_user(1) == 1

        HoldingRepository(db_session).delete(aapl.id)
        assert ImpactRepository(db_session).count_for_user(1) == 0

    def test_deleting_article_removes_signal_and_impacts(self, db_session, make_article, make_holding, make_signal):
        make_holding(ticker="AAPL")
        article = make_article(ticker="AAPL")
        article_id = article.id
        make_signal(article)
        ImpactCalculator(db_session).compute_for_article(article_id)

        ArticleRepository(db_session).delete(article_id)
        assert ImpactRepository(db_session).count_for_user(1) == 0
        assert ImpactCalculator(db_session).signals.get_by_article(article_id) is None


class TestImpactQuery:
    def _seed(self, db_session, make_article, make_holding, make_signal):
        holding = make_holding(ticker="AAPL", shares=20, cost_basis=100.0)
        make_holding(ticker="MSFT", shares=80, cost_basis=100.0)
        strong = make_article(ticker="MSFT", headline="Microsoft beats earnings")
        medium = make_article(ticker="AAPL", headline="Apple beats earnings")
        weak = make_article(ticker="AAPL", headline="Apple shares edge lower")
        make_signal(strong, sentiment=-1, magnitude=3, confidence=0.9)
        make_signal(medium, sentiment=1, magnitude=3, confidence=0.9)
        make_signal(weak, sentiment=-1, magnitude=1, confidence=0.5)
        calculator = ImpactCalculator(db_session)
        for article in (strong, medium, weak):
            calculator.compute_for_article(article.id)
        return holding

    def test_ordered_by_absolute_score(self, db_session, make_article, make_holding, make_signal):
        self._seed(db_session, make_article, make_holding, make_signal)
        page = ImpactRepository(db_session).query(user_id=1)
        scores = [item.impact_score for item in page.items]
        assert [abs(s) for s in scores] == sorted((abs(s) for s in scores), reverse=True)
        assert scores[0] < 0, "Largest magnitude first even when negative"
        assert page.total_count == 3

    def test_min_score_filter_excludes_below_threshold(self, db_session, make_article, make_holding, make_signal):
        self._seed(db_session, make_article, make_holding, make_signal)
        page = ImpactRepository(db_session).query(user_id=1, min_impact_score=0.7)
        assert page.total_count == 1
        assert all(abs(item.impact_score) >= 0.7 for item in page.items)
        assert all(item.impact_score != pytest.approx(0.648) for item in page.items)

    def test_pagination(self, db_session, make_article, make_holding, make_signal):
        self._seed(db_session, make_article, make_holding, make_signal)
        repo = ImpactRepository(db_session)
        first = repo.query(user_id=1, page=1, page_size=2)
        second = repo.query(user_id=1, page=2, page_size=2)
        assert len(first.items) == 2
        assert len(second.items) == 1
        assert first.total_pages == 2
        assert {i.id for i in first.items}.isdisjoint({i.id for i in second.items})

    def test_page_size_is_capped(self, db_session, make_article, make_holding, make_signal):
        self._seed(db_session, make_article, make_holding, make_signal)
        page = ImpactRepository(db_session).query(user_id=1, page_size=500)
        assert page.page_size == 100

    def test_other_users_are_isolated(self, db_session, make_article, make_holding, make_signal):
        self._seed(db_session, make_article, make_holding, make_signal)
        assert ImpactRepository(db_session).query(user_id=2).total_count == 0
