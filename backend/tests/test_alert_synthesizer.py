"""
Tests for high-impact alert selection, digest formatting and per-day dedupe.
"""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from signalcopilot.db.models import Alert
from signalcopilot.domain.models import AlertStatus, AlertType
from signalcopilot.services.alert_synthesizer import AlertSynthesizer
from signalcopilot.services.impact_calculator import ImpactCalculator
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import RecordNotFoundError


@pytest.fixture
def seeded(db_session, make_article, make_holding, make_signal):
    """User 1: AAPL (20%) and MSFT (80%) with a spread of impact scores."""
    make_holding(ticker="AAPL", shares=20, cost_basis=100.0)
    make_holding(ticker="MSFT", shares=80, cost_basis=100.0)
    specs = [
        ("MSFT", "Microsoft misses earnings", -1, 3, 0.9),   # -2.592
        ("MSFT", "Microsoft wins contract", 1, 1, 0.7),      # 0.672
        ("AAPL", "Apple beats earnings", 1, 3, 0.9),         # 0.648
        ("AAPL", "Apple shares slip", -1, 1, 0.5),           # -0.12
    ]
    articles = []
    for ticker, headline, sentiment, magnitude, confidence in specs:
        article = make_article(ticker=ticker, headline=headline)
        make_signal(article, sentiment=sentiment, magnitude=magnitude, confidence=confidence)
        ImpactCalculator(db_session).compute_for_article(article.id)
        articles.append(article)
    return articles


class TestSelection:
    def test_threshold_and_order(self, db_session, seeded):
        rows = AlertSynthesizer(db_session).select_high_impact(1)
        assert len(rows) == 1
        impact, article = rows[0]
        assert impact.impact_score == pytest.approx(-2.592)
        assert article.headline == "Microsoft misses earnings"

    def test_custom_threshold_and_limit(self, db_session, seeded):
        synthesizer = AlertSynthesizer(db_session)
        rows = synthesizer.select_high_impact(1, threshold=0.5)
        assert [round(abs(i.impact_score), 3) for i, _ in rows] == [2.592, 0.672, 0.648]
        assert len(synthesizer.select_high_impact(1, threshold=0.0, limit=2)) == 2

    def test_window_excludes_old_impacts(self, db_session, seeded, test_settings):
        synthesizer = AlertSynthesizer(db_session, test_settings(alert_window_hours=0))
        assert synthesizer.select_high_impact(1) == []


class TestContent:
    def test_high_impact_alert(self, db_session, seeded):
        digest = AlertSynthesizer(db_session).build_high_impact_alert(1)
        assert digest.alert_type == AlertType.HIGH_IMPACT
        assert digest.subject == "High Impact Alert: 1 significant events affecting your portfolio"
        assert digest.content.startswith("HIGH IMPACT EVENTS DETECTED")
        assert "[NEGATIVE] MSFT: Microsoft misses earnings" in digest.content
        assert "Magnitude: 3/3" in digest.content
        assert "Your Exposure: 80.0%" in digest.content
        assert digest.content.rstrip().endswith("Not financial advice.")

    def test_daily_digest(self, db_session, seeded):
        digest = AlertSynthesizer(db_session).build_daily_digest(1)
        assert digest.subject == "Daily Portfolio Digest: 4 events"
        assert "Positive Events: 2" in digest.content
        assert "Negative Events: 2" in digest.content
        assert digest.content.index("Microsoft misses earnings") < digest.content.index("Apple shares slip")
        assert sorted(digest.article_ids) == sorted(a.id for a in seeded)

    def test_digest_lists_top_events_only(self, db_session, seeded, test_settings):
        digest = AlertSynthesizer(db_session, test_settings(digest_top_events=2)).build_daily_digest(1)
        assert "Microsoft wins contract" in digest.content
        assert "Apple beats earnings" not in digest.content

    def test_empty_digest(self, db_session):
        digest = AlertSynthesizer(db_session).build_daily_digest(7)
        assert digest.is_empty


class TestPersistence:
    def test_one_high_impact_alert_per_day(self, db_session, seeded):
        synthesizer = AlertSynthesizer(db_session)
        alert = synthesizer.create_high_impact_alert(1)
        assert alert is not None
        assert alert.status == AlertStatus.PENDING.value
        assert alert.article_id_list == [seeded[0].id]
        assert synthesizer.create_high_impact_alert(1) is None
        assert db_session.query(Alert).count() == 1

    def test_digest_and_alert_are_independent(self, db_session, seeded):
        synthesizer = AlertSynthesizer(db_session)
        assert synthesizer.create_high_impact_alert(1) is not None
        assert synthesizer.create_daily_digest(1) is not None
        assert synthesizer.create_daily_digest(1) is None

    def test_yesterdays_alert_does_not_block_today(self, db_session, seeded):
        synthesizer = AlertSynthesizer(db_session)
        old = synthesizer.create_daily_digest(1)
        old.created_at = utcnow() - timedelta(days=1)
        db_session.flush()
        assert synthesizer.create_daily_digest(1) is not None

    def test_nothing_qualifying_creates_nothing(self, db_session, make_article, make_holding, make_signal):
        make_holding(ticker="AAPL")
        article = make_article(ticker="AAPL")
        make_signal(article, sentiment=1, magnitude=1, confidence=0.4)
        make_holding(ticker="MSFT", shares=1000)
        ImpactCalculator(db_session).compute_for_article(article.id)
        assert AlertSynthesizer(db_session).create_high_impact_alert(1) is None

    def test_generate_for_all_users(self, db_session, seeded, make_holding):
        make_holding(user_id=2, ticker="TSLA")
        created = AlertSynthesizer(db_session).generate_daily_digests()
        assert [a.user_id for a in created] == [1]

    def test_delivery_status(self, db_session, seeded):
        synthesizer = AlertSynthesizer(db_session)
        alert = synthesizer.create_high_impact_alert(1)

        sent = synthesizer.mark_sent(alert.id)
        assert sent.status == AlertStatus.SENT.value
        assert sent.sent_at is not None

        failed = synthesizer.mark_failed(alert.id, "SMTP timeout")
        assert failed.status == AlertStatus.FAILED.value
        assert failed.error_message == "SMTP timeout"

        with pytest.raises(RecordNotFoundError):
            synthesizer.mark_sent(9999)
