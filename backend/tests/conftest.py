"""
Shared pytest fixtures for the Signal Copilot test suite.

Every test gets a fresh in-memory SQLite database; the module-level
session factory is rebound to it so job handlers see the same data.
"""

import itertools
import os
import sys
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from signalcopilot.config import Settings
from signalcopilot.db import session as db_session_module
from signalcopilot.db.models import Base
from signalcopilot.db.repositories import ArticleRepository, HoldingRepository, SignalRepository
from signalcopilot.domain.categories import classify_headline
from signalcopilot.domain.models import (
    ArticleInput,
    EventCategory,
    ExtractedSignal,
    HoldingInput,
    HoldingIntent,
    SourceTier,
)
from signalcopilot.utils.datetime import utcnow


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database with the full schema."""
    test_engine = db_session_module.configure_engine("sqlite://")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    db_session_module.close_db()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def test_settings():
    """Settings with defaults only (no .env), overridable per test."""
    def _make(**overrides):
        return Settings(_env_file=None, **overrides)
    return _make


@pytest.fixture
def make_article(db_session):
    counter = itertools.count(1)

    def _make(
        ticker="AAPL",
        headline="Apple announces quarterly update",
        publisher="Reuters",
        source_tier=SourceTier.PREMIUM,
        published_at=None,
        summary=None,
        cluster_id=None,
        related_tickers=None,
        sector=None,
        source_url=None,
        event_category=None,
    ):
        n = next(counter)
        article_input = ArticleInput(
            ticker=ticker,
            headline=headline,
            summary=summary,
            source_url=source_url or f"https://news.example.com/{ticker.lower()}/{n}",
            publisher=publisher,
            published_at=published_at or utcnow() - timedelta(hours=1),
            source_tier=source_tier,
            cluster_id=cluster_id,
            related_tickers=related_tickers or [],
            sector=sector,
        )
        category = event_category or classify_headline(headline)
        article = ArticleRepository(db_session).create(article_input, category)
        db_session.flush()
        return article

    return _make


@pytest.fixture
def make_holding(db_session):
    def _make(user_id=1, ticker="AAPL", shares=10, cost_basis=100.0, intent=HoldingIntent.HOLD):
        holding_input = HoldingInput(ticker=ticker, shares=shares, cost_basis=cost_basis, intent=intent)
        return HoldingRepository(db_session).create(user_id, holding_input)

    return _make


@pytest.fixture
def make_signal(db_session):
    def _make(article, sentiment=1, magnitude=3, confidence=0.9, category=None):
        extracted = ExtractedSignal(
            event_category=category or EventCategory(article.event_category),
            sentiment=sentiment,
            magnitude=magnitude,
            confidence=confidence,
            reasoning="test signal",
        )
        signal, _ = SignalRepository(db_session).save(article.id, extracted, force=True)
        return signal

    return _make
