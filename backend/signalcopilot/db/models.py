"""
SQLAlchemy 2.0 database models for Signal Copilot.

Rows reference each other by foreign key only; there are no ORM
relationships, so no component walks another component's object graph.
Child rows are removed by ``ON DELETE CASCADE`` at the database level.
"""

from datetime import datetime
from typing import List

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from signalcopilot.utils.datetime import utcnow

Base = declarative_base()


def _split_csv(value) -> List[str]:
    if not value:
        return []
    return [part for part in value.split(",") if part]


class Article(Base):
    """Ingested news article. Immutable after ingestion."""

    __tablename__ = "articles"
    __table_args__ = (
        Index("ix_articles_ticker_published", "ticker", "published_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    ticker = Column(String(10), nullable=False, index=True)
    headline = Column(Text, nullable=False, default="")
    summary = Column(Text, nullable=True)
    source_url = Column(String, nullable=True, unique=True)
    publisher = Column(String, nullable=False, default="unknown")
    published_at = Column(DateTime, nullable=False, index=True)
    ingested_at = Column(DateTime, nullable=False, default=utcnow)
    source_type = Column(String, nullable=False, default="news")
    source_tier = Column(String, nullable=False, default="unknown")

    # Enrichment, set once at ingestion
    event_category = Column(String, nullable=False, default="unknown", index=True)
    sector = Column(String, nullable=True, index=True)
    cluster_id = Column(String, nullable=True, index=True)
    related_tickers = Column(String, nullable=True)  # comma-separated

    @property
    def related_ticker_list(self) -> List[str]:
        return _split_csv(self.related_tickers)

    def __repr__(self) -> str:
        return f"<Article(id={self.id}, ticker={self.ticker}, category={self.event_category})>"


class Signal(Base):
    """Extracted signal, one per article."""

    __tablename__ = "signals"
    __table_args__ = (
        CheckConstraint("sentiment IN (-1, 0, 1)", name="ck_signals_sentiment"),
        CheckConstraint("magnitude BETWEEN 1 AND 3", name="ck_signals_magnitude"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_signals_confidence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    article_id = Column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    sentiment = Column(Integer, nullable=False, default=0)
    magnitude = Column(Integer, nullable=False, default=1)
    base_confidence = Column(Float, nullable=False)  # source-tier prior
    consensus_bonus = Column(Float, nullable=False, default=0.0)
    confidence = Column(Float, nullable=False)  # min(1, base + bonus)
    reasoning = Column(Text, nullable=False, default="")
    analyzed_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Signal(article_id={self.article_id}, sentiment={self.sentiment}, "
            f"magnitude={self.magnitude}, confidence={self.confidence:.2f})>"
        )


class Holding(Base):
    """A user's position in one ticker."""

    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint("user_id", "ticker", name="uq_holdings_user_ticker"),
        CheckConstraint("shares >= 0", name="ck_holdings_shares"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    ticker = Column(String(10), nullable=False, index=True)
    shares = Column(Float, nullable=False)
    cost_basis = Column(Float, nullable=True)
    acquired_at = Column(DateTime, nullable=True)
    intent = Column(String, nullable=False, default="hold")
    added_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Holding(id={self.id}, user_id={self.user_id}, ticker={self.ticker}, shares={self.shares})>"


class Impact(Base):
    """Personalized impact of one article on one holding."""

    __tablename__ = "impacts"
    __table_args__ = (
        UniqueConstraint("user_id", "article_id", "holding_id", name="uq_impacts_natural_key"),
        Index("ix_impacts_user_computed", "user_id", "computed_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    article_id = Column(Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False)
    holding_id = Column(Integer, ForeignKey("holdings.id", ondelete="CASCADE"), nullable=False)
    impact_score = Column(Float, nullable=False)
    exposure = Column(Float, nullable=False)
    adjusted_exposure = Column(Float, nullable=False)
    computed_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Impact(user_id={self.user_id}, article_id={self.article_id}, "
            f"holding_id={self.holding_id}, score={self.impact_score:.3f})>"
        )


class UserProfile(Base):
    """Risk preferences read by the portfolio analyzer."""

    __tablename__ = "user_profiles"

    user_id = Column(Integer, primary_key=True)
    risk_profile = Column(String, nullable=False, default="balanced")
    cash_buffer = Column(Float, nullable=True)
    # Bumped by every holding create, update and delete
    portfolio_changed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ArticleOutcome(Base):
    """Realized price move after an article, per horizon ("5d", "30d")."""

    __tablename__ = "article_outcomes"
    __table_args__ = (
        UniqueConstraint("article_id", "horizon", name="uq_article_outcomes_article_horizon"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    article_id = Column(Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, index=True)
    horizon = Column(String, nullable=False)
    return_pct = Column(Float, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ArticleOutcome(article_id={self.article_id}, horizon={self.horizon}, return={self.return_pct:.2f}%)>"


class Alert(Base):
    """Alert content awaiting (or after) external delivery."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_user_type_created", "user_id", "alert_type", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    alert_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    subject = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    article_ids = Column(Text, nullable=False, default="")  # comma-separated
    created_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    @property
    def article_id_list(self) -> List[int]:
        return [int(part) for part in _split_csv(self.article_ids)]

    def __repr__(self) -> str:
        return f"<Alert(id={self.id}, user_id={self.user_id}, type={self.alert_type}, status={self.status})>"
