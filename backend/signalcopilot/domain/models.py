"""
Domain value types for the scoring pipeline.

Enums are ``str`` enums so they persist as plain strings. Input payloads are
pydantic models; derived results are dataclasses with ``to_dict()``.
"""

import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signalcopilot.utils.datetime import to_naive_utc


class SourceType(str, Enum):
    FILING = "filing"
    PRESS_RELEASE = "press_release"
    NEWS = "news"
    SOCIAL = "social"
    ANALYST_REPORT = "analyst_report"


class SourceTier(str, Enum):
    OFFICIAL = "official"
    PREMIUM = "premium"
    STANDARD = "standard"
    SOCIAL = "social"
    UNKNOWN = "unknown"


class EventCategory(str, Enum):
    GUIDANCE_CHANGE = "guidance_change"
    EARNINGS_BEAT_MISS = "earnings_beat_miss"
    REGULATORY_LEGAL = "regulatory_legal"
    MERGERS_ACQUISITIONS = "mergers_acquisitions"
    PRODUCT_RECALL = "product_recall"
    LEADERSHIP_CHANGE = "leadership_change"
    LAYOFFS = "layoffs"
    MACRO_SECTOR = "macro_sector"
    CONTRACT_WIN = "contract_win"
    DIVIDEND_BUYBACK = "dividend_buyback"
    PRODUCT_LAUNCH = "product_launch"
    ANALYST_RATING = "analyst_rating"
    EARNINGS_CALENDAR = "earnings_calendar"
    UNKNOWN = "unknown"


class HoldingIntent(str, Enum):
    TRADE = "trade"
    ACCUMULATE = "accumulate"
    INCOME = "income"
    HOLD = "hold"


class RiskProfile(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class RecommendationType(str, Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    HOLD = "hold"
    SELL = "sell"
    STRONG_SELL = "strong_sell"

    @property
    def is_buy_side(self) -> bool:
        return self in (RecommendationType.STRONG_BUY, RecommendationType.BUY)

    @property
    def is_sell_side(self) -> bool:
        return self in (RecommendationType.STRONG_SELL, RecommendationType.SELL)


class AlertType(str, Enum):
    DAILY_DIGEST = "daily_digest"
    HIGH_IMPACT = "high_impact"


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ArticleInput(BaseModel):
    """Validated article payload accepted by ingestion and returned by news providers."""

    ticker: str = Field(..., min_length=1, max_length=10)
    headline: str = Field(default="")
    summary: Optional[str] = None
    source_url: Optional[str] = None
    publisher: str = Field(default="unknown")
    published_at: datetime
    source_type: SourceType = SourceType.NEWS
    source_tier: SourceTier = SourceTier.UNKNOWN
    cluster_id: Optional[str] = None
    related_tickers: List[str] = Field(default_factory=list)
    sector: Optional[str] = None

    @field_validator("ticker")
    @classmethod
    def uppercase_ticker(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("related_tickers")
    @classmethod
    def uppercase_related(cls, v: List[str]) -> List[str]:
        return sorted({t.strip().upper() for t in v if t and t.strip()})

    @field_validator("source_url")
    @classmethod
    def strip_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("published_at")
    @classmethod
    def normalize_published_at(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @property
    def dedupe_key(self) -> str:
        """URL when present, otherwise a hash of ticker, publisher and headline."""
        if self.source_url:
            return self.source_url
        raw = f"{self.ticker}|{self.publisher.lower()}|{self.headline.strip().lower()}"
        return hashlib.sha256(raw.encode()).hexdigest()


@dataclass(frozen=True)
class ExtractedSignal:
    """Output of the signal extractor for a single article."""

    event_category: EventCategory
    sentiment: int
    magnitude: int
    confidence: float
    reasoning: str
    positive_keywords: List[str] = field(default_factory=list)
    negative_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_category"] = self.event_category.value
        return data


@dataclass(frozen=True)
class ConsensusData:
    """Agreement between independent sources covering the same event."""

    unique_source_count: int
    upgrades_count: int
    downgrades_count: int
    window_hours: int
    stance_agreement: float
    confidence_bonus: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AnalogData:
    """Summary of historically similar events."""

    count: int
    median_move_5d: Optional[float]
    median_move_30d: Optional[float]
    pattern: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RebalanceRecommendation:
    """Per-ticker recommendation derived from recent impacts."""

    ticker: str
    action: RecommendationType
    confidence_score: float
    rationale: str
    suggestion: str
    key_signals: List[str]
    average_impact_score: float
    news_count: int
    average_signal_confidence: float
    exposure: float
    intent: HoldingIntent = HoldingIntent.HOLD
    source_tier: str = ""
    analogs: Optional[AnalogData] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "action": self.action.value,
            "confidence_score": round(self.confidence_score, 4),
            "rationale": self.rationale,
            "suggestion": self.suggestion,
            "key_signals": list(self.key_signals),
            "average_impact_score": round(self.average_impact_score, 4),
            "news_count": self.news_count,
            "average_signal_confidence": round(self.average_signal_confidence, 4),
            "exposure": round(self.exposure, 4),
            "intent": self.intent.value,
            "source_tier": self.source_tier,
            "analogs": self.analogs.to_dict() if self.analogs else None,
        }


@dataclass
class PortfolioSummary:
    """Deterministic roll-up of the per-ticker recommendations."""

    overall_advice: str
    sentiment_label: str
    risk_assessment: str
    action_counts: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PortfolioAnalysisResult:
    user_id: int
    analyzed_at: datetime
    total_holdings: int
    impacts_analyzed: int
    recommendations: List[RebalanceRecommendation]
    summary: PortfolioSummary
    degraded: bool = False
    degraded_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "analyzed_at": self.analyzed_at.isoformat(),
            "total_holdings": self.total_holdings,
            "impacts_analyzed": self.impacts_analyzed,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "summary": self.summary.to_dict(),
            "degraded": self.degraded,
            "degraded_reasons": list(self.degraded_reasons),
        }


@dataclass(frozen=True)
class PositionWeight:
    ticker: str
    exposure: float

    def to_dict(self) -> Dict[str, Any]:
        return {"ticker": self.ticker, "exposure": round(self.exposure, 4)}


@dataclass
class IntentMetrics:
    """Allocation of the holdings sharing one intent."""

    intent: HoldingIntent
    count: int = 0
    total_value: float = 0.0
    portfolio_share: float = 0.0
    average_holding_days: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "count": self.count,
            "total_value": round(self.total_value, 2),
            "portfolio_share": round(self.portfolio_share, 4),
            "average_holding_days": self.average_holding_days,
        }


@dataclass
class HoldingPerformance:
    """Impact history of one holding."""

    holding_id: int
    ticker: str
    intent: HoldingIntent
    holding_period_days: int
    total_impact_score: float
    positive_impacts: int
    negative_impacts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holding_id": self.holding_id,
            "ticker": self.ticker,
            "intent": self.intent.value,
            "holding_period_days": self.holding_period_days,
            "total_impact_score": round(self.total_impact_score, 4),
            "positive_impacts": self.positive_impacts,
            "negative_impacts": self.negative_impacts,
        }


@dataclass
class PortfolioMetrics:
    """
    Portfolio-level concentration and allocation.

    ``concentration_index`` is the Herfindahl-Hirschman index of position
    exposures on a 0-10000 scale: below 1500 is diversified, up to 2500
    moderate, above that high.
    """

    user_id: int
    total_value: float
    concentration_index: float
    concentration_label: str
    largest_position: Optional[PositionWeight]
    top_concentrations: List[PositionWeight]
    intents: Dict[HoldingIntent, IntentMetrics]
    holdings: List[HoldingPerformance]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_value": round(self.total_value, 2),
            "concentration_index": round(self.concentration_index, 1),
            "concentration_label": self.concentration_label,
            "largest_position": self.largest_position.to_dict() if self.largest_position else None,
            "top_concentrations": [p.to_dict() for p in self.top_concentrations],
            "intents": {intent.value: m.to_dict() for intent, m in self.intents.items()},
            "holdings": [h.to_dict() for h in self.holdings],
        }


@dataclass
class ImpactPage:
    """One page of a user's impacts."""

    items: List["ImpactRecord"]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


@dataclass
class DigestContent:
    """Subject/body pair ready for an external delivery mechanism."""

    alert_type: AlertType
    subject: str
    content: str
    article_ids: List[int]

    @property
    def is_empty(self) -> bool:
        return not self.article_ids


class HoldingInput(BaseModel):
    """Validated holding create/update payload."""

    ticker: str = Field(..., min_length=1, max_length=10)
    shares: float = Field(..., ge=0)
    cost_basis: Optional[float] = Field(default=None, ge=0)
    acquired_at: Optional[datetime] = None
    intent: HoldingIntent = HoldingIntent.HOLD

    @field_validator("ticker")
    @classmethod
    def uppercase_ticker(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("acquired_at")
    @classmethod
    def normalize_acquired_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class ImpactRecord(BaseModel):
    """Read model for a stored impact row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    article_id: int
    holding_id: int
    impact_score: float
    exposure: float
    adjusted_exposure: float
    computed_at: datetime
