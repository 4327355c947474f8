"""
Portfolio Analyzer - per-ticker rebalancing recommendations.

Aggregates a user's recent impacts by holding ticker, maps the average
impact onto recommendation bands, attaches historical analogs for the
dominant event category and rolls everything up into a portfolio summary.
Analog lookups are non-critical: if they fail the result is marked
degraded instead of failing.
"""

import statistics
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Article, Holding, Impact, Signal
from signalcopilot.db.repositories import HoldingRepository, ImpactRepository, UserProfileRepository
from signalcopilot.domain.categories import describe, parse_category
from signalcopilot.domain.impact import PositionSnapshot, compute_exposure
from signalcopilot.domain.models import (
    AnalogData,
    EventCategory,
    HoldingIntent,
    PortfolioAnalysisResult,
    RebalanceRecommendation,
    RiskProfile,
)
from signalcopilot.domain.recommendations import (
    build_rationale,
    classify_action,
    dominant_categories,
    recommendation_confidence,
    suggestion_for,
    summarize_portfolio,
)
from signalcopilot.log_config import logger
from signalcopilot.services.historical_analogs import HistoricalAnalogService
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import DatabaseError, InvalidEventCategoryError


ImpactRow = Tuple[Impact, Signal, Article, Holding]


def _parse_intent(value: Optional[str]) -> HoldingIntent:
    try:
        return HoldingIntent(value)
    except ValueError:
        return HoldingIntent.HOLD


def _parse_risk_profile(value: Optional[str]) -> RiskProfile:
    try:
        return RiskProfile(value)
    except ValueError:
        return RiskProfile.BALANCED


class PortfolioAnalyzer:
    """Builds rebalancing recommendations from stored impacts."""

    def __init__(
        self,
        db: Session,
        config: Optional[Settings] = None,
        analog_service: Optional[HistoricalAnalogService] = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.holdings = HoldingRepository(db)
        self.impacts = ImpactRepository(db)
        self.profiles = UserProfileRepository(db)
        self.analogs = analog_service or HistoricalAnalogService(db, self.config)

    def analyze(self, user_id: int) -> PortfolioAnalysisResult:
        now = utcnow()
        holdings = self.holdings.get_for_user(user_id)
        profile = self.profiles.get(user_id)
        risk_profile = _parse_risk_profile(profile.risk_profile if profile else None)
        cash_buffer = profile.cash_buffer if profile else None

        if not holdings:
            return PortfolioAnalysisResult(
                user_id=user_id,
                analyzed_at=now,
                total_holdings=0,
                impacts_analyzed=0,
                recommendations=[],
                summary=summarize_portfolio([], risk_profile, cash_buffer, self.config),
            )

        since = now - timedelta(days=self.config.analysis_lookback_days)
        rows = self.impacts.recent_with_context(user_id, since)

        portfolio = [
            PositionSnapshot(h.id, h.ticker, h.shares, h.cost_basis) for h in holdings
        ]
        exposures = {p.ticker: compute_exposure(p, portfolio) for p in portfolio}
        holdings_by_ticker = {h.ticker: h for h in holdings}

        grouped: Dict[str, List[ImpactRow]] = defaultdict(list)
        for row in rows:
            grouped[row[3].ticker].append(row)

        recommendations = []
        degraded_reasons = []
        for ticker, ticker_rows in grouped.items():
            recommendation, analog_error = self._recommend(
                ticker,
                ticker_rows,
                holdings_by_ticker[ticker],
                exposures.get(ticker, 0.0),
            )
            if analog_error:
                degraded_reasons.append(analog_error)
            recommendations.append(recommendation)

        recommendations.sort(key=lambda r: (-r.confidence_score, r.ticker))
        summary = summarize_portfolio(recommendations, risk_profile, cash_buffer, self.config)

        logger.info(
            f"Portfolio analysis for user {user_id}: {len(recommendations)} recommendations "
            f"from {len(rows)} impacts ({summary.sentiment_label}, risk {summary.risk_assessment})"
        )
        return PortfolioAnalysisResult(
            user_id=user_id,
            analyzed_at=now,
            total_holdings=len(holdings),
            impacts_analyzed=len(rows),
            recommendations=recommendations,
            summary=summary,
            degraded=bool(degraded_reasons),
            degraded_reasons=degraded_reasons,
        )

    def _recommend(
        self,
        ticker: str,
        rows: List[ImpactRow],
        holding: Holding,
        exposure: float,
    ) -> Tuple[RebalanceRecommendation, Optional[str]]:
        average_impact = statistics.fmean(impact.impact_score for impact, _, _, _ in rows)

        # Per article, not per row: related-ticker articles can hit several holdings
        articles: Dict[int, Tuple[Signal, Article]] = {}
        for _, signal, article, _ in rows:
            articles[article.id] = (signal, article)

        news_count = len(articles)
        average_confidence = statistics.fmean(signal.confidence for signal, _ in articles.values())
        action = classify_action(average_impact, self.config)
        confidence = recommendation_confidence(average_confidence, news_count, self.config)

        observations = [(self._category(article), article.published_at) for _, article in articles.values()]
        key_categories = dominant_categories(observations, self.config.max_key_signals)
        dominant = key_categories[0] if key_categories else EventCategory.UNKNOWN

        tier_counts = Counter(article.source_tier for _, article in articles.values())
        source_tier = tier_counts.most_common(1)[0][0] if tier_counts else ""

        analogs, analog_error = self._lookup_analogs(ticker, dominant)
        analog_pattern = None
        if analogs is not None and analogs.count >= self.config.analog_min_matches:
            analog_pattern = analogs.pattern

        intent = _parse_intent(holding.intent)
        recommendation = RebalanceRecommendation(
            ticker=ticker,
            action=action,
            confidence_score=confidence,
            rationale=build_rationale(action, average_impact, news_count, key_categories, source_tier, analog_pattern),
            suggestion=suggestion_for(action, intent),
            key_signals=[describe(c) for c in key_categories],
            average_impact_score=average_impact,
            news_count=news_count,
            average_signal_confidence=average_confidence,
            exposure=exposure,
            intent=intent,
            source_tier=source_tier,
            analogs=analogs,
        )
        return recommendation, analog_error

    def _lookup_analogs(self, ticker: str, category: EventCategory) -> Tuple[Optional[AnalogData], Optional[str]]:
        try:
            return self.analogs.find_analogs(ticker, category), None
        except DatabaseError as e:
            logger.warning(f"Historical analogs unavailable for {ticker}: {e.message}")
            return None, f"historical analogs unavailable for {ticker}"

    @staticmethod
    def _category(article: Article) -> EventCategory:
        try:
            return parse_category(article.event_category)
        except InvalidEventCategoryError:
            return EventCategory.UNKNOWN
