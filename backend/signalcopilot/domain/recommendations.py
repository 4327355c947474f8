"""
Recommendation policy: band thresholds, confidence, key signals and the
portfolio-level roll-up. Pure functions over already-aggregated numbers.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.domain.categories import describe
from signalcopilot.domain.models import (
    EventCategory,
    HoldingIntent,
    PortfolioSummary,
    RebalanceRecommendation,
    RecommendationType,
    RiskProfile,
)


SUGGESTIONS = {
    RecommendationType.STRONG_BUY: "Consider increasing position by 15-20%",
    RecommendationType.BUY: "Consider increasing position by 5-10%",
    RecommendationType.HOLD: "Maintain current position",
    RecommendationType.SELL: "Consider reducing position by 5-10%",
    RecommendationType.STRONG_SELL: "Consider reducing position by 15-20%",
}

INTENT_NOTES = {
    HoldingIntent.INCOME: "income position; weigh dividend continuity before selling",
    HoldingIntent.ACCUMULATE: "accumulation intent; pausing new purchases may be enough",
}


def classify_action(average_impact: float, config: Optional[Settings] = None) -> RecommendationType:
    """Map an average impact score onto symmetric bands around zero."""
    config = config or default_settings
    strong = config.recommendation_strong_band
    mild = config.recommendation_mild_band
    if average_impact >= strong:
        return RecommendationType.STRONG_BUY
    if average_impact >= mild:
        return RecommendationType.BUY
    if average_impact <= -strong:
        return RecommendationType.STRONG_SELL
    if average_impact <= -mild:
        return RecommendationType.SELL
    return RecommendationType.HOLD


def recommendation_confidence(
    average_signal_confidence: float,
    news_count: int,
    config: Optional[Settings] = None,
) -> float:
    """
    Confidence grows with corroboration and with signal quality.

    avg_confidence x min(1, news_count / saturation)
    """
    config = config or default_settings
    if news_count <= 0:
        return 0.0
    saturation = max(config.recommendation_confidence_saturation, 1)
    corroboration = min(1.0, news_count / saturation)
    return max(0.0, min(1.0, average_signal_confidence * corroboration))


def suggestion_for(action: RecommendationType, intent: HoldingIntent = HoldingIntent.HOLD) -> str:
    text = SUGGESTIONS[action]
    if action.is_sell_side and intent in INTENT_NOTES:
        text = f"{text} ({INTENT_NOTES[intent]})"
    return text


def dominant_categories(
    observations: Iterable[Tuple[EventCategory, datetime]],
    limit: int = 3,
) -> List[EventCategory]:
    """
    Categories ordered by frequency; ties go to the most recently seen one.

    ``unknown`` is only reported when nothing else was observed.
    """
    counts: Counter = Counter()
    latest: Dict[EventCategory, datetime] = {}
    for category, seen_at in observations:
        counts[category] += 1
        if category not in latest or seen_at > latest[category]:
            latest[category] = seen_at

    ranked = sorted(counts, key=lambda c: (counts[c], latest[c]), reverse=True)
    known = [c for c in ranked if c is not EventCategory.UNKNOWN]
    return (known or ranked)[:limit]


def build_rationale(
    action: RecommendationType,
    average_impact: float,
    news_count: int,
    key_signals: Sequence[EventCategory],
    source_tier: str,
    analog_pattern: Optional[str] = None,
) -> str:
    if action.is_buy_side:
        lead = "Strong positive signals" if action is RecommendationType.STRONG_BUY else "Positive signals"
    elif action.is_sell_side:
        lead = "Strong negative signals" if action is RecommendationType.STRONG_SELL else "Negative signals"
    else:
        lead = "Mixed or neutral signals"

    text = f"{lead} from {news_count} article{'s' if news_count != 1 else ''}"
    if source_tier:
        text += f" ({source_tier} sources)"
    text += f". Average impact: {average_impact:.2f}."
    if key_signals:
        text += f" Key signals: {', '.join(describe(c) for c in key_signals)}."
    if action is RecommendationType.HOLD:
        text += " Monitor for clearer trends."
    if analog_pattern:
        text += f" {analog_pattern}."
    return text


def summarize_portfolio(
    recommendations: Sequence[RebalanceRecommendation],
    risk_profile: RiskProfile = RiskProfile.BALANCED,
    cash_buffer: Optional[float] = None,
    config: Optional[Settings] = None,
) -> PortfolioSummary:
    """Deterministic roll-up of per-ticker recommendations."""
    config = config or default_settings
    counts = {action.value: 0 for action in RecommendationType}
    for rec in recommendations:
        counts[rec.action.value] += 1

    buy_side = [r for r in recommendations if r.action.is_buy_side]
    sell_side = [r for r in recommendations if r.action.is_sell_side]

    sentiment_label = _sentiment_label(len(buy_side), len(sell_side))
    risk = _risk_assessment(recommendations, sell_side, risk_profile, config)
    advice = _overall_advice(recommendations, buy_side, sell_side, sentiment_label, risk, cash_buffer)

    return PortfolioSummary(
        overall_advice=advice,
        sentiment_label=sentiment_label,
        risk_assessment=risk,
        action_counts=counts,
    )


def _sentiment_label(buys: int, sells: int) -> str:
    if buys == 0 and sells == 0:
        return "neutral"
    if buys >= 2 * sells and buys > sells:
        return "bullish"
    if sells >= 2 * buys and sells > buys:
        return "bearish"
    return "mixed"


def _risk_assessment(
    recommendations: Sequence[RebalanceRecommendation],
    sell_side: Sequence[RebalanceRecommendation],
    risk_profile: RiskProfile,
    config: Settings,
) -> str:
    if not recommendations:
        return "low"

    points = 0
    sell_share = len(sell_side) / len(recommendations)
    if sell_share >= 0.5:
        points += 2
    elif sell_share >= 0.25:
        points += 1

    if any(r.exposure > config.concentration_threshold for r in sell_side):
        points += 1

    if risk_profile is RiskProfile.CONSERVATIVE and sell_side:
        points += 1
    elif risk_profile is RiskProfile.AGGRESSIVE:
        points = max(0, points - 1)

    if points >= 3:
        return "high"
    if points >= 1:
        return "moderate"
    return "low"


def _tickers(recs: Sequence[RebalanceRecommendation], limit: int = 3) -> str:
    return ", ".join(r.ticker for r in recs[:limit])


def _overall_advice(
    recommendations: Sequence[RebalanceRecommendation],
    buy_side: Sequence[RebalanceRecommendation],
    sell_side: Sequence[RebalanceRecommendation],
    sentiment_label: str,
    risk: str,
    cash_buffer: Optional[float],
) -> str:
    if not recommendations:
        return "No recent signals for your holdings. No action needed."

    if sentiment_label == "bullish":
        advice = f"Signals lean positive. Consider adding to {_tickers(buy_side)}."
    elif sentiment_label == "bearish":
        advice = f"Signals lean negative. Review {_tickers(sell_side)} for possible trimming."
    elif sentiment_label == "mixed":
        advice = f"Signals are mixed. Rebalance selectively: add to {_tickers(buy_side)}; trim {_tickers(sell_side)}."
    else:
        advice = "No strong signals. Maintain current allocation."

    if buy_side and cash_buffer is not None:
        if cash_buffer > 0:
            advice += f" Available cash buffer: ${cash_buffer:,.2f}."
        else:
            advice += " No cash buffer available; fund additions by trimming weaker positions."

    if risk == "high":
        advice += " Risk is elevated; review position sizing."
    return advice
