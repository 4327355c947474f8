"""
Pure signal extraction.

Turns one article (headline, summary, source metadata) into a directional
sentiment, a 1-3 magnitude, a tier-based confidence prior and a reasoning
string. Deterministic, no storage or network access, and never raises on
malformed text.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.domain.categories import (
    classify_headline,
    category_info,
    parse_category,
)
from signalcopilot.domain.models import EventCategory, ExtractedSignal, SourceTier
from signalcopilot.utils.errors import InvalidEventCategoryError


POSITIVE_KEYWORDS = {
    # Earnings/Financial
    "beat", "beats", "exceed", "exceeds", "exceeded", "tops", "topped",
    "profit", "profitable", "record", "outperform", "outperforms",
    # Guidance/Ratings
    "raise", "raises", "raised", "upgrade", "upgrades", "upgraded",
    # Growth
    "up", "growth", "grows", "gain", "gains", "rise", "rises", "rose",
    "increase", "increases", "increased", "improve", "improves", "improved",
    "surge", "surges", "surged", "soar", "soars", "soared", "jump", "jumps",
    "jumped", "rally", "rallies", "boom",
    # Success
    "win", "wins", "won", "awarded", "breakthrough", "stellar", "exceptional",
    "strong", "stronger", "positive", "optimistic", "approval", "approved",
}

NEGATIVE_KEYWORDS = {
    # Earnings/Financial
    "miss", "misses", "missed", "falls short", "fell short", "loss", "losses",
    "underperform", "underperforms",
    # Guidance/Ratings
    "cut", "cuts", "lower", "lowers", "lowered", "downgrade", "downgrades",
    "downgraded", "warns", "warning",
    # Decline
    "down", "decline", "declines", "declined", "drop", "drops", "dropped",
    "fall", "falls", "fell", "plunge", "plunges", "plunged", "crash", "crashes",
    "collapse", "collapses", "slump", "slumps", "tumble", "tumbles", "weak",
    "weaker",
    # Legal/Distress
    "lawsuit", "lawsuits", "sued", "probe", "investigation", "fraud",
    "scandal", "crisis", "bankruptcy", "layoff", "layoffs", "recall",
    "recalls", "recalled", "concern", "concerns", "struggle", "struggles",
}

NEUTRAL_KEYWORDS = {
    "neutral", "scheduled", "reaffirm", "reaffirms", "reaffirmed", "maintain",
    "maintains", "maintained", "in line", "unchanged", "steady", "stable",
}

GUIDANCE_DIRECTIONAL_VERBS = re.compile(
    r"\b(?:rais(?:e|es|ed|ing)|cut(?:s|ting)?|lower(?:s|ed|ing)?|reaffirm(?:s|ed|ing)?)\b"
)

PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:%|percent\b|pct\b)")

DOLLAR_PATTERN = re.compile(
    r"\$\s?(\d+(?:,\d{3})*(?:\.\d+)?)(?:\s*(trillion|billion|million|thousand|tn|bn|mm|t|b|m|k)\b)?"
)

DOLLAR_SCALE = {
    "trillion": 1e12, "tn": 1e12, "t": 1e12,
    "billion": 1e9, "bn": 1e9, "b": 1e9,
    "million": 1e6, "mm": 1e6, "m": 1e6,
    "thousand": 1e3, "k": 1e3,
}


def _keyword_pattern(keywords: Iterable[str]) -> "re.Pattern[str]":
    # Longest first so multi-word phrases win over their single-word prefixes
    ordered = sorted(keywords, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in ordered) + r")\b")


_POSITIVE_RE = _keyword_pattern(POSITIVE_KEYWORDS)
_NEGATIVE_RE = _keyword_pattern(NEGATIVE_KEYWORDS)
_NEUTRAL_RE = _keyword_pattern(NEUTRAL_KEYWORDS)


@dataclass(frozen=True)
class MagnitudeCue:
    """The cue that decided an article's magnitude."""

    magnitude: int
    source: str
    detail: str = ""


def tier_confidence(source_tier: Any, config: Optional[Settings] = None) -> float:
    """Base confidence prior for a source tier; unrecognized tiers use the ``unknown`` prior."""
    config = config or default_settings
    table = config.confidence_by_tier
    key = source_tier.value if isinstance(source_tier, SourceTier) else str(source_tier or "").lower()
    return table.get(key, table["unknown"])


def find_percentages(text: str) -> List[float]:
    return [float(m.group(1)) for m in PERCENT_PATTERN.finditer(text.lower())]


def find_dollar_amounts(text: str) -> List[float]:
    """Return every dollar amount mentioned in ``text``, scaled to dollars."""
    amounts = []
    for match in DOLLAR_PATTERN.finditer(text.lower()):
        value = float(match.group(1).replace(",", ""))
        suffix = (match.group(2) or "").lower()
        amounts.append(value * DOLLAR_SCALE.get(suffix, 1.0))
    return amounts


def _tier_lookup(value: float, tiers: Sequence[Tuple[float, int]]) -> Optional[int]:
    for threshold, magnitude in tiers:
        if value >= threshold:
            return magnitude
    return None


def is_guidance_change(headline: str) -> bool:
    """Headline mentions guidance together with raise/cut/lower/reaffirm."""
    text = headline.lower()
    return "guidance" in text and bool(GUIDANCE_DIRECTIONAL_VERBS.search(text))


def score_magnitude(
    headline: str,
    category: EventCategory,
    config: Optional[Settings] = None,
) -> MagnitudeCue:
    """
    Magnitude from the category prior, raised (never lowered) by
    percentage and dollar cues. Guidance changes are always 3.
    """
    config = config or default_settings
    info = category_info(category)

    if is_guidance_change(headline):
        return MagnitudeCue(3, "guidance", "guidance change with directional verb")

    cue = MagnitudeCue(info.default_magnitude, "category", f"{info.description} default")

    percentages = find_percentages(headline)
    if percentages:
        largest = max(percentages)
        boosted = _tier_lookup(largest, config.percent_magnitude_tiers)
        if boosted is not None and boosted > cue.magnitude:
            cue = MagnitudeCue(boosted, "percentage", f"{largest:g}%")

    amounts = find_dollar_amounts(headline)
    if amounts:
        largest = max(amounts)
        boosted = _tier_lookup(largest, config.dollar_magnitude_tiers)
        if boosted is not None and boosted > cue.magnitude:
            cue = MagnitudeCue(boosted, "dollar", _format_dollars(largest))

    return cue


def _format_dollars(amount: float) -> str:
    if amount >= 1e9:
        return f"${amount / 1e9:g}B"
    if amount >= 1e6:
        return f"${amount / 1e6:g}M"
    return f"${amount:,.0f}"


def score_sentiment(text: str) -> Tuple[int, List[str], List[str], List[str]]:
    """
    Count directional keywords.

    Returns (sentiment, positive hits, negative hits, neutral hits). More
    positive than negative hits is +1, the reverse is -1, a tie is 0.
    """
    lowered = text.lower()
    positive = _POSITIVE_RE.findall(lowered)
    negative = _NEGATIVE_RE.findall(lowered)
    neutral = _NEUTRAL_RE.findall(lowered)

    if len(positive) > len(negative):
        sentiment = 1
    elif len(negative) > len(positive):
        sentiment = -1
    else:
        sentiment = 0
    return sentiment, positive, negative, neutral


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def _resolve_category(article: Any, headline: str) -> EventCategory:
    try:
        preset = parse_category(getattr(article, "event_category", None))
    except InvalidEventCategoryError:
        preset = EventCategory.UNKNOWN
    if preset is not EventCategory.UNKNOWN:
        return preset
    return classify_headline(headline)


def extract_signal(article: Any, config: Optional[Settings] = None) -> ExtractedSignal:
    """
    Extract a signal from an article-like object.

    ``article`` needs ``headline``, ``summary`` and ``source_tier`` attributes
    (an ``ArticleInput`` or an ``Article`` row both work). A category already
    set on the article is kept; otherwise the headline is classified.
    """
    config = config or default_settings
    headline = getattr(article, "headline", None) or ""
    summary = getattr(article, "summary", None) or ""
    source_tier = getattr(article, "source_tier", None)
    confidence = tier_confidence(source_tier, config)
    tier_label = source_tier.value if isinstance(source_tier, SourceTier) else str(source_tier or "unknown").lower()

    if not headline.strip():
        return ExtractedSignal(
            event_category=EventCategory.UNKNOWN,
            sentiment=0,
            magnitude=1,
            confidence=confidence,
            reasoning=f"Empty headline; neutral default. Source tier {tier_label} prior {confidence:.2f}.",
        )

    category = _resolve_category(article, headline)
    cue = score_magnitude(headline, category, config)
    sentiment, positive, negative, neutral = score_sentiment(f"{headline} {summary}")

    info = category_info(category)
    parts = [f"Category: {info.description}."]
    if cue.source == "category":
        parts.append(f"Magnitude {cue.magnitude} from category default.")
    else:
        parts.append(f"Magnitude {cue.magnitude} from {cue.source} cue ({cue.detail}).")

    if sentiment > 0:
        parts.append(f"Positive sentiment detected. Keywords: {', '.join(_unique(positive))}.")
    elif sentiment < 0:
        parts.append(f"Negative sentiment detected. Keywords: {', '.join(_unique(negative))}.")
    elif positive or negative:
        parts.append(
            f"Mixed signals ({len(positive)} positive, {len(negative)} negative); neutral."
        )
    elif neutral:
        parts.append(f"Neutral cues: {', '.join(_unique(neutral))}.")
    else:
        parts.append("No directional keywords; neutral.")
    parts.append(f"Source tier {tier_label} prior {confidence:.2f}.")

    return ExtractedSignal(
        event_category=category,
        sentiment=sentiment,
        magnitude=cue.magnitude,
        confidence=confidence,
        reasoning=" ".join(parts),
        positive_keywords=_unique(positive),
        negative_keywords=_unique(negative),
    )
