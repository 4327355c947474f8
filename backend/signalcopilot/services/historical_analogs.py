"""
Historical Analog Service - how did similar past events play out?

Matches prior analyzed articles of the same event category, first for the
same ticker and then, if that is too thin, for the ticker's sector. Reports
the match count, median realized 5d/30d moves and a one-line pattern.
"""

import statistics
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Article, Signal
from signalcopilot.db.repositories import ArticleRepository, OutcomeRepository
from signalcopilot.domain.categories import category_info, parse_category
from signalcopilot.domain.models import AnalogData, EventCategory
from signalcopilot.log_config import logger
from signalcopilot.utils.datetime import to_naive_utc, utcnow
from signalcopilot.utils.errors import DatabaseError


def magnitude_label(average_magnitude: float) -> str:
    if average_magnitude >= 2.5:
        return "major"
    if average_magnitude >= 1.8:
        return "significant"
    if average_magnitude >= 1.3:
        return "moderate"
    return "minor"


def median_or_none(values: Sequence[float]) -> Optional[float]:
    return statistics.median(values) if values else None


def _format_move(value: float) -> str:
    return f"{value:+.1f}%"


def describe_pattern(
    category: EventCategory,
    sentiments: Sequence[int],
    magnitudes: Sequence[int],
    median_5d: Optional[float],
    median_30d: Optional[float],
) -> str:
    """
    Render the analog pattern line.

    75%+ one-sided history reads "historically", 60-75% reads "tend",
    anything weaker is "mixed historical signals".
    """
    label = category_info(category).plural_label
    count = len(sentiments)
    positive = sum(1 for s in sentiments if s > 0)
    negative = sum(1 for s in sentiments if s < 0)
    magnitude = magnitude_label(statistics.fmean(magnitudes) if magnitudes else 1.0)

    dominant = "positive" if positive > negative else "negative"
    share = max(positive, negative) * 100.0 / count if count else 0.0

    if positive != negative and share >= 75:
        text = f"Similar {label}: historically {dominant} ({share:.0f}%, {count} occurrences, typically {magnitude} impact)"
    elif positive != negative and share >= 60:
        text = f"Similar {label}: tend {dominant} ({share:.0f}%, {count} occurrences, {magnitude} impact)"
    else:
        text = f"Similar {label}: mixed historical signals ({count} occurrences, {magnitude} avg impact)"

    moves = []
    if median_5d is not None:
        moves.append(f"{_format_move(median_5d)} over 5d")
    if median_30d is not None:
        moves.append(f"{_format_move(median_30d)} over 30d")
    if moves:
        text += f"; median {', '.join(moves)}"
    return text


class HistoricalAnalogService:
    """Finds historically similar events for a ticker and category."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.articles = ArticleRepository(db)
        self.outcomes = OutcomeRepository(db)

    def _matches(
        self,
        ticker: str,
        category: EventCategory,
        since: datetime,
        before: datetime,
    ) -> Tuple[List[Tuple[Article, Signal]], str]:
        limit = self.config.analog_max_events
        matches = self.articles.find_analyzed(category, since, before, ticker=ticker, limit=limit)
        scope = "ticker"
        if len(matches) < self.config.analog_min_matches:
            sector = self.articles.latest_sector(ticker)
            if sector:
                sector_matches = self.articles.find_analyzed(category, since, before, sector=sector, limit=limit)
                if len(sector_matches) > len(matches):
                    matches, scope = sector_matches, f"sector:{sector}"
        return matches, scope

    def find_analogs(
        self,
        ticker: str,
        event_category,
        before: Optional[datetime] = None,
    ) -> AnalogData:
        """
        Summarize prior events like this one.

        Zero matches yields ``count=0``; fewer than the configured minimum
        yields the count with no medians. Neither is an error.

        Raises:
            DatabaseError: If the store cannot be queried
        """
        category = parse_category(event_category)
        before = to_naive_utc(before) or utcnow()
        since = before - timedelta(days=self.config.analog_lookback_days)
        label = category_info(category).plural_label

        try:
            matches, scope = self._matches(ticker, category, since, before)
            moves = self.outcomes.moves_for([article.id for article, _ in matches])
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to retrieve analogs for {ticker}/{category.value}: {e}",
                details={"ticker": ticker, "event_category": category.value},
            ) from e

        count = len(matches)
        if count == 0:
            return AnalogData(count=0, median_move_5d=None, median_move_30d=None,
                              pattern=f"No prior {label} found")

        if count < self.config.analog_min_matches:
            logger.debug(
                f"Insufficient history for {ticker} {category.value}: {count} events, "
                f"need {self.config.analog_min_matches}"
            )
            return AnalogData(
                count=count,
                median_move_5d=None,
                median_move_30d=None,
                pattern=f"Insufficient history: {count} prior {label} (need {self.config.analog_min_matches})",
            )

        median_5d = median_or_none(self._horizon(moves, "5d"))
        median_30d = median_or_none(self._horizon(moves, "30d"))
        pattern = describe_pattern(
            category,
            [signal.sentiment for _, signal in matches],
            [signal.magnitude for _, signal in matches],
            median_5d,
            median_30d,
        )
        logger.debug(f"Analog pattern for {ticker} {category.value} ({scope}): {pattern}")
        return AnalogData(count=count, median_move_5d=median_5d, median_move_30d=median_30d, pattern=pattern)

    @staticmethod
    def _horizon(moves: Dict[int, Dict[str, float]], horizon: str) -> List[float]:
        return [by_horizon[horizon] for by_horizon in moves.values() if horizon in by_horizon]
