"""
Impact Calculator service.

Scores every (article, holding) pair where the holding's ticker matches the
article's ticker or one of its related tickers, and upserts the result keyed
on (user, article, holding).
"""

from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Article, Holding, Signal
from signalcopilot.db.repositories import (
    ArticleRepository,
    HoldingRepository,
    ImpactRepository,
    SignalRepository,
)
from signalcopilot.domain.impact import PositionSnapshot, compute_exposure, compute_impact
from signalcopilot.log_config import logger
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import RecordNotFoundError


def _snapshot(holding: Holding) -> PositionSnapshot:
    return PositionSnapshot(
        holding_id=holding.id,
        ticker=holding.ticker,
        shares=holding.shares,
        cost_basis=holding.cost_basis,
    )


class ImpactCalculator:
    """Computes and stores personalized impacts."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.articles = ArticleRepository(db)
        self.signals = SignalRepository(db)
        self.holdings = HoldingRepository(db)
        self.impacts = ImpactRepository(db)

    def _score(self, signal: Signal, holding: Holding, portfolio: List[PositionSnapshot]) -> None:
        exposure = compute_exposure(_snapshot(holding), portfolio)
        computation = compute_impact(
            signal.sentiment, signal.magnitude, signal.confidence, exposure, self.config
        )
        self.impacts.upsert(holding.user_id, signal.article_id, holding.id, computation, utcnow())
        if computation.concentration_applied:
            logger.debug(
                f"Concentrated position for user {holding.user_id} {holding.ticker}: "
                f"{exposure:.1%} exposure, multiplier applied"
            )

    def compute_for_article(self, article_id: int) -> int:
        """
        Score one article against every matching holding. Returns rows written.

        Raises:
            RecordNotFoundError: If the article or its signal does not exist yet
        """
        article = self.articles.get_required(article_id)
        signal = self.signals.get_by_article(article_id)
        if signal is None:
            raise RecordNotFoundError(
                f"No signal for article {article_id}; extract it before computing impacts",
                details={"article_id": article_id},
            )

        tickers = {article.ticker, *article.related_ticker_list}
        holdings = self.holdings.holders_of(tickers)
        if not holdings:
            logger.debug(f"No holdings for {sorted(tickers)}; no impacts for article {article_id}")
            return 0

        by_user: Dict[int, List[Holding]] = defaultdict(list)
        for holding in holdings:
            by_user[holding.user_id].append(holding)

        written = 0
        for user_id, matched in by_user.items():
            portfolio = [_snapshot(h) for h in self.holdings.get_for_user(user_id)]
            for holding in matched:
                self._score(signal, holding, portfolio)
                written += 1

        logger.info(f"Computed {written} impacts for article {article_id} ({article.ticker})")
        return written

    def affected_user_ids(self, article_ids: List[int]) -> List[int]:
        """Users holding a ticker any of ``article_ids`` is about."""
        tickers = set()
        for article_id in article_ids:
            article = self.articles.get_required(article_id)
            tickers.update({article.ticker, *article.related_ticker_list})
        return sorted({holding.user_id for holding in self.holdings.holders_of(tickers)})

    def compute_for_user(self, user_id: int, force: bool = False) -> int:
        """
        Recompute all impacts for a user's holdings. Returns rows written.

        Restartable: a triple whose stored impact is newer than both its
        signal and the user's latest holding change is skipped unless
        ``force`` is set.
        """
        holdings = self.holdings.get_for_user(user_id)
        if not holdings:
            logger.info(f"No holdings found for user {user_id}")
            return 0

        portfolio = [_snapshot(h) for h in holdings]
        by_ticker: Dict[str, List[Holding]] = defaultdict(list)
        for holding in holdings:
            by_ticker[holding.ticker].append(holding)

        existing = {} if force else self.impacts.computed_at_by_key(user_id)
        holdings_changed = self.holdings.latest_change(user_id)

        written = skipped = 0
        for article, signal in self.articles.analyzed_for_tickers(by_ticker):
            for holding in self._matching(article, by_ticker):
                computed_at = existing.get((article.id, holding.id))
                if computed_at is not None and self._is_current(computed_at, signal, holdings_changed):
                    skipped += 1
                    continue
                self._score(signal, holding, portfolio)
                written += 1

        logger.info(f"Recomputed impacts for user {user_id}: {written} written, {skipped} up to date")
        return written

    def compute_all(self, force: bool = False) -> int:
        total = 0
        for user_id in self.holdings.user_ids():
            total += self.compute_for_user(user_id, force=force)
        return total

    @staticmethod
    def _matching(article: Article, by_ticker: Dict[str, List[Holding]]) -> List[Holding]:
        matched = list(by_ticker.get(article.ticker, []))
        for ticker in article.related_ticker_list:
            if ticker != article.ticker:
                matched.extend(by_ticker.get(ticker, []))
        return matched

    @staticmethod
    def _is_current(computed_at, signal: Signal, holdings_changed) -> bool:
        if computed_at < signal.updated_at:
            return False
        if holdings_changed is not None and computed_at < holdings_changed:
            return False
        return True
