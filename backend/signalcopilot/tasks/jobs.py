"""
Job handlers for the task queue.

Each handler takes the job payload, opens its own transaction and is safe
to re-run: signals are written once, impacts are upserted and alerts are
deduplicated per day.

Impact rows are only written under a user id so the queue's per-user lock
covers them. Article jobs registered on a queue therefore write signals
and hand scoring to one ``recompute_user_impacts`` job per affected user.
"""

from datetime import timedelta
from functools import partial
from typing import Any, Dict, Iterable

from signalcopilot.db.repositories import HoldingRepository
from signalcopilot.db.session import get_db_transaction
from signalcopilot.log_config import logger
from signalcopilot.services.alert_synthesizer import AlertSynthesizer
from signalcopilot.services.holdings import RECOMPUTE_USER_IMPACTS
from signalcopilot.services.impact_calculator import ImpactCalculator
from signalcopilot.services.ingestion import NewsAggregator
from signalcopilot.services.pipeline import ArticlePipeline
from signalcopilot.utils.datetime import utcnow

PROCESS_ARTICLE = "process_article"
FETCH_NEWS = "fetch_news"
GENERATE_HIGH_IMPACT_ALERTS = "generate_high_impact_alerts"
GENERATE_DAILY_DIGESTS = "generate_daily_digests"


def recompute_user_impacts(payload: Dict[str, Any]) -> int:
    user_id = payload["user_id"]
    with get_db_transaction() as db:
        return ImpactCalculator(db).compute_for_user(user_id, force=payload.get("force", False))


def _submit_recomputes(queue, user_ids: Iterable[int]) -> None:
    for user_id in sorted(set(user_ids)):
        queue.submit(RECOMPUTE_USER_IMPACTS, {"user_id": user_id})


def process_article(payload: Dict[str, Any], queue=None) -> Dict[str, Any]:
    """Without a queue the impacts are scored inline, for direct callers."""
    with get_db_transaction() as db:
        result = ArticlePipeline(db).process_article(
            payload["article_id"],
            force=payload.get("force", False),
            score_impacts=queue is None,
        )
    if queue is not None:
        _submit_recomputes(queue, result.affected_user_ids)
    return result.to_dict()


def fetch_news(payload: Dict[str, Any], queue=None) -> Dict[str, Any]:
    """Fetch news for every held ticker (or ``payload['tickers']``) and process new articles."""
    lookback = payload.get("lookback_hours", 24)
    with get_db_transaction() as db:
        tickers = payload.get("tickers")
        if not tickers:
            tickers = HoldingRepository(db).held_tickers()
        if not tickers:
            logger.info("No held tickers; skipping news fetch")
            return {"tickers": 0, "saved": 0, "processed": 0}

        saved = NewsAggregator().fetch_and_ingest(db, tickers, since=utcnow() - timedelta(hours=lookback))
        db.commit()

        pipeline = ArticlePipeline(db)
        processed = [pipeline.process_article(article.id, score_impacts=queue is None) for article in saved]
    if queue is not None:
        _submit_recomputes(queue, (user_id for result in processed for user_id in result.affected_user_ids))
    return {"tickers": len(tickers), "saved": len(saved), "processed": len(processed)}


def generate_high_impact_alerts(payload: Dict[str, Any]) -> int:
    with get_db_transaction() as db:
        return len(AlertSynthesizer(db).generate_high_impact_alerts())


def generate_daily_digests(payload: Dict[str, Any]) -> int:
    with get_db_transaction() as db:
        return len(AlertSynthesizer(db).generate_daily_digests())


DEFAULT_HANDLERS = {
    RECOMPUTE_USER_IMPACTS: recompute_user_impacts,
    PROCESS_ARTICLE: process_article,
    FETCH_NEWS: fetch_news,
    GENERATE_HIGH_IMPACT_ALERTS: generate_high_impact_alerts,
    GENERATE_DAILY_DIGESTS: generate_daily_digests,
}


# Handlers that take the queue to fan work out per user
QUEUE_BOUND = (PROCESS_ARTICLE, FETCH_NEWS)


def register_default_handlers(queue) -> None:
    for kind, handler in DEFAULT_HANDLERS.items():
        if kind in QUEUE_BOUND:
            handler = partial(handler, queue=queue)
        queue.register(kind, handler)
