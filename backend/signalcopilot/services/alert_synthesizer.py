"""
Alert Synthesizer - high-impact alerts and daily digests.

Pure selection and formatting over stored impacts; nothing is recomputed
here. Created alerts are left pending for an external delivery mechanism,
at most one per type per user per UTC day.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Alert, Article, Impact, Signal
from signalcopilot.db.repositories import (
    AlertRepository,
    HoldingRepository,
    ImpactRepository,
    SignalRepository,
)
from signalcopilot.domain.models import AlertStatus, AlertType, DigestContent
from signalcopilot.log_config import logger
from signalcopilot.utils.datetime import utcnow


DISCLAIMER_ALERT = "This is an automated alert. Not financial advice."
DISCLAIMER_DIGEST = "This is an automated digest. Not financial advice."

SENTIMENT_TEXT = {1: "Positive", 0: "Neutral", -1: "Negative"}


def _unique_ids(rows: List[Tuple[Impact, Article]]) -> List[int]:
    seen = []
    for impact, _ in rows:
        if impact.article_id not in seen:
            seen.append(impact.article_id)
    return seen


def _published(article: Article) -> str:
    return article.published_at.strftime("%Y-%m-%d %H:%M UTC") if article.published_at else "unknown"


def format_high_impact(rows: List[Tuple[Impact, Article]], signals: Dict[int, Signal]) -> str:
    lines = [
        "HIGH IMPACT EVENTS DETECTED",
        "",
        "The following significant events may affect your portfolio:",
        "",
    ]
    for impact, article in rows:
        direction = "POSITIVE" if impact.impact_score > 0 else "NEGATIVE"
        lines.append(f"[{direction}] {article.ticker}: {article.headline}")
        lines.append(f"  Impact Score: {abs(impact.impact_score):.4f}")
        signal = signals.get(article.id)
        if signal is not None:
            lines.append(f"  Sentiment: {SENTIMENT_TEXT.get(signal.sentiment, 'Neutral')}")
            lines.append(f"  Magnitude: {signal.magnitude}/3")
        lines.append(f"  Your Exposure: {impact.exposure:.1%}")
        lines.append(f"  Source: {article.publisher}")
        lines.append(f"  Published: {_published(article)}")
        if article.source_url:
            lines.append(f"  Link: {article.source_url}")
        lines.append("")
    lines.append(DISCLAIMER_ALERT)
    return "\n".join(lines) + "\n"


def format_digest(rows: List[Tuple[Impact, Article]], top_events: int) -> str:
    positive = sum(1 for impact, _ in rows if impact.impact_score > 0)
    negative = sum(1 for impact, _ in rows if impact.impact_score < 0)
    lines = [
        "DAILY PORTFOLIO DIGEST",
        "",
        f"Summary of {len(rows)} events affecting your holdings:",
        "",
        f"Positive Events: {positive}",
        f"Negative Events: {negative}",
        "",
        "TOP EVENTS:",
        "",
    ]
    for impact, article in rows[:top_events]:
        direction = "+" if impact.impact_score > 0 else "-"
        lines.append(f"{direction} {article.ticker}: {article.headline}")
        lines.append(f"  Impact: {abs(impact.impact_score):.4f} | Exposure: {impact.exposure:.1%}")
        lines.append(f"  {article.publisher} - {_published(article)}")
        lines.append("")
    lines.append(DISCLAIMER_DIGEST)
    return "\n".join(lines) + "\n"


class AlertSynthesizer:
    """Selects impactful events and turns them into pending alerts."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.alerts = AlertRepository(db)
        self.holdings = HoldingRepository(db)
        self.impacts = ImpactRepository(db)
        self.signals = SignalRepository(db)

    def _window_start(self):
        return utcnow() - timedelta(hours=self.config.alert_window_hours)

    def select_high_impact(
        self,
        user_id: int,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[Impact, Article]]:
        """Impacts with |score| at or above ``threshold`` in the alert window, top-N."""
        threshold = self.config.high_impact_threshold if threshold is None else threshold
        limit = self.config.high_impact_limit if limit is None else limit
        return self.impacts.top_by_magnitude(user_id, self._window_start(), limit, threshold=abs(threshold))

    def build_high_impact_alert(self, user_id: int) -> DigestContent:
        rows = self.select_high_impact(user_id)
        article_ids = _unique_ids(rows)
        signals = self.signals.get_for_articles(article_ids)
        return DigestContent(
            alert_type=AlertType.HIGH_IMPACT,
            subject=f"High Impact Alert: {len(rows)} significant events affecting your portfolio",
            content=format_high_impact(rows, signals) if rows else "",
            article_ids=article_ids,
        )

    def build_daily_digest(self, user_id: int) -> DigestContent:
        rows = self.impacts.top_by_magnitude(user_id, self._window_start(), self.config.digest_limit)
        return DigestContent(
            alert_type=AlertType.DAILY_DIGEST,
            subject=f"Daily Portfolio Digest: {len(rows)} events",
            content=format_digest(rows, self.config.digest_top_events) if rows else "",
            article_ids=_unique_ids(rows),
        )

    def _persist(self, user_id: int, digest: DigestContent) -> Optional[Alert]:
        if digest.is_empty:
            logger.debug(f"No {digest.alert_type.value} events for user {user_id}")
            return None
        if self.alerts.exists_for_day(user_id, digest.alert_type):
            logger.debug(f"{digest.alert_type.value} already created today for user {user_id}")
            return None
        alert = self.alerts.create(user_id, digest.alert_type, digest.subject, digest.content, digest.article_ids)
        logger.info(f"Created {digest.alert_type.value} alert {alert.id} for user {user_id}: {digest.subject}")
        return alert

    def create_high_impact_alert(self, user_id: int) -> Optional[Alert]:
        """Persist a pending high-impact alert; ``None`` if nothing qualifies or one exists today."""
        if self.alerts.exists_for_day(user_id, AlertType.HIGH_IMPACT):
            return None
        return self._persist(user_id, self.build_high_impact_alert(user_id))

    def create_daily_digest(self, user_id: int) -> Optional[Alert]:
        if self.alerts.exists_for_day(user_id, AlertType.DAILY_DIGEST):
            return None
        return self._persist(user_id, self.build_daily_digest(user_id))

    def generate_high_impact_alerts(self) -> List[Alert]:
        created = [self.create_high_impact_alert(user_id) for user_id in self.holdings.user_ids()]
        created = [alert for alert in created if alert is not None]
        logger.info(f"Generated {len(created)} high impact alerts")
        return created

    def generate_daily_digests(self) -> List[Alert]:
        created = [self.create_daily_digest(user_id) for user_id in self.holdings.user_ids()]
        created = [alert for alert in created if alert is not None]
        logger.info(f"Generated {len(created)} daily digests")
        return created

    def mark_sent(self, alert_id: int) -> Alert:
        return self.alerts.mark_status(alert_id, AlertStatus.SENT)

    def mark_failed(self, alert_id: int, error: str) -> Alert:
        alert = self.alerts.mark_status(alert_id, AlertStatus.FAILED, error_message=error)
        logger.warning(f"Alert {alert_id} delivery failed: {error}")
        return alert
