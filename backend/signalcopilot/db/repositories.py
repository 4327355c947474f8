"""
Repository pattern for data access.

Each repository handles a single table. Services combine them; no
repository reaches into another table except through explicit joins on
foreign-key columns.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, case, desc, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from signalcopilot.db.models import (
    Alert,
    Article,
    ArticleOutcome,
    Holding,
    Impact,
    Signal,
    UserProfile,
)
from signalcopilot.domain.impact import ImpactComputation
from signalcopilot.domain.models import (
    AlertStatus,
    AlertType,
    ArticleInput,
    EventCategory,
    ExtractedSignal,
    HoldingInput,
    ImpactPage,
    ImpactRecord,
)
from signalcopilot.utils.datetime import utc_day_bounds, utcnow
from signalcopilot.utils.errors import ConfigurationError, DuplicateRecordError, RecordNotFoundError


def _upsert(db: Session, model, values: Dict[str, Any], index_elements: List[str], update_columns: List[str]) -> None:
    """INSERT ... ON CONFLICT DO UPDATE for PostgreSQL and SQLite."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise ConfigurationError(f"Upsert not supported for dialect '{dialect}'")

    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    db.execute(stmt)


class ArticleRepository:
    """Repository for Article operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, article_id: int) -> Optional[Article]:
        """Get article by ID."""
        return self.db.query(Article).filter(Article.id == article_id).first()

    def get_required(self, article_id: int) -> Article:
        article = self.get_by_id(article_id)
        if not article:
            raise RecordNotFoundError(f"Article {article_id} not found", details={"article_id": article_id})
        return article

    def exists_url(self, source_url: str) -> bool:
        return self.db.query(Article.id).filter(Article.source_url == source_url).first() is not None

    def existing_urls(self, urls: Iterable[str]) -> Set[str]:
        urls = [u for u in urls if u]
        if not urls:
            return set()
        rows = self.db.query(Article.source_url).filter(Article.source_url.in_(urls)).all()
        return {row[0] for row in rows}

    def create(self, article_input: ArticleInput, event_category: EventCategory) -> Optional[Article]:
        """
        Insert an article. Returns ``None`` when the source URL already exists.

        The insert runs in a savepoint so a concurrent duplicate only rolls
        back this row.
        """
        if article_input.source_url and self.exists_url(article_input.source_url):
            return None

        article = Article(
            ticker=article_input.ticker,
            headline=article_input.headline,
            summary=article_input.summary,
            source_url=article_input.source_url,
            publisher=article_input.publisher,
            published_at=article_input.published_at,
            source_type=article_input.source_type.value,
            source_tier=article_input.source_tier.value,
            event_category=event_category.value,
            sector=article_input.sector,
            cluster_id=article_input.cluster_id,
            related_tickers=",".join(article_input.related_tickers) or None,
        )
        try:
            with self.db.begin_nested():
                self.db.add(article)
        except IntegrityError:
            logger.debug(f"Duplicate article skipped on insert: {article_input.source_url}")
            return None
        return article

    def get_cluster(self, article: Article, window_hours: int) -> List[Article]:
        """
        Articles covering the same event as ``article`` (itself included).

        Shared ``cluster_id`` when set; otherwise same ticker within
        ``window_hours`` either side of publication.
        """
        query = self.db.query(Article)
        if article.cluster_id:
            query = query.filter(Article.cluster_id == article.cluster_id)
        else:
            window = timedelta(hours=window_hours)
            query = query.filter(
                Article.ticker == article.ticker,
                Article.published_at >= article.published_at - window,
                Article.published_at <= article.published_at + window,
            )
        return query.order_by(Article.published_at, Article.id).all()

    def get_unanalyzed_ids(self, limit: Optional[int] = None) -> List[int]:
        query = (
            self.db.query(Article.id)
            .outerjoin(Signal, Signal.article_id == Article.id)
            .filter(Signal.id.is_(None))
            .order_by(Article.published_at)
        )
        if limit:
            query = query.limit(limit)
        return [row[0] for row in query.all()]

    def find_analyzed(
        self,
        event_category: EventCategory,
        since: datetime,
        before: datetime,
        ticker: Optional[str] = None,
        sector: Optional[str] = None,
        limit: int = 50,
    ) -> List[Tuple[Article, Signal]]:
        """Analyzed articles of one category in [since, before), newest first."""
        query = (
            self.db.query(Article, Signal)
            .join(Signal, Signal.article_id == Article.id)
            .filter(
                Article.event_category == event_category.value,
                Article.published_at >= since,
                Article.published_at < before,
            )
        )
        if ticker:
            query = query.filter(Article.ticker == ticker.upper())
        if sector:
            query = query.filter(Article.sector == sector)
        return query.order_by(desc(Article.published_at)).limit(limit).all()

    def analyzed_for_tickers(self, tickers: Iterable[str]) -> List[Tuple[Article, Signal]]:
        """Analyzed articles whose ticker or related tickers include any of ``tickers``."""
        wanted = {t.upper() for t in tickers if t}
        if not wanted:
            return []
        rows = (
            self.db.query(Article, Signal)
            .join(Signal, Signal.article_id == Article.id)
            .filter(Article.ticker.in_(sorted(wanted)) | Article.related_tickers.isnot(None))
            .order_by(Article.published_at, Article.id)
            .all()
        )
        return [
            (article, signal)
            for article, signal in rows
            if article.ticker in wanted or wanted.intersection(article.related_ticker_list)
        ]

    def latest_sector(self, ticker: str) -> Optional[str]:
        row = (
            self.db.query(Article.sector)
            .filter(Article.ticker == ticker.upper(), Article.sector.isnot(None))
            .order_by(desc(Article.published_at))
            .first()
        )
        return row[0] if row else None

    def delete(self, article_id: int) -> None:
        deleted = self.db.query(Article).filter(Article.id == article_id).delete(synchronize_session=False)
        if not deleted:
            raise RecordNotFoundError(f"Article {article_id} not found", details={"article_id": article_id})
        # The signal, outcomes and impacts went with it in the database
        self.db.expire_all()


class SignalRepository:
    """Repository for Signal operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_article(self, article_id: int) -> Optional[Signal]:
        return self.db.query(Signal).filter(Signal.article_id == article_id).first()

    def get_for_articles(self, article_ids: Sequence[int]) -> Dict[int, Signal]:
        if not article_ids:
            return {}
        rows = self.db.query(Signal).filter(Signal.article_id.in_(list(article_ids))).all()
        return {s.article_id: s for s in rows}

    def save(self, article_id: int, extracted: ExtractedSignal, force: bool = False) -> Tuple[Signal, bool]:
        """
        Store an extracted signal. Returns ``(signal, written)``.

        An existing signal is only overwritten when ``force`` is set; the
        consensus bonus is reset in that case and reapplied by the caller.
        """
        signal = self.get_by_article(article_id)
        if signal is not None and not force:
            return signal, False

        now = utcnow()
        if signal is None:
            signal = Signal(article_id=article_id)
            self.db.add(signal)
        signal.sentiment = extracted.sentiment
        signal.magnitude = extracted.magnitude
        signal.base_confidence = extracted.confidence
        signal.consensus_bonus = 0.0
        signal.confidence = extracted.confidence
        signal.reasoning = extracted.reasoning
        signal.analyzed_at = now
        signal.updated_at = now
        self.db.flush()
        return signal, True

    def set_consensus_bonus(self, signal: Signal, bonus: float, confidence: float) -> bool:
        """Update the bonus and effective confidence. Returns whether anything changed."""
        if abs(signal.consensus_bonus - bonus) < 1e-9 and abs(signal.confidence - confidence) < 1e-9:
            return False
        signal.consensus_bonus = bonus
        signal.confidence = confidence
        signal.updated_at = utcnow()
        self.db.flush()
        return True


class HoldingRepository:
    """Repository for Holding operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, holding_id: int) -> Optional[Holding]:
        return self.db.query(Holding).filter(Holding.id == holding_id).first()

    def get_required(self, holding_id: int) -> Holding:
        holding = self.get_by_id(holding_id)
        if not holding:
            raise RecordNotFoundError(f"Holding {holding_id} not found", details={"holding_id": holding_id})
        return holding

    def get_for_user(self, user_id: int) -> List[Holding]:
        return self.db.query(Holding).filter(Holding.user_id == user_id).order_by(Holding.ticker).all()

    def get_by_ticker(self, user_id: int, ticker: str) -> Optional[Holding]:
        return (
            self.db.query(Holding)
            .filter(Holding.user_id == user_id, Holding.ticker == ticker.upper())
            .first()
        )

    def holders_of(self, tickers: Iterable[str]) -> List[Holding]:
        """Holdings, across all users, in any of ``tickers``."""
        tickers = sorted({t.upper() for t in tickers if t})
        if not tickers:
            return []
        return self.db.query(Holding).filter(Holding.ticker.in_(tickers)).order_by(Holding.id).all()

    def user_ids(self) -> List[int]:
        rows = self.db.query(Holding.user_id).distinct().order_by(Holding.user_id).all()
        return [row[0] for row in rows]

    def held_tickers(self) -> List[str]:
        rows = self.db.query(Holding.ticker).distinct().order_by(Holding.ticker).all()
        return [row[0] for row in rows]

    def latest_change(self, user_id: int) -> Optional[datetime]:
        """When the user's positions last changed, removals included."""
        marked = (
            self.db.query(UserProfile.portfolio_changed_at).filter(UserProfile.user_id == user_id).scalar()
        )
        edited = self.db.query(func.max(Holding.updated_at)).filter(Holding.user_id == user_id).scalar()
        changes = [t for t in (marked, edited) if t is not None]
        return max(changes) if changes else None

    def _mark_portfolio_changed(self, user_id: int) -> None:
        profile = self.db.get(UserProfile, user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id)
            self.db.add(profile)
        profile.portfolio_changed_at = utcnow()

    def create(self, user_id: int, holding_input: HoldingInput) -> Holding:
        """Create a holding. A user holds each ticker at most once."""
        if self.get_by_ticker(user_id, holding_input.ticker):
            raise DuplicateRecordError(
                f"Holding for {holding_input.ticker} already exists",
                details={"user_id": user_id, "ticker": holding_input.ticker},
            )
        holding = Holding(
            user_id=user_id,
            ticker=holding_input.ticker,
            shares=holding_input.shares,
            cost_basis=holding_input.cost_basis,
            acquired_at=holding_input.acquired_at,
            intent=holding_input.intent.value,
        )
        self.db.add(holding)
        self._mark_portfolio_changed(user_id)
        self.db.flush()
        return holding

    def update(self, holding_id: int, **kwargs) -> Holding:
        holding = self.get_required(holding_id)
        for key, value in kwargs.items():
            if key in ("id", "user_id", "ticker") or not hasattr(holding, key):
                continue
            setattr(holding, key, value.value if hasattr(value, "value") else value)
        holding.updated_at = utcnow()
        self._mark_portfolio_changed(holding.user_id)
        self.db.flush()
        return holding

    def delete(self, holding_id: int) -> None:
        """Delete a holding; its impacts go with it via the foreign-key cascade."""
        user_id = self.db.query(Holding.user_id).filter(Holding.id == holding_id).scalar()
        if user_id is None:
            raise RecordNotFoundError(f"Holding {holding_id} not found", details={"holding_id": holding_id})
        self.db.query(Holding).filter(Holding.id == holding_id).delete(synchronize_session=False)
        self._mark_portfolio_changed(user_id)
        self.db.flush()
        self.db.expire_all()


class ImpactRepository:
    """Repository for Impact operations."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int, article_id: int, holding_id: int) -> Optional[Impact]:
        return (
            self.db.query(Impact)
            .populate_existing()
            .filter(
                Impact.user_id == user_id,
                Impact.article_id == article_id,
                Impact.holding_id == holding_id,
            )
            .first()
        )

    def upsert(
        self,
        user_id: int,
        article_id: int,
        holding_id: int,
        computation: ImpactComputation,
        computed_at: Optional[datetime] = None,
    ) -> None:
        """Atomic insert-or-overwrite keyed on (user, article, holding)."""
        _upsert(
            self.db,
            Impact,
            {
                "user_id": user_id,
                "article_id": article_id,
                "holding_id": holding_id,
                "impact_score": computation.impact_score,
                "exposure": computation.exposure,
                "adjusted_exposure": computation.adjusted_exposure,
                "computed_at": computed_at or utcnow(),
            },
            index_elements=["user_id", "article_id", "holding_id"],
            update_columns=["impact_score", "exposure", "adjusted_exposure", "computed_at"],
        )

    def count_for_user(self, user_id: int) -> int:
        return self.db.query(func.count(Impact.id)).filter(Impact.user_id == user_id).scalar() or 0

    def score_totals_by_holding(self, user_id: int) -> Dict[int, Tuple[float, int, int]]:
        """(sum of scores, positive count, negative count) per holding."""
        rows = (
            self.db.query(
                Impact.holding_id,
                func.sum(Impact.impact_score),
                func.sum(case((Impact.impact_score > 0, 1), else_=0)),
                func.sum(case((Impact.impact_score < 0, 1), else_=0)),
            )
            .filter(Impact.user_id == user_id)
            .group_by(Impact.holding_id)
            .all()
        )
        return {
            holding_id: (float(total or 0.0), int(positive or 0), int(negative or 0))
            for holding_id, total, positive, negative in rows
        }

    def computed_at_by_key(self, user_id: int) -> Dict[Tuple[int, int], datetime]:
        rows = (
            self.db.query(Impact.article_id, Impact.holding_id, Impact.computed_at)
            .filter(Impact.user_id == user_id)
            .all()
        )
        return {(article_id, holding_id): computed_at for article_id, holding_id, computed_at in rows}

    def query(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        min_impact_score: Optional[float] = None,
    ) -> ImpactPage:
        """
        Page through a user's impacts, largest |score| first, then newest.

        ``min_impact_score`` filters on the absolute score.
        """
        page = max(page, 1)
        page_size = max(min(page_size, 100), 1)

        query = self.db.query(Impact).populate_existing().filter(Impact.user_id == user_id)
        if min_impact_score is not None:
            query = query.filter(func.abs(Impact.impact_score) >= abs(min_impact_score))

        total = query.count()
        rows = (
            query.order_by(desc(func.abs(Impact.impact_score)), desc(Impact.computed_at), desc(Impact.id))
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return ImpactPage(
            items=[ImpactRecord.model_validate(row) for row in rows],
            page=page,
            page_size=page_size,
            total_count=total,
        )

    def recent_with_context(self, user_id: int, since: datetime) -> List[Tuple[Impact, Signal, Article, Holding]]:
        """Impacts computed since ``since`` joined with their signal, article and holding."""
        return (
            self.db.query(Impact, Signal, Article, Holding)
            .populate_existing()
            .join(Article, Article.id == Impact.article_id)
            .join(Signal, Signal.article_id == Impact.article_id)
            .join(Holding, Holding.id == Impact.holding_id)
            .filter(Impact.user_id == user_id, Impact.computed_at >= since)
            .order_by(desc(Article.published_at), Impact.id)
            .all()
        )

    def top_by_magnitude(
        self,
        user_id: int,
        since: datetime,
        limit: int,
        threshold: Optional[float] = None,
    ) -> List[Tuple[Impact, Article]]:
        """Impacts since ``since`` ordered by |score| desc, then newest."""
        query = (
            self.db.query(Impact, Article)
            .populate_existing()
            .join(Article, Article.id == Impact.article_id)
            .filter(Impact.user_id == user_id, Impact.computed_at >= since)
        )
        if threshold is not None:
            query = query.filter(func.abs(Impact.impact_score) >= threshold)
        return (
            query.order_by(desc(func.abs(Impact.impact_score)), desc(Impact.computed_at), desc(Impact.id))
            .limit(limit)
            .all()
        )


class UserProfileRepository:
    """Repository for UserProfile operations."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[UserProfile]:
        return self.db.query(UserProfile).filter(UserProfile.user_id == user_id).first()

    def save(self, user_id: int, risk_profile: Optional[str] = None, cash_buffer: Optional[float] = None) -> UserProfile:
        profile = self.get(user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id)
            self.db.add(profile)
        if risk_profile is not None:
            profile.risk_profile = getattr(risk_profile, "value", risk_profile)
        if cash_buffer is not None:
            profile.cash_buffer = cash_buffer
        profile.updated_at = utcnow()
        self.db.flush()
        return profile


class OutcomeRepository:
    """Repository for realized price moves."""

    def __init__(self, db: Session):
        self.db = db

    def record(self, article_id: int, horizon: str, return_pct: float) -> None:
        _upsert(
            self.db,
            ArticleOutcome,
            {
                "article_id": article_id,
                "horizon": horizon,
                "return_pct": return_pct,
                "recorded_at": utcnow(),
            },
            index_elements=["article_id", "horizon"],
            update_columns=["return_pct", "recorded_at"],
        )

    def moves_for(self, article_ids: Sequence[int]) -> Dict[int, Dict[str, float]]:
        """``{article_id: {horizon: return_pct}}`` for the given articles."""
        if not article_ids:
            return {}
        rows = self.db.query(ArticleOutcome).filter(ArticleOutcome.article_id.in_(list(article_ids))).all()
        moves: Dict[int, Dict[str, float]] = {}
        for row in rows:
            moves.setdefault(row.article_id, {})[row.horizon] = row.return_pct
        return moves


class AlertRepository:
    """Repository for Alert operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, alert_id: int) -> Optional[Alert]:
        return self.db.query(Alert).filter(Alert.id == alert_id).first()

    def exists_for_day(self, user_id: int, alert_type: AlertType, moment: Optional[datetime] = None) -> bool:
        start, end = utc_day_bounds(moment)
        return (
            self.db.query(Alert.id)
            .filter(
                and_(
                    Alert.user_id == user_id,
                    Alert.alert_type == alert_type.value,
                    Alert.created_at >= start,
                    Alert.created_at < end,
                )
            )
            .first()
            is not None
        )

    def create(
        self,
        user_id: int,
        alert_type: AlertType,
        subject: str,
        content: str,
        article_ids: Sequence[int],
    ) -> Alert:
        alert = Alert(
            user_id=user_id,
            alert_type=alert_type.value,
            status=AlertStatus.PENDING.value,
            subject=subject,
            content=content,
            article_ids=",".join(str(i) for i in article_ids),
            created_at=utcnow(),
        )
        self.db.add(alert)
        self.db.flush()
        return alert

    def get_for_user(self, user_id: int, status: Optional[AlertStatus] = None) -> List[Alert]:
        query = self.db.query(Alert).filter(Alert.user_id == user_id)
        if status is not None:
            query = query.filter(Alert.status == status.value)
        return query.order_by(desc(Alert.created_at), desc(Alert.id)).all()

    def mark_status(self, alert_id: int, status: AlertStatus, error_message: Optional[str] = None) -> Alert:
        alert = self.get_by_id(alert_id)
        if not alert:
            raise RecordNotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})
        alert.status = status.value
        if status is AlertStatus.SENT:
            alert.sent_at = utcnow()
            alert.error_message = None
        elif status is AlertStatus.FAILED:
            alert.error_message = error_message
        self.db.flush()
        return alert
