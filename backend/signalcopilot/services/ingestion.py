"""
Article ingestion and news provider aggregation.

Providers only need to satisfy the ``NewsProvider`` protocol; the
aggregator fetches from every available provider in parallel, drops
duplicates by source URL (within the batch and against the store),
groups near-identical headlines into clusters and persists the rest.
"""

import hashlib
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Article
from signalcopilot.db.repositories import ArticleRepository
from signalcopilot.domain.categories import classify_headline
from signalcopilot.domain.models import ArticleInput, SourceTier, SourceType
from signalcopilot.log_config import logger
from signalcopilot.utils.errors import NewsProviderError, ValidationError


_WORD_RE = re.compile(r"[a-z0-9$%.']+")


def headline_similarity(first: Optional[str], second: Optional[str]) -> float:
    """
    Jaccard similarity of the two headlines' lower-cased word sets.

    >>> headline_similarity("Apple beats estimates", "apple BEATS estimates")
    1.0
    """
    words_a = set(_WORD_RE.findall((first or "").lower()))
    words_b = set(_WORD_RE.findall((second or "").lower()))
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


@runtime_checkable
class NewsProvider(Protocol):
    """Anything that can fetch articles for a ticker."""

    name: str

    def is_available(self) -> bool:
        ...

    def fetch_for_ticker(self, ticker: str, since: Optional[datetime] = None) -> List[ArticleInput]:
        ...


class ProviderRegistry:
    """Named collection of news providers."""

    def __init__(self):
        self._providers: Dict[str, NewsProvider] = {}

    def register(self, provider: NewsProvider) -> None:
        if not isinstance(provider, NewsProvider):
            raise ValidationError(f"{provider!r} does not implement NewsProvider")
        if provider.name in self._providers:
            logger.warning(f"Replacing news provider '{provider.name}'")
        self._providers[provider.name] = provider

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> Optional[NewsProvider]:
        return self._providers.get(name)

    def available(self) -> List[NewsProvider]:
        return [p for p in self._providers.values() if p.is_available()]

    def __len__(self) -> int:
        return len(self._providers)


# Process-wide registry used by the scheduled fetch job
provider_registry = ProviderRegistry()


class ArticleIngestor:
    """Validates, classifies and stores articles, skipping duplicates."""

    def __init__(self, db: Session):
        self.db = db
        self.articles = ArticleRepository(db)

    def ingest(
        self,
        ticker: str,
        headline: str,
        summary: Optional[str],
        source_url: Optional[str],
        publisher: str,
        published_at: datetime,
        source_type: SourceType = SourceType.NEWS,
        source_tier: SourceTier = SourceTier.UNKNOWN,
        cluster_id: Optional[str] = None,
        related_tickers: Optional[Iterable[str]] = None,
        sector: Optional[str] = None,
    ) -> Optional[Article]:
        """
        Ingest one article. Returns the stored ``Article`` or ``None`` for a duplicate URL.

        Raises:
            ValidationError: If the payload is malformed (e.g. empty ticker)
        """
        try:
            article_input = ArticleInput(
                ticker=ticker,
                headline=headline or "",
                summary=summary,
                source_url=source_url,
                publisher=publisher or "unknown",
                published_at=published_at,
                source_type=source_type,
                source_tier=source_tier,
                cluster_id=cluster_id,
                related_tickers=list(related_tickers or []),
                sector=sector,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid article payload",
                details={"errors": e.errors(include_url=False), "source_url": source_url},
            ) from e
        return self.ingest_input(article_input)

    def ingest_input(self, article_input: ArticleInput) -> Optional[Article]:
        category = classify_headline(article_input.headline)
        article = self.articles.create(article_input, category)
        if article is None:
            logger.debug(f"Duplicate article skipped: {article_input.source_url}")
            return None
        logger.info(
            f"Ingested article {article.id} for {article.ticker} "
            f"({category.value}, {article_input.source_tier.value})"
        )
        return article


def dedupe_batch(inputs: Iterable[ArticleInput]) -> List[ArticleInput]:
    """Drop repeats within one batch, keeping first occurrence."""
    seen = set()
    unique = []
    for item in inputs:
        key = item.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def assign_clusters(inputs: List[ArticleInput], threshold: float) -> List[ArticleInput]:
    """
    Give unclustered articles a shared cluster id when their headlines are
    similar to an earlier article about the same ticker in the batch.
    """
    clustered: List[ArticleInput] = []
    for item in inputs:
        if item.cluster_id is None:
            for previous in clustered:
                if previous.ticker != item.ticker:
                    continue
                if headline_similarity(previous.headline, item.headline) >= threshold:
                    cluster_id = previous.cluster_id or _cluster_id_for(previous)
                    if previous.cluster_id is None:
                        index = clustered.index(previous)
                        clustered[index] = previous.model_copy(update={"cluster_id": cluster_id})
                    item = item.model_copy(update={"cluster_id": cluster_id})
                    break
        clustered.append(item)
    return clustered


def _cluster_id_for(item: ArticleInput) -> str:
    digest = hashlib.sha256(item.dedupe_key.encode()).hexdigest()[:12]
    return f"{item.ticker}-{digest}"


class NewsAggregator:
    """Fetches from all available providers and ingests new articles."""

    def __init__(self, registry: Optional[ProviderRegistry] = None, config: Optional[Settings] = None):
        self.registry = registry or provider_registry
        self.config = config or default_settings

    def _fetch_one(self, provider: NewsProvider, ticker: str, since: Optional[datetime]) -> List[ArticleInput]:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.task_max_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self.config.task_retry_min_seconds,
                max=self.config.task_retry_max_seconds,
            ),
            retry=retry_if_exception_type(NewsProviderError),
            reraise=True,
        )
        return retrying(provider.fetch_for_ticker, ticker, since)

    def _fetch_safely(self, provider: NewsProvider, ticker: str, since: Optional[datetime]) -> List[ArticleInput]:
        # One failing provider must not sink the others
        try:
            return list(self._fetch_one(provider, ticker, since))
        except Exception as e:
            logger.error(f"Error fetching news from provider {provider.name} for ticker {ticker}: {e}")
            return []

    def fetch(self, ticker: str, since: Optional[datetime] = None) -> List[ArticleInput]:
        providers = self.registry.available()
        if not providers:
            logger.warning("No news providers available")
            return []

        workers = max(1, min(self.config.provider_max_workers, len(providers)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(lambda p: self._fetch_safely(p, ticker, since), providers))

        fetched = [item for batch in results for item in batch]
        logger.debug(f"Fetched {len(fetched)} articles for {ticker} from {len(providers)} providers")
        return fetched

    def prepare(self, db: Session, inputs: Iterable[ArticleInput]) -> List[ArticleInput]:
        """Dedupe within the batch and against stored URLs, then cluster."""
        unique = dedupe_batch(inputs)
        existing = ArticleRepository(db).existing_urls(i.source_url for i in unique)
        fresh = [i for i in unique if not (i.source_url and i.source_url in existing)]
        return assign_clusters(fresh, self.config.cluster_similarity_threshold)

    def fetch_and_ingest(
        self,
        db: Session,
        tickers: Iterable[str],
        since: Optional[datetime] = None,
    ) -> List[Article]:
        """Fetch news for ``tickers`` and store the new articles."""
        fetched: List[ArticleInput] = []
        for ticker in sorted({t.upper() for t in tickers if t}):
            fetched.extend(self.fetch(ticker, since))

        if not fetched:
            logger.info("No articles found from any provider")
            return []

        ingestor = ArticleIngestor(db)
        saved = []
        for item in self.prepare(db, fetched):
            article = ingestor.ingest_input(item)
            if article is not None:
                saved.append(article)

        logger.info(f"Aggregated {len(fetched)} articles, saved {len(saved)} new articles")
        return saved
