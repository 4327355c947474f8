"""
Tests for article ingestion, URL dedupe, clustering and provider aggregation.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from signalcopilot.db.models import Article
from signalcopilot.domain.models import ArticleInput, EventCategory, SourceTier
from signalcopilot.services.ingestion import (
    ArticleIngestor,
    NewsAggregator,
    NewsProvider,
    ProviderRegistry,
    assign_clusters,
    dedupe_batch,
    headline_similarity,
)
from signalcopilot.services.pipeline import ArticlePipeline
from signalcopilot.utils.datetime import utcnow
from signalcopilot.utils.errors import NewsProviderError, ValidationError


def _input(headline, url, ticker="AAPL", publisher="Reuters", cluster_id=None):
    return ArticleInput(
        ticker=ticker,
        headline=headline,
        source_url=url,
        publisher=publisher,
        published_at=utcnow() - timedelta(minutes=30),
        source_tier=SourceTier.STANDARD,
        cluster_id=cluster_id,
    )


class StaticProvider:
    def __init__(self, name, articles, available=True):
        self.name = name
        self.articles = articles
        self.available = available
        self.calls = 0

    def is_available(self):
        return self.available

    def fetch_for_ticker(self, ticker, since=None):
        self.calls += 1
        return [a for a in self.articles if a.ticker == ticker]


class FlakyProvider(StaticProvider):
    """Fails with a provider error a fixed number of times before succeeding."""

    def __init__(self, name, articles, failures):
        super().__init__(name, articles)
        self.failures = failures

    def fetch_for_ticker(self, ticker, since=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise NewsProviderError("rate limited", provider=self.name)
        return list(self.articles)


class BrokenProvider(StaticProvider):
    def fetch_for_ticker(self, ticker, since=None):
        raise RuntimeError("connection reset")


class TestArticleIngestor:
    def test_ingest_classifies_and_normalizes(self, db_session):
        eastern = timezone(timedelta(hours=-5))
        article = ArticleIngestor(db_session).ingest(
            ticker=" aapl ",
            headline="Apple beats earnings estimates",
            summary=None,
            source_url="https://news.example.com/a1",
            publisher="Reuters",
            published_at=datetime(2025, 4, 1, 9, 30, tzinfo=eastern),
            source_tier=SourceTier.PREMIUM,
            related_tickers=["msft", "MSFT", ""],
        )
        assert article.ticker == "AAPL"
        assert article.event_category == EventCategory.EARNINGS_BEAT_MISS.value
        assert article.published_at == datetime(2025, 4, 1, 14, 30)
        assert article.related_ticker_list == ["MSFT"]

    def test_duplicate_url_is_skipped(self, db_session):
        ingestor = ArticleIngestor(db_session)
        kwargs = dict(ticker="AAPL", headline="Apple news", summary=None, publisher="Reuters",
                      source_url="https://news.example.com/dup", published_at=utcnow())
        assert ingestor.ingest(**kwargs) is not None
        assert ingestor.ingest(**kwargs) is None
        assert db_session.query(Article).count() == 1

    def test_invalid_payload_raises(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            ArticleIngestor(db_session).ingest(
                ticker="", headline="x", summary=None, source_url=None,
                publisher="Reuters", published_at=utcnow(),
            )
        assert "errors" in exc_info.value.details


class TestBatchPreparation:
    def test_similarity(self):
        assert headline_similarity("Apple beats estimates", "apple BEATS estimates") == 1.0
        assert headline_similarity("Apple beats estimates", "Tesla recalls cars") == 0.0

    def test_dedupe_batch_keeps_first(self):
        batch = [_input("a", "https://x/1"), _input("b", "https://x/1"), _input("c", "https://x/2")]
        assert [i.headline for i in dedupe_batch(batch)] == ["a", "c"]

    def test_dedupe_without_url_uses_content(self):
        batch = [_input("Same headline", None), _input("same headline ", None), _input("Other", None)]
        assert len(dedupe_batch(batch)) == 2

    def test_similar_headlines_share_cluster(self):
        batch = [
            _input("Apple beats quarterly earnings estimates", "https://x/1"),
            _input("Apple beats quarterly earnings estimates again", "https://x/2", publisher="CNBC"),
            _input("Apple recalls chargers", "https://x/3"),
            _input("Apple beats quarterly earnings estimates", "https://x/4", ticker="MSFT"),
        ]
        clustered = assign_clusters(batch, threshold=0.5)
        assert clustered[0].cluster_id is not None
        assert clustered[0].cluster_id == clustered[1].cluster_id
        assert clustered[2].cluster_id is None
        assert clustered[3].cluster_id is None

    def test_existing_cluster_ids_are_kept(self):
        batch = [_input("Apple beats", "https://x/1", cluster_id="given")]
        assert assign_clusters(batch, threshold=0.5)[0].cluster_id == "given"


class TestProviders:
    def test_registry_requires_protocol(self):
        registry = ProviderRegistry()
        provider = StaticProvider("wire", [])
        assert isinstance(provider, NewsProvider)
        registry.register(provider)
        assert registry.get("wire") is provider
        with pytest.raises(ValidationError):
            registry.register(object())

    def test_unavailable_providers_are_skipped(self, test_settings):
        registry = ProviderRegistry()
        offline = StaticProvider("offline", [_input("a", "https://x/1")], available=False)
        registry.register(offline)
        assert NewsAggregator(registry, test_settings()).fetch("AAPL") == []
        assert offline.calls == 0

    def test_transient_provider_errors_are_retried(self, test_settings):
        registry = ProviderRegistry()
        flaky = FlakyProvider("flaky", [_input("a", "https://x/1")], failures=2)
        registry.register(flaky)
        config = test_settings(task_retry_min_seconds=0, task_retry_max_seconds=0)

        fetched = NewsAggregator(registry, config).fetch("AAPL")

        assert len(fetched) == 1
        assert flaky.calls == 3

    def test_failing_provider_does_not_sink_others(self, test_settings):
        registry = ProviderRegistry()
        registry.register(BrokenProvider("broken", []))
        registry.register(StaticProvider("wire", [_input("a", "https://x/1")]))
        assert len(NewsAggregator(registry, test_settings()).fetch("AAPL")) == 1

    def test_fetch_and_ingest_dedupes_against_store(self, db_session, test_settings):
        ArticleIngestor(db_session).ingest_input(_input("Old story", "https://x/1"))
        registry = ProviderRegistry()
        registry.register(StaticProvider("wire", [_input("Old story", "https://x/1"), _input("New", "https://x/2")]))
        registry.register(StaticProvider("other", [_input("New", "https://x/2", publisher="AP")]))

        saved = NewsAggregator(registry, test_settings()).fetch_and_ingest(db_session, ["aapl"])

        assert [a.source_url for a in saved] == ["https://x/2"]
        assert db_session.query(Article).count() == 2


class TestIngestAndProcess:
    def test_batch_is_deduped_then_processed(self, db_session, make_holding):
        make_holding(ticker="AAPL", shares=10)
        db_session.commit()
        batch = [
            _input("Apple beats earnings estimates", "https://x/1"),
            _input("Apple beats earnings estimates", "https://x/1"),
            _input("Apple shares plunge on recall", "https://x/2"),
        ]

        results = ArticlePipeline(db_session).ingest_and_process(batch)

        assert len(results) == 2
        assert all(r.impacts_written == 1 for r in results)
        assert ArticlePipeline(db_session).ingest_and_process(batch) == []
