"""
Article processing pipeline: signal, consensus, impacts.

The signal is committed before any impact is computed, so a crash between
the two stages leaves a re-runnable state: re-processing skips extraction
and recomputes impacts, whose upserts are idempotent.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.domain.models import ArticleInput, ConsensusData
from signalcopilot.log_config import logger
from signalcopilot.services.impact_calculator import ImpactCalculator
from signalcopilot.services.ingestion import ArticleIngestor, assign_clusters, dedupe_batch
from signalcopilot.services.signal_service import SignalService


@dataclass
class ProcessResult:
    article_id: int
    signal_written: bool
    consensus: ConsensusData
    impacts_written: int = 0
    reprocessed_article_ids: List[int] = field(default_factory=list)
    affected_user_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "article_id": self.article_id,
            "signal_written": self.signal_written,
            "unique_sources": self.consensus.unique_source_count,
            "consensus_bonus": self.consensus.confidence_bonus,
            "impacts_written": self.impacts_written,
            "reprocessed_article_ids": list(self.reprocessed_article_ids),
            "affected_user_ids": list(self.affected_user_ids),
        }


class ArticlePipeline:
    """Runs stored articles through extraction, consensus and impact scoring."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.signals = SignalService(db, self.config)
        self.impacts = ImpactCalculator(db, self.config)

    def process_article(self, article_id: int, force: bool = False, score_impacts: bool = True) -> ProcessResult:
        """
        Extract (or reuse) the signal, apply cluster consensus, then score
        impacts for the article and every member whose confidence changed.

        With ``score_impacts`` off only the signals are written; the caller
        recomputes impacts for ``affected_user_ids`` itself.
        """
        _, written = self.signals.analyze_article(article_id, force=force)
        consensus, changed = self.signals.apply_consensus(article_id)
        self.db.commit()

        targets = [article_id] + [member for member in changed if member != article_id]
        impacts_written = 0
        if score_impacts:
            for target in targets:
                impacts_written += self.impacts.compute_for_article(target)
            self.db.commit()

        result = ProcessResult(
            article_id=article_id,
            signal_written=written,
            consensus=consensus,
            impacts_written=impacts_written,
            reprocessed_article_ids=targets[1:],
            affected_user_ids=self.impacts.affected_user_ids(targets),
        )
        logger.info(
            f"Processed article {article_id}: signal {'written' if written else 'reused'}, "
            f"{impacts_written} impacts, {len(result.reprocessed_article_ids)} cluster members rescored"
        )
        return result

    def ingest_and_process(self, inputs: Iterable[ArticleInput]) -> List[ProcessResult]:
        """Ingest a batch (deduplicated first) and process each new article."""
        batch = assign_clusters(dedupe_batch(inputs), self.config.cluster_similarity_threshold)
        ingestor = ArticleIngestor(self.db)
        article_ids = []
        for item in batch:
            article = ingestor.ingest_input(item)
            if article is not None:
                article_ids.append(article.id)
        self.db.commit()
        return [self.process_article(article_id) for article_id in article_ids]

    def process_pending(self, limit: Optional[int] = None) -> List[ProcessResult]:
        """Process stored articles that have no signal yet."""
        pending = self.signals.articles.get_unanalyzed_ids(limit=limit)
        return [self.process_article(article_id) for article_id in pending]


def process_article(db: Session, article_id: int, config: Optional[Settings] = None) -> ProcessResult:
    return ArticlePipeline(db, config).process_article(article_id)


def ingest_and_process(
    db: Session,
    inputs: Iterable[ArticleInput],
    config: Optional[Settings] = None,
) -> List[ProcessResult]:
    return ArticlePipeline(db, config).ingest_and_process(inputs)
