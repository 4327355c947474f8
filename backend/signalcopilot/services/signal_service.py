"""
Signal persistence and consensus application.

Wraps the pure extractor and consensus calculator with storage: signals
are written once per article (unless re-analysis is forced), and the
consensus bonus of a cluster is folded into each member's confidence.
"""

from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.db.models import Signal
from signalcopilot.db.repositories import ArticleRepository, SignalRepository
from signalcopilot.domain.consensus import (
    ConsensusMember,
    apply_bonus,
    compute_consensus,
    window_members,
)
from signalcopilot.domain.models import ConsensusData
from signalcopilot.domain.signals import extract_signal
from signalcopilot.log_config import logger


class SignalService:
    """Extracts and stores signals; applies cross-source consensus."""

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self.articles = ArticleRepository(db)
        self.signals = SignalRepository(db)

    def analyze_article(self, article_id: int, force: bool = False) -> Tuple[Signal, bool]:
        """
        Extract and store the signal for one article.

        Returns ``(signal, written)``; an existing signal is returned
        untouched unless ``force`` is set.
        """
        article = self.articles.get_required(article_id)
        existing = self.signals.get_by_article(article_id)
        if existing is not None and not force:
            return existing, False

        extracted = extract_signal(article, self.config)
        signal, written = self.signals.save(article_id, extracted, force=force)
        logger.info(
            f"Signal for article {article_id} ({article.ticker}): sentiment={signal.sentiment} "
            f"magnitude={signal.magnitude} confidence={signal.confidence:.2f}"
        )
        return signal, written

    def apply_consensus(self, article_id: int) -> Tuple[ConsensusData, List[int]]:
        """
        Recompute consensus for the article's cluster and update member confidences.

        Returns the consensus and the ids of articles whose confidence changed.
        """
        article = self.articles.get_required(article_id)
        window = self.config.consensus_window_hours
        cluster = self.articles.get_cluster(article, window)
        signals = self.signals.get_for_articles([a.id for a in cluster])

        members = [
            ConsensusMember(
                publisher=a.publisher,
                sentiment=signals[a.id].sentiment,
                published_at=a.published_at,
                article_id=a.id,
            )
            for a in cluster
            if a.id in signals
        ]
        in_window = window_members(members, window, anchor=article.published_at)
        consensus = compute_consensus(in_window, window, anchor=article.published_at, config=self.config)

        changed = []
        for member in in_window:
            signal = signals[member.article_id]
            confidence = apply_bonus(signal.base_confidence, consensus.confidence_bonus)
            if self.signals.set_consensus_bonus(signal, consensus.confidence_bonus, confidence):
                changed.append(member.article_id)

        if consensus.unique_source_count > 1:
            logger.info(
                f"Consensus for {article.ticker} article {article_id}: {consensus.unique_source_count} sources, "
                f"{consensus.stance_agreement:.0%} agreement, bonus={consensus.confidence_bonus:.2f}"
            )
        return consensus, changed
