"""
Cross-source consensus.

Articles covering the same event are grouped by publisher. Each publisher
contributes one stance, and agreement is the share of publishers that hold
the majority stance. Broad agreement earns an additive confidence bonus.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.domain.models import ConsensusData


@dataclass(frozen=True)
class ConsensusMember:
    """One article's contribution to a consensus calculation."""

    publisher: str
    sentiment: int
    published_at: datetime
    article_id: Optional[int] = None

    @property
    def source_key(self) -> str:
        return (self.publisher or "").strip().lower() or "unknown"


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def consensus_bonus(
    unique_sources: int,
    stance_agreement: float,
    config: Optional[Settings] = None,
) -> float:
    """
    Additive confidence bonus for source agreement.

    >>> consensus_bonus(3, 0.8)
    0.15
    >>> consensus_bonus(2, 0.6)
    0.0
    """
    config = config or default_settings
    if stance_agreement < config.consensus_agreement_threshold:
        return 0.0
    if unique_sources >= config.consensus_major_source_count:
        return config.consensus_major_bonus
    if unique_sources >= config.consensus_minor_source_count:
        return config.consensus_minor_bonus
    return 0.0


def apply_bonus(base_confidence: float, bonus: float) -> float:
    """Add a consensus bonus to a base confidence, capped at 1.0."""
    return min(1.0, max(0.0, base_confidence + bonus))


def window_members(
    members: Iterable[ConsensusMember],
    window_hours: int,
    anchor: Optional[datetime] = None,
) -> List[ConsensusMember]:
    """Members published within ``window_hours`` of ``anchor`` (default: the newest member)."""
    members = list(members)
    if not members:
        return []
    if anchor is None:
        anchor = max(m.published_at for m in members)
    window = timedelta(hours=window_hours)
    return [m for m in members if abs(m.published_at - anchor) <= window]


def compute_consensus(
    members: Iterable[ConsensusMember],
    window_hours: Optional[int] = None,
    anchor: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> ConsensusData:
    """Compute source agreement for the articles of one cluster."""
    config = config or default_settings
    if window_hours is None:
        window_hours = config.consensus_window_hours

    in_window = window_members(members, window_hours, anchor)
    if not in_window:
        return ConsensusData(
            unique_source_count=0,
            upgrades_count=0,
            downgrades_count=0,
            window_hours=window_hours,
            stance_agreement=0.0,
            confidence_bonus=0.0,
        )

    totals: Dict[str, int] = defaultdict(int)
    for member in in_window:
        totals[member.source_key] += member.sentiment

    stances = [_sign(total) for total in totals.values()]
    unique_sources = len(stances)
    upgrades = sum(1 for s in stances if s > 0)
    downgrades = sum(1 for s in stances if s < 0)
    neutral = unique_sources - upgrades - downgrades

    agreement = max(upgrades, downgrades, neutral) / unique_sources
    return ConsensusData(
        unique_source_count=unique_sources,
        upgrades_count=upgrades,
        downgrades_count=downgrades,
        window_hours=window_hours,
        stance_agreement=agreement,
        confidence_bonus=consensus_bonus(unique_sources, agreement, config),
    )
