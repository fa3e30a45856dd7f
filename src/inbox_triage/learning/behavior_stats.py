"""Per-sender-domain reply statistics.

Looks at every inbound message of a tenant together with its conversation's
first response time, and summarizes each sender domain: how often the
business replies, how fast, and how much mail the domain sends. The VIP
score blends those three signals; the suggested bucket is a hint for rule
suggestions and operators, never an input to the decision policy.

Usage:
    from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator

    aggregator = BehaviorStatsAggregator(store)
    stats = await aggregator.compute("acme")
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from inbox_triage.classifier.envelope import extract_domain, normalize_sender
from inbox_triage.classifier.taxonomy import Bucket
from inbox_triage.core.logging import get_logger, get_run_id, set_run_id
from inbox_triage.db.store import SenderBehaviorStat

if TYPE_CHECKING:
    from inbox_triage.db.store import DatabaseStore, InboundHistoryRow

logger = get_logger(__name__)

# Domains with fewer inbound messages are too noisy to summarize
MIN_MESSAGES_PER_DOMAIN = 2

# Response times outside (0, one week) are treated as data errors
MAX_RESPONSE_MINUTES = 7 * 24 * 60

# Responses slower than a day earn no speed credit
SPEED_HORIZON_MINUTES = 24 * 60

# Volume credit saturates at this many messages
VOLUME_SATURATION = 20

REPLY_WEIGHT = 0.5
SPEED_WEIGHT = 0.3
VOLUME_WEIGHT = 0.2


@dataclass
class _DomainTally:
    total: int = 0
    replied: int = 0
    response_minutes: list[float] = field(default_factory=list)


def vip_score(reply_rate: float, avg_response_minutes: float | None, total: int) -> float:
    """Blend reply rate, response speed and volume into a score in [0, 1]."""
    speed = 0.0
    if avg_response_minutes is not None:
        speed = max(0.0, 1.0 - avg_response_minutes / SPEED_HORIZON_MINUTES)
    volume = min(total / VOLUME_SATURATION, 1.0)
    return reply_rate * REPLY_WEIGHT + speed * SPEED_WEIGHT + volume * VOLUME_WEIGHT


def suggest_bucket(reply_rate: float, score: float) -> Bucket | None:
    """Bucket hint from reply behavior, or None when behavior is mixed."""
    if reply_rate < 0.2:
        return Bucket.AUTO_HANDLED
    if reply_rate > 0.8 or score > 0.7:
        return Bucket.ACT_NOW
    if reply_rate > 0.5:
        return Bucket.QUICK_WIN
    return None


def aggregate_history(
    tenant_id: str,
    history: list[InboundHistoryRow],
    now: datetime | None = None,
) -> list[SenderBehaviorStat]:
    """Summarize inbound history per sender domain.

    Pure function; ``compute`` wraps it with the store reads and writes.
    """
    now = now or datetime.now(UTC)
    tallies: dict[str, _DomainTally] = defaultdict(_DomainTally)

    for row in history:
        domain = extract_domain(normalize_sender(row.sender))
        if not domain:
            continue
        tally = tallies[domain]
        tally.total += 1
        if row.first_response_at is None:
            continue
        tally.replied += 1
        if row.conversation_created_at is not None:
            minutes = (row.first_response_at - row.conversation_created_at).total_seconds() / 60
            if 0 < minutes < MAX_RESPONSE_MINUTES:
                tally.response_minutes.append(minutes)

    stats: list[SenderBehaviorStat] = []
    for domain, tally in sorted(tallies.items()):
        if tally.total < MIN_MESSAGES_PER_DOMAIN:
            continue
        reply_rate = tally.replied / tally.total
        avg = (
            sum(tally.response_minutes) / len(tally.response_minutes)
            if tally.response_minutes
            else None
        )
        score = vip_score(reply_rate, avg, tally.total)
        bucket = suggest_bucket(reply_rate, score)
        stats.append(
            SenderBehaviorStat(
                tenant_id=tenant_id,
                sender_domain=domain,
                total_messages=tally.total,
                replied_count=tally.replied,
                reply_rate=round(reply_rate, 4),
                avg_response_time_minutes=round(avg, 2) if avg is not None else None,
                vip_score=round(score, 4),
                suggested_bucket=bucket.value if bucket else None,
                computed_at=now,
            )
        )
    return stats


class BehaviorStatsAggregator:
    """Recomputes and stores a tenant's sender behavior stats."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def compute(self, tenant_id: str) -> list[SenderBehaviorStat]:
        """Recompute stats from message history and replace the stored rows.

        Raises:
            DatabaseError: If history can't be read or stats can't be written
        """
        owns_run_id = get_run_id() is None
        if owns_run_id:
            set_run_id(str(uuid.uuid4()))
        try:
            history = await self._store.get_inbound_history(tenant_id)
            stats = aggregate_history(tenant_id, history)
            written = await self._store.replace_behavior_stats(stats)
            await self._store.set_state(
                f"last_stats_run:{tenant_id}", datetime.now(UTC).isoformat()
            )
            logger.info(
                "behavior_stats_computed",
                tenant_id=tenant_id,
                messages=len(history),
                domains=written,
            )
            return stats
        finally:
            if owns_run_id:
                set_run_id(None)
