"""
Trust score engine.

Reputation side effects of terminal escrow outcomes. Scores are integers
clamped to [0, 100] and start at 100.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100


class TrustEvent(str, Enum):
    COMPLETED = "completed"
    DISPUTED_LOST = "disputed_lost"
    CANCELLED = "cancelled"


SCORE_DELTAS = {
    TrustEvent.COMPLETED: 5,
    TrustEvent.DISPUTED_LOST: -10,
    TrustEvent.CANCELLED: -2,
}

# Per-user counter bumped alongside each event
EVENT_COUNTERS = {
    TrustEvent.COMPLETED: 'total_completed',
    TrustEvent.DISPUTED_LOST: 'total_disputed',
    TrustEvent.CANCELLED: 'total_cancelled',
}


def clamp_score(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))


def apply_trust_event(score: int, event: TrustEvent) -> int:
    """
    Return the score after ``event``.

    Example:
        >>> apply_trust_event(98, TrustEvent.COMPLETED)
        100
        >>> apply_trust_event(5, TrustEvent.DISPUTED_LOST)
        0
    """
    return clamp_score(score + SCORE_DELTAS[event])


def get_trust_level(score: int) -> int:
    """Map a score to a 1-5 trust level."""
    if score >= 81:
        return 5
    if score >= 61:
        return 4
    if score >= 41:
        return 3
    if score >= 21:
        return 2
    return 1


class TrustScoreService:
    """Applies trust events to stored user records."""

    def __init__(self, store):
        self.store = store

    async def record(
        self,
        user_id: Optional[str],
        event: TrustEvent,
        volume: Decimal = Decimal('0')
    ) -> Optional[int]:
        """
        Apply ``event`` to ``user_id`` and return the new score.

        Runs after the transaction outcome has committed, so failures are
        logged and never propagated.
        """
        if not user_id:
            return None

        try:
            new_score = await self.store.adjust_trust_score(
                user_id,
                SCORE_DELTAS[event],
                EVENT_COUNTERS[event],
                volume,
            )
        except Exception as e:
            logger.error(f"Failed to apply trust event {event.value} to user {user_id}: {e}")
            return None

        if new_score is None:
            logger.warning(f"Trust event {event.value} skipped: user {user_id} not found")
        else:
            logger.info(f"Trust score for {user_id} is now {new_score} after {event.value}")
        return new_score
