"""
Hand reconciliation.

Overlapping segments and repeated detections make the Analysis Service
report the same hand more than once. After a job succeeds the stream's
hands are deduplicated by start time and renumbered 1..N in temporal order.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .adapters.base import StateStore
from .errors import NotFoundError, ReconciliationError
from .logging_setup import log_exception
from .models import Hand, ReconcileResult

logger = logging.getLogger("hand_pipeline")

DEFAULT_DEDUP_THRESHOLD_SEC = 5.0


@dataclass
class ReconciliationPlan:
    """Writes needed to bring a stream's hands into canonical form"""
    kept: List[Hand] = field(default_factory=list)
    remove_ids: List[str] = field(default_factory=list)
    renumber: Dict[str, int] = field(default_factory=dict)


def plan_reconciliation(hands: List[Hand], threshold: float = DEFAULT_DEDUP_THRESHOLD_SEC) -> ReconciliationPlan:
    """
    Decide which hands survive and how they are numbered.

    Hands are ordered by start (then end, then id). A hand starting within
    `threshold` seconds of the last kept hand is a duplicate of it; the one
    with the later end is kept and becomes the anchor for the next
    comparison. On equal ends the earlier hand wins.
    """
    ordered = sorted(hands, key=lambda h: (h.video_timestamp_start, h.video_timestamp_end, h.id))

    kept: List[Hand] = []
    removed: List[str] = []
    for hand in ordered:
        if kept and hand.video_timestamp_start - kept[-1].video_timestamp_start <= threshold:
            anchor = kept[-1]
            if hand.video_timestamp_end > anchor.video_timestamp_end:
                removed.append(anchor.id)
                kept[-1] = hand
            else:
                removed.append(hand.id)
        else:
            kept.append(hand)

    renumber = {}
    for number, hand in enumerate(kept, start=1):
        if hand.number != number:
            renumber[hand.id] = number

    return ReconciliationPlan(kept=kept, remove_ids=removed, renumber=renumber)


class HandReconciler:
    """Deduplicates and renumbers the hands of a stream"""

    def __init__(self, store: StateStore, threshold: float = DEFAULT_DEDUP_THRESHOLD_SEC):
        self.store = store
        self.threshold = threshold

    def reconcile(self, stream_id: str) -> ReconcileResult:
        """
        Reconcile a stream's hands in one store transaction.

        Returns:
            ReconcileResult with kept, removed and renumbered counts

        Raises:
            NotFoundError: if the stream does not exist
            ReconciliationError: if reading or writing hands fails
        """
        with self.store.stream_lock(stream_id):
            return self.reconcile_locked(stream_id)

    def reconcile_locked(self, stream_id: str) -> ReconcileResult:
        """Reconcile for a caller that already holds the stream lock"""
        if not self.store.get_stream(stream_id):
            raise NotFoundError(f"Stream not found: {stream_id}")

        try:
            hands = self.store.list_hands(stream_id)
            result = plan_reconciliation(hands, self.threshold)
            self.store.apply_reconciliation(
                stream_id,
                renumber=result.renumber,
                remove_ids=result.remove_ids,
                hand_count=len(result.kept)
            )
        except Exception as e:
            log_exception(logger, f"Reconciliation failed for stream {stream_id}: {e}")
            raise ReconciliationError(str(e)) from e

        logger.info(
            f"RECONCILED: stream {stream_id} kept {len(result.kept)}, "
            f"removed {len(result.remove_ids)}, renumbered {len(result.renumber)}"
        )
        return ReconcileResult(
            kept_count=len(result.kept),
            removed_count=len(result.remove_ids),
            renumbered_count=len(result.renumber)
        )
