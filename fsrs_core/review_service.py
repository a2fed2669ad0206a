"""High level helpers that orchestrate FSRS reviews and persistence."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import pandas as pd

from fsrs_core.card_state import PERSISTED_FIELDS, Rating, has_history
from fsrs_core.card_store import DEFAULT_USER_ID, CardStore
from fsrs_core.fsrs_engine import ensure_datetime
from fsrs_core.fsrs_scheduler import FSRSScheduler, SchedulingLog

logger = logging.getLogger(__name__)

MAX_REVIEW_DURATION_MS = 120_000
LOG_COLUMNS = [
    "user_id",
    "card_id",
    "rating",
    "state",
    "elapsedDays",
    "scheduledDays",
    "reviewedAt",
    "recalled",
]
SUMMARY_COLUMNS = ["reviews", "recall_rate", "mean_scheduled_days"]


def submit_review(
    prior: Optional[Mapping[str, Any]],
    rating: Any,
    reviewed_at: Any,
    scheduler: Optional[FSRSScheduler] = None,
) -> Tuple[Dict[str, Any], SchedulingLog]:
    """Apply one review to a persisted card record.

    *prior* is the stored record, or ``None`` for a card with no scheduling
    data yet. The returned dictionary is the complete persisted field set
    and must be written back as a whole.
    """

    rating = Rating.parse(rating)
    at = ensure_datetime(reviewed_at)
    scheduler = scheduler or FSRSScheduler()

    if has_history(prior):
        state = scheduler.reconstruct(prior)  # type: ignore[arg-type]
    else:
        state = scheduler.create_new(at)

    outcome = scheduler.review(state, rating, at)
    return outcome.state.to_storage_dict(), outcome.log


class ReviewService:
    """Serialises review submissions against a :class:`CardStore`.

    Submissions are deduplicated by idempotency key: a retried request gets
    the stored result back instead of being applied a second time. The log
    entry, which carries the result, is written before the card record, so a
    retry after a failure between the two writes completes the card record
    from the log instead of reviewing again.
    """

    def __init__(self, store: CardStore, scheduler: Optional[FSRSScheduler] = None) -> None:
        self.store = store
        self.scheduler = scheduler or FSRSScheduler()
        self._lock = threading.Lock()

    def submit(
        self,
        card_id: str,
        rating: Any,
        reviewed_at: Any,
        *,
        idempotency_key: str,
        user_id: Optional[str] = None,
        review_duration_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        rating = Rating.parse(rating)
        if not isinstance(idempotency_key, str) or not 8 <= len(idempotency_key) <= 128:
            raise ValueError("idempotency_key must be a string of 8 to 128 characters")
        if review_duration_ms is not None and not 0 <= int(review_duration_ms) <= MAX_REVIEW_DURATION_MS:
            raise ValueError(f"review_duration_ms must be between 0 and {MAX_REVIEW_DURATION_MS}")
        user = user_id or DEFAULT_USER_ID

        with self._lock:
            existing = self.store.find_review_by_idempotency_key(user, idempotency_key)
            if existing is not None:
                logger.info("Review %s for card %s already applied", idempotency_key, card_id)
                self._complete_pending(existing)
                return dict(existing["result"])

            prior = self.store.load_card_state(card_id, user_id=user)
            persisted, log = submit_review(prior, rating, reviewed_at, self.scheduler)

            result = {"cardId": str(card_id), **persisted}
            entry: Dict[str, Any] = {
                "user_id": user,
                "card_id": str(card_id),
                "idempotency_key": idempotency_key,
                **log.to_dict(),
                "result": result,
            }
            if review_duration_ms is not None:
                entry["review_duration_ms"] = int(review_duration_ms)
            self.store.append_review_log(entry)
            self.store.save_card_state(card_id, persisted, user_id=user)

        logger.debug(
            "Card %s rated %s: %s -> %s, due %s",
            card_id,
            rating.label,
            log.state.label,
            persisted["state"],
            persisted["due"],
        )
        return result

    def _complete_pending(self, entry: Mapping[str, Any]) -> None:
        """Rewrite the card record from *entry* if it was never saved.

        Only the newest log entry of a card can be pending; older ones have
        been superseded by later reviews and are left alone.
        """

        user, card_id = entry["user_id"], entry["card_id"]
        history = self.store.read_review_log(user_id=user, card_id=card_id)
        if not history or history[-1].get("idempotency_key") != entry.get("idempotency_key"):
            return
        persisted = {key: entry["result"][key] for key in PERSISTED_FIELDS}
        if self.store.load_card_state(card_id, user_id=user) != persisted:
            logger.warning("Completing card record for review %s of card %s", entry["idempotency_key"], card_id)
            self.store.save_card_state(card_id, persisted, user_id=user)


# ---------------------------------------------------------------------------
# Review log analytics
# ---------------------------------------------------------------------------

def review_log_frame(records: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Tabulate review log records, one row per review."""

    frame = pd.DataFrame.from_records([dict(record) for record in records])
    if frame.empty:
        return pd.DataFrame(columns=LOG_COLUMNS)
    frame["reviewedAt"] = pd.to_datetime(frame["reviewedAt"], utc=True)
    frame["recalled"] = frame["rating"] != Rating.AGAIN.label
    return frame.sort_values("reviewedAt").reset_index(drop=True)


def retention_summary(records: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Review count, recall rate and mean scheduled interval per pre-review state."""

    frame = review_log_frame(records)
    if frame.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)
    return frame.groupby("state").agg(
        reviews=("rating", "size"),
        recall_rate=("recalled", "mean"),
        mean_scheduled_days=("scheduledDays", "mean"),
    )


__all__ = [
    "ReviewService",
    "retention_summary",
    "review_log_frame",
    "submit_review",
]
