"""Domain model for FSRS scheduling state.

This module defines :class:`SchedulingState`, the value the scheduler reads
and returns for every card, together with the :class:`State` and
:class:`Rating` enumerations. It also provides helpers for serialising the
state to and from the persisted record that the storage layer writes back
after each review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# Persisted key -> accepted aliases, in lookup order.
PERSISTED_FIELDS: Dict[str, tuple] = {
    "due": ("due", "due_at"),
    "stability": ("stability",),
    "difficulty": ("difficulty",),
    "state": ("state", "phase"),
    "reps": ("reps", "repetitions"),
    "lapses": ("lapses",),
    "elapsedDays": ("elapsedDays", "elapsed_days"),
    "scheduledDays": ("scheduledDays", "scheduled_days"),
    "learningSteps": ("learningSteps", "learning_steps"),
    "lastReview": ("lastReview", "last_review", "last_review_at"),
}


class InvalidRatingError(ValueError):
    """Raised when a review rating is outside again/hard/good/easy."""


class State(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "State":
        """Return the :class:`State` for *value*.

        Unrecognised values fall back to :attr:`State.NEW`. This is the only
        place that fallback is applied, and it is logged so that corrupted
        rows do not silently restart a schedule.
        """

        if isinstance(value, State):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        elif isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        logger.warning("Unrecognised scheduling state %r, treating card as new", value)
        return cls.NEW


class Rating(IntEnum):
    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Coerce *value* into a :class:`Rating` or raise :class:`InvalidRatingError`."""

        if isinstance(value, Rating):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        elif isinstance(value, int) and not isinstance(value, bool):
            if value in cls._value2member_map_:
                return cls(value)
        raise InvalidRatingError(f"Unsupported rating: {value!r}")


def ensure_utc(value: datetime) -> datetime:
    """Normalise *value* to a UTC timezone aware datetime."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Convert a persisted field into a :class:`datetime` in UTC if possible."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime in ISO-8601 format (UTC) for storage."""

    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _lookup(payload: Mapping[str, Any], key: str, default: Any = None) -> Any:
    for alias in PERSISTED_FIELDS[key]:
        if alias in payload:
            return payload[alias]
    return default


@dataclass(frozen=True)
class SchedulingState:
    """Scheduling snapshot for a single card.

    Parameters
    ----------
    due:
        When the card should next be shown.
    stability:
        Days until retrievability decays to the 90% reference point.
    difficulty:
        Intrinsic item difficulty, within ``[1, 10]`` once reviewed.
    state:
        Lifecycle stage of the card.
    reps / lapses:
        Review count and number of Again ratings given in Review state.
    elapsed_days / scheduled_days:
        Days since the previous review and the interval scheduled by it.
    learning_steps:
        Index into the learning or relearning step sequence.
    last_review:
        Timestamp of the previous review, ``None`` for never-reviewed cards.
    """

    due: Optional[datetime]
    stability: float = 0.0
    difficulty: float = 0.0
    state: State = State.NEW
    reps: int = 0
    lapses: int = 0
    elapsed_days: int = 0
    scheduled_days: int = 0
    learning_steps: int = 0
    last_review: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def new(cls, now: Optional[datetime] = None) -> "SchedulingState":
        """Return the blank state of a card that has never been reviewed."""

        due = ensure_utc(now) if now is not None else datetime.now(tz=timezone.utc)
        return cls(due=due)

    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "SchedulingState":
        """Rebuild a state from a persisted record.

        Every field is carried over as stored; only types are coerced. Keys
        may be camelCase (the persisted form) or snake_case.
        """

        state = cls(
            due=parse_datetime(_lookup(payload, "due")),
            stability=float(_lookup(payload, "stability", 0.0) or 0.0),
            difficulty=float(_lookup(payload, "difficulty", 0.0) or 0.0),
            state=State.parse(_lookup(payload, "state", "new")),
            reps=int(_lookup(payload, "reps", 0) or 0),
            lapses=int(_lookup(payload, "lapses", 0) or 0),
            elapsed_days=int(_lookup(payload, "elapsedDays", 0) or 0),
            scheduled_days=int(_lookup(payload, "scheduledDays", 0) or 0),
            learning_steps=int(_lookup(payload, "learningSteps", 0) or 0),
            last_review=parse_datetime(_lookup(payload, "lastReview")),
        )
        if state.last_review is None and state.state is not State.NEW:
            # Elapsed time is counted from lastReview only; without it the
            # next review is scheduled as a same-day one.
            logger.warning(
                "Scheduling record in state %s has no lastReview; elapsed days will be 0",
                state.state.label,
            )
        return state

    def to_storage_dict(self) -> Dict[str, Any]:
        """Serialise every persisted field; callers must write all of them."""

        return {
            "due": format_datetime(self.due),
            "stability": self.stability,
            "difficulty": self.difficulty,
            "state": self.state.label,
            "reps": self.reps,
            "lapses": self.lapses,
            "elapsedDays": self.elapsed_days,
            "scheduledDays": self.scheduled_days,
            "learningSteps": self.learning_steps,
            "lastReview": format_datetime(self.last_review),
        }

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------
    @property
    def is_new(self) -> bool:
        return self.state is State.NEW and self.reps == 0 and self.stability == 0

    def replace(self, **changes: Any) -> "SchedulingState":
        """Return a new instance with *changes* applied."""

        return replace(self, **changes)


def has_history(persisted: Optional[Mapping[str, Any]]) -> bool:
    """Return ``True`` when *persisted* describes a card that was reviewed before.

    A missing record, or one in the ``new`` state with no reps and no
    stability, is a blank card and must go through ``create_new`` instead of
    being reconstructed.
    """

    if not persisted:
        return False
    state = State.parse(_lookup(persisted, "state", "new"))
    reps = int(_lookup(persisted, "reps", 0) or 0)
    stability = float(_lookup(persisted, "stability", 0.0) or 0.0)
    return not (state is State.NEW and reps == 0 and stability == 0)


__all__ = [
    "InvalidRatingError",
    "PERSISTED_FIELDS",
    "Rating",
    "SchedulingState",
    "State",
    "ensure_utc",
    "format_datetime",
    "has_history",
    "parse_datetime",
]
