"""FSRS spaced repetition scheduling for flashcards."""

from .card_state import (
    InvalidRatingError,
    Rating,
    SchedulingState,
    State,
    has_history,
)
from .fsrs_engine import WeightConfig, load_weights
from .fsrs_scheduler import (
    FSRSScheduler,
    ReviewOutcome,
    SchedulingLog,
    create_new,
    reconstruct,
    review,
)

__all__ = [
    "FSRSScheduler",
    "InvalidRatingError",
    "Rating",
    "ReviewOutcome",
    "SchedulingLog",
    "SchedulingState",
    "State",
    "WeightConfig",
    "create_new",
    "has_history",
    "load_weights",
    "reconstruct",
    "review",
]
