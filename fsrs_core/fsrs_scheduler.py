"""FSRS-6 spaced repetition scheduler.

This module turns the equations in :mod:`fsrs_core.fsrs_engine` into the
card lifecycle: New cards walk through the learning steps, graduate to
Review, drop into Relearning on a lapse and come back. The scheduler never
mutates its input and reads no clock other than the review time it is
given, so the same inputs always produce the same outputs.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from fsrs_core.card_state import (
    Rating,
    SchedulingState,
    State,
    format_datetime,
    parse_datetime,
)
from fsrs_core.fsrs_engine import (
    WeightConfig,
    ensure_datetime,
    load_weights,
    next_interval,
    next_memory_state,
    predict_R,
)
from fsrs_core.learning_steps import MINUTES_PER_DAY, StepOutcome, step_outcomes

logger = logging.getLogger(__name__)

__all__ = [
    "FSRSScheduler",
    "ReviewOutcome",
    "SchedulingLog",
    "create_new",
    "elapsed_days_between",
    "reconstruct",
    "review",
]


@dataclass(frozen=True)
class SchedulingLog:
    """Audit record of one review, holding the values from before it."""

    rating: Rating
    state: State
    due: Optional[datetime]
    stability: float
    difficulty: float
    elapsed_days: int
    last_elapsed_days: int
    scheduled_days: int
    learning_steps: int
    last_review: Optional[datetime]
    review: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rating": self.rating.label,
            "state": self.state.label,
            "due": format_datetime(self.due),
            "stability": self.stability,
            "difficulty": self.difficulty,
            "elapsedDays": self.elapsed_days,
            "lastElapsedDays": self.last_elapsed_days,
            "scheduledDays": self.scheduled_days,
            "learningSteps": self.learning_steps,
            "lastReview": format_datetime(self.last_review),
            "reviewedAt": format_datetime(self.review),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SchedulingLog":
        reviewed_at = parse_datetime(payload.get("reviewedAt"))
        if reviewed_at is None:
            raise ValueError("Scheduling log entries must carry reviewedAt")
        return cls(
            rating=Rating.parse(payload["rating"]),
            state=State.parse(payload.get("state", "new")),
            due=parse_datetime(payload.get("due")),
            stability=float(payload.get("stability", 0.0) or 0.0),
            difficulty=float(payload.get("difficulty", 0.0) or 0.0),
            elapsed_days=int(payload.get("elapsedDays", 0) or 0),
            last_elapsed_days=int(payload.get("lastElapsedDays", 0) or 0),
            scheduled_days=int(payload.get("scheduledDays", 0) or 0),
            learning_steps=int(payload.get("learningSteps", 0) or 0),
            last_review=parse_datetime(payload.get("lastReview")),
            review=reviewed_at,
        )


@dataclass(frozen=True)
class ReviewOutcome:
    state: SchedulingState
    log: SchedulingLog


def elapsed_days_between(last_review: Optional[datetime], at: datetime) -> int:
    """Whole UTC calendar days from *last_review* to *at*, never negative."""

    if last_review is None:
        return 0
    return max((at.date() - last_review.date()).days, 0)


class FSRSScheduler:
    """Review transition function bound to one weight configuration."""

    def __init__(self, weights: Optional[WeightConfig] = None, *, version: Optional[str] = None) -> None:
        self.weights = weights or load_weights(version)

    # ------------------------------------------------------------------
    # State construction
    # ------------------------------------------------------------------
    def create_new(self, now: Optional[Any] = None) -> SchedulingState:
        return SchedulingState.new(ensure_datetime(now) if now is not None else None)

    def reconstruct(self, persisted: Mapping[str, Any]) -> SchedulingState:
        """Rebuild the exact state a card was persisted with.

        Only call this for cards with review history (see
        :func:`fsrs_core.card_state.has_history`); blank cards go through
        :meth:`create_new`.
        """

        return SchedulingState.from_storage(persisted)

    # ------------------------------------------------------------------
    # Core FSRS mechanics
    # ------------------------------------------------------------------
    def get_retrievability(self, state: SchedulingState, at: Any) -> float:
        if state.state is State.NEW or state.last_review is None:
            return 0.0
        elapsed = elapsed_days_between(state.last_review, ensure_datetime(at))
        return predict_R(state.stability, elapsed, self.weights)

    def review(self, state: SchedulingState, rating: Any, at: Any) -> ReviewOutcome:
        """Apply *rating* to *state* at time *at*."""

        rating = Rating.parse(rating)
        return self.preview(state, at)[rating]

    def preview(self, state: SchedulingState, at: Any) -> Dict[Rating, ReviewOutcome]:
        """Return the outcome of every possible rating for *state* at *at*."""

        at = ensure_datetime(at)
        if state.state is State.NEW:
            elapsed = 0
            memory = None
        else:
            if state.last_review is not None and at < state.last_review:
                logger.warning(
                    "Review at %s precedes last review %s; clamping elapsed days to 0",
                    format_datetime(at),
                    format_datetime(state.last_review),
                )
            elapsed = elapsed_days_between(state.last_review, at)
            memory = (state.difficulty, state.stability)

        cards: Dict[Rating, SchedulingState] = {}
        for rating in Rating:
            difficulty, stability = next_memory_state(memory, elapsed, rating, self.weights)
            cards[rating] = state.replace(
                difficulty=difficulty,
                stability=stability,
                elapsed_days=elapsed,
                reps=state.reps + 1,
                last_review=at,
            )

        fuzz_factor = self._fuzz_factor(state, at)
        if state.state is State.REVIEW:
            scheduled = self._schedule_review(state, cards, at, elapsed, fuzz_factor)
        else:
            scheduled = self._schedule_learning(state, cards, at, elapsed, fuzz_factor)

        return {
            rating: ReviewOutcome(state=card, log=self._build_log(state, rating, elapsed, at))
            for rating, card in scheduled.items()
        }

    def rollback(self, state: SchedulingState, log: SchedulingLog) -> SchedulingState:
        """Undo the review described by *log*, which must be the latest one."""

        if state.last_review != log.review:
            raise ValueError("Only the most recent review of a card can be rolled back")
        lapsed = log.rating is Rating.AGAIN and log.state is State.REVIEW
        return SchedulingState(
            due=log.due,
            stability=log.stability,
            difficulty=log.difficulty,
            state=log.state,
            reps=max(state.reps - 1, 0),
            lapses=max(state.lapses - (1 if lapsed else 0), 0),
            elapsed_days=log.last_elapsed_days,
            scheduled_days=log.scheduled_days,
            learning_steps=log.learning_steps,
            last_review=log.last_review,
        )

    def forget(self, state: SchedulingState, at: Any, *, reset_count: bool = False) -> SchedulingState:
        """Send a card back to New, due at *at*.

        With *reset_count* the card becomes indistinguishable from a blank
        one; otherwise its review and lapse counters are kept.
        """

        at = ensure_datetime(at)
        if reset_count:
            return SchedulingState.new(at)
        return SchedulingState(
            due=at,
            state=State.NEW,
            reps=state.reps,
            lapses=state.lapses,
            last_review=state.last_review,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fuzz_factor(self, state: SchedulingState, at: datetime) -> Optional[float]:
        if not self.weights.enable_fuzz:
            return None
        seed = f"{at.timestamp()}_{state.reps}_{state.difficulty * state.stability}"
        return random.Random(seed).random()

    def _graduate(
        self, card: SchedulingState, at: datetime, elapsed: int, fuzz_factor: Optional[float]
    ) -> SchedulingState:
        interval = next_interval(
            card.stability, self.weights, elapsed_days=elapsed, fuzz_factor=fuzz_factor
        )
        return self._schedule_days(card, interval, at)

    @staticmethod
    def _schedule_days(card: SchedulingState, interval: int, at: datetime) -> SchedulingState:
        return card.replace(
            state=State.REVIEW,
            learning_steps=0,
            scheduled_days=interval,
            due=at + timedelta(days=interval),
        )

    def _apply_step(
        self,
        card: SchedulingState,
        outcome: Optional[StepOutcome],
        at: datetime,
        to_state: State,
        elapsed: int,
        fuzz_factor: Optional[float],
    ) -> SchedulingState:
        if outcome is None:
            return self._graduate(card, at, elapsed, fuzz_factor)
        if outcome.minutes >= MINUTES_PER_DAY:
            # Day-long steps schedule the card as a review, keeping its step index.
            interval = outcome.minutes // MINUTES_PER_DAY
            return self._schedule_days(card, interval, at).replace(learning_steps=outcome.next_step)
        return card.replace(
            state=to_state,
            learning_steps=outcome.next_step,
            scheduled_days=0,
            due=at + timedelta(minutes=outcome.minutes),
        )

    def _schedule_learning(
        self,
        prior: SchedulingState,
        cards: Dict[Rating, SchedulingState],
        at: datetime,
        elapsed: int,
        fuzz_factor: Optional[float],
    ) -> Dict[Rating, SchedulingState]:
        if prior.state is State.RELEARNING:
            steps, to_state = self.weights.relearning_steps, State.RELEARNING
        else:
            steps, to_state = self.weights.learning_steps, State.LEARNING
        outcomes = step_outcomes(steps, prior.state, prior.learning_steps)

        scheduled = {
            rating: self._apply_step(card, outcomes.get(rating), at, to_state, elapsed, fuzz_factor)
            for rating, card in cards.items()
        }

        good, easy = scheduled[Rating.GOOD], scheduled[Rating.EASY]
        if good.state is State.REVIEW and easy.scheduled_days <= good.scheduled_days:
            bumped = min(good.scheduled_days + 1, self.weights.maximum_interval)
            scheduled[Rating.EASY] = self._schedule_days(easy, bumped, at)
        return scheduled

    def _schedule_review(
        self,
        prior: SchedulingState,
        cards: Dict[Rating, SchedulingState],
        at: datetime,
        elapsed: int,
        fuzz_factor: Optional[float],
    ) -> Dict[Rating, SchedulingState]:
        cap = self.weights.maximum_interval

        def interval_for(rating: Rating) -> int:
            return next_interval(
                cards[rating].stability, self.weights, elapsed_days=elapsed, fuzz_factor=fuzz_factor
            )

        hard_interval = interval_for(Rating.HARD)
        good_interval = interval_for(Rating.GOOD)
        hard_interval = min(hard_interval, good_interval)
        good_interval = min(max(good_interval, hard_interval + 1), cap)
        easy_interval = min(max(interval_for(Rating.EASY), good_interval + 1), cap)

        lapsed = cards[Rating.AGAIN].replace(lapses=prior.lapses + 1)
        relearning = step_outcomes(self.weights.relearning_steps, State.REVIEW, 0)
        return {
            Rating.AGAIN: self._apply_step(
                lapsed, relearning.get(Rating.AGAIN), at, State.RELEARNING, elapsed, fuzz_factor
            ),
            Rating.HARD: self._schedule_days(cards[Rating.HARD], hard_interval, at),
            Rating.GOOD: self._schedule_days(cards[Rating.GOOD], good_interval, at),
            Rating.EASY: self._schedule_days(cards[Rating.EASY], easy_interval, at),
        }

    @staticmethod
    def _build_log(prior: SchedulingState, rating: Rating, elapsed: int, at: datetime) -> SchedulingLog:
        return SchedulingLog(
            rating=rating,
            state=prior.state,
            due=prior.due,
            stability=prior.stability,
            difficulty=prior.difficulty,
            elapsed_days=elapsed,
            last_elapsed_days=prior.elapsed_days,
            scheduled_days=prior.scheduled_days,
            learning_steps=prior.learning_steps,
            last_review=prior.last_review,
            review=at,
        )


def create_new(now: Optional[Any] = None) -> SchedulingState:
    """Return the New-state default for a freshly created card."""

    return SchedulingState.new(ensure_datetime(now) if now is not None else None)


def reconstruct(persisted: Mapping[str, Any]) -> SchedulingState:
    return SchedulingState.from_storage(persisted)


def review(
    state: SchedulingState,
    rating: Any,
    at: Any,
    *,
    weights: Optional[WeightConfig] = None,
) -> ReviewOutcome:
    """Evaluate a review rating and return the updated state with its log."""

    return FSRSScheduler(weights or WeightConfig()).review(state, rating, at)
