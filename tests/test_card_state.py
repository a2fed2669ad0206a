import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fsrs_core.card_state import (
    InvalidRatingError,
    Rating,
    SchedulingState,
    State,
    format_datetime,
    has_history,
    parse_datetime,
)

PERSISTED_REVIEW_CARD = {
    "due": "2026-02-13T00:00:00Z",
    "stability": 12.4,
    "difficulty": 5.1,
    "state": "review",
    "reps": 6,
    "lapses": 1,
    "elapsedDays": 31,
    "scheduledDays": 12,
    "learningSteps": 0,
    "lastReview": "2026-01-01T00:00:00Z",
}


def test_new_state_defaults():
    now = datetime(2026, 2, 9, 10, 0, tzinfo=timezone.utc)
    state = SchedulingState.new(now)

    assert state.state is State.NEW
    assert state.reps == 0
    assert state.stability == 0
    assert state.difficulty == 0
    assert state.last_review is None
    assert state.due == now
    assert state.is_new


@pytest.mark.parametrize(
    "payload",
    [
        PERSISTED_REVIEW_CARD,
        {**PERSISTED_REVIEW_CARD, "state": "relearning", "learningSteps": 1, "scheduledDays": 0},
        {**PERSISTED_REVIEW_CARD, "state": "learning", "reps": 1, "lapses": 0, "lastReview": "2026-01-31T23:59:00Z"},
    ],
)
def test_storage_round_trip_is_exact(payload):
    state = SchedulingState.from_storage(payload)
    assert state.to_storage_dict() == payload


def test_from_storage_coerces_types_and_aliases():
    state = SchedulingState.from_storage(
        {
            "due_at": "2026-02-13T00:00:00+00:00",
            "stability": "12.4",
            "difficulty": 5,
            "phase": "Review",
            "repetitions": "6",
            "lapses": 1,
            "elapsed_days": 31,
            "scheduled_days": 12,
            "learning_steps": 0,
            "last_review_at": "2026-01-01T00:00:00Z",
        }
    )

    assert state.due == datetime(2026, 2, 13, tzinfo=timezone.utc)
    assert state.stability == 12.4
    assert state.difficulty == 5.0
    assert state.state is State.REVIEW
    assert state.reps == 6
    assert state.last_review == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_unknown_state_falls_back_to_new(caplog):
    with caplog.at_level("WARNING"):
        assert State.parse("suspended") is State.NEW
    assert "suspended" in caplog.text
    assert State.parse(2) is State.REVIEW
    assert State.parse(" Relearning ") is State.RELEARNING


@pytest.mark.parametrize("value, expected", [("again", Rating.AGAIN), ("HARD", Rating.HARD), (3, Rating.GOOD), (Rating.EASY, Rating.EASY)])
def test_rating_parse_accepts_public_ratings(value, expected):
    assert Rating.parse(value) is expected


@pytest.mark.parametrize("value", ["manual", 0, 5, None, "", True, 2.5])
def test_rating_parse_rejects_everything_else(value):
    with pytest.raises(InvalidRatingError):
        Rating.parse(value)
    assert issubclass(InvalidRatingError, ValueError)


def test_has_history_matches_new_card_heuristic():
    assert not has_history(None)
    assert not has_history({})
    assert not has_history(SchedulingState.new().to_storage_dict())
    assert has_history(PERSISTED_REVIEW_CARD)
    assert has_history({**PERSISTED_REVIEW_CARD, "state": "new", "reps": 0, "stability": 4.2})
    assert has_history({**PERSISTED_REVIEW_CARD, "state": "new", "reps": 3, "stability": 0})


def test_datetime_helpers_normalise_to_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    offset = datetime(2026, 1, 1, 13, 0, tzinfo=timezone(timedelta(hours=1)))

    assert parse_datetime(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_datetime(offset) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None
    assert format_datetime(offset) == "2026-01-01T12:00:00Z"
    assert format_datetime(None) is None


def test_reviewed_record_without_last_review_is_flagged(caplog):
    now = datetime(2026, 2, 9, 10, 0, tzinfo=timezone.utc)
    payload = SchedulingState(due=now, stability=3.0, difficulty=5.0, state=State.REVIEW, reps=2).to_storage_dict()
    with caplog.at_level("WARNING"):
        state = SchedulingState.from_storage(payload)
    assert state.last_review is None
    assert "no lastReview" in caplog.text

    caplog.clear()
    with caplog.at_level("WARNING"):
        SchedulingState.from_storage(SchedulingState.new(now).to_storage_dict())
    assert caplog.text == ""
