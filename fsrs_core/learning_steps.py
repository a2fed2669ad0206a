"""Learning and relearning step sequences.

Steps are written the way Anki-style schedulers configure them (``"1m"``,
``"10m"``, ``"1h"``, ``"1d"``) and are stored as whole minutes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Sequence, Tuple

from fsrs_core.card_state import Rating, State

MINUTES_PER_DAY = 1440
STEP_UNITS = {"m": 1, "h": 60, "d": MINUTES_PER_DAY}
_STEP_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([mhd])\s*$")


@dataclass(frozen=True)
class StepOutcome:
    minutes: int
    next_step: int


def parse_step(step: Any) -> int:
    """Return *step* in minutes. Bare numbers are read as minutes."""

    if isinstance(step, (int, float)) and not isinstance(step, bool):
        minutes = float(step)
    elif isinstance(step, str):
        match = _STEP_PATTERN.match(step.lower())
        if match is None:
            raise ValueError(f"Unsupported learning step: {step!r}")
        minutes = float(match.group(1)) * STEP_UNITS[match.group(2)]
    else:
        raise ValueError(f"Unsupported learning step: {step!r}")
    rounded = int(round(minutes))
    if rounded < 1:
        raise ValueError(f"Learning steps must be at least one minute, got {step!r}")
    return rounded


def parse_steps(steps: Iterable[Any]) -> Tuple[int, ...]:
    return tuple(parse_step(step) for step in steps)


def _hard_minutes(steps: Sequence[int]) -> int:
    if len(steps) == 1:
        return int(steps[0] * 1.5 + 0.5)
    return int((steps[0] + steps[1]) / 2 + 0.5)


def step_outcomes(steps: Sequence[int], state: State, current_step: int) -> Dict[Rating, StepOutcome]:
    """Map each rating to the step it lands on, for a card in *state*.

    Ratings missing from the result graduate to Review with an FSRS
    interval. For a Review card only Again has a step (the first
    relearning step).
    """

    if not steps:
        return {}

    outcomes = {Rating.AGAIN: StepOutcome(minutes=steps[0], next_step=0)}
    if state is State.REVIEW:
        return outcomes

    # A stored index past the end (steps shortened since) holds the last step.
    current_step = min(max(current_step, 0), len(steps) - 1)
    outcomes[Rating.HARD] = StepOutcome(minutes=_hard_minutes(steps), next_step=current_step)
    if current_step + 1 < len(steps):
        outcomes[Rating.GOOD] = StepOutcome(
            minutes=steps[current_step + 1], next_step=current_step + 1
        )
    return outcomes


__all__ = [
    "MINUTES_PER_DAY",
    "StepOutcome",
    "parse_step",
    "parse_steps",
    "step_outcomes",
]
