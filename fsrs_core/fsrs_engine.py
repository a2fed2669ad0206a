"""Python implementation of the FSRS-6 scheduling equations."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from fsrs_core.card_state import Rating, ensure_utc, parse_datetime
from fsrs_core.learning_steps import parse_steps

logger = logging.getLogger(__name__)

WEIGHTS_DIR = Path(__file__).resolve().parent / "weights"
WEIGHTS_DIR_ENV = "FSRS_WEIGHTS_DIR"
BASE_RETENTION = 0.9
S_MIN = 0.001
D_MIN = 1.0
D_MAX = 10.0

DEFAULT_WEIGHTS: Tuple[float, ...] = (
    0.212, 1.2931, 2.3065, 8.2956, 6.4133, 0.8334, 3.0194, 0.001, 1.8722,
    0.1666, 0.796, 1.4835, 0.0614, 0.2629, 1.6483, 0.6014, 1.8729, 0.5425,
    0.0912, 0.0658, 0.1542,
)

# (start, end, factor) bands used to widen the fuzz window for long intervals.
FUZZ_RANGES = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.1),
    (20.0, math.inf, 0.05),
)


@dataclass(frozen=True)
class WeightConfig:
    version: str = "fsrs_v6"
    weights: Tuple[float, ...] = DEFAULT_WEIGHTS
    request_retention: float = BASE_RETENTION
    maximum_interval: int = 365
    learning_steps: Tuple[int, ...] = (1, 10)
    relearning_steps: Tuple[int, ...] = (10,)
    enable_short_term: bool = True
    enable_fuzz: bool = False

    def __post_init__(self) -> None:
        if len(self.weights) != 21:
            raise ValueError(f"FSRS-6 needs 21 weights, got {len(self.weights)}")
        if not 0 < self.request_retention <= 1:
            raise ValueError("request_retention must be in (0, 1]")
        if self.maximum_interval < 1:
            raise ValueError("maximum_interval must be at least one day")
        for name in ("learning_steps", "relearning_steps"):
            if any(step < 1 for step in getattr(self, name)):
                raise ValueError(f"{name} must all be at least one minute")

    @property
    def decay(self) -> float:
        return -self.weights[20]

    @property
    def base_factor(self) -> float:
        return math.pow(BASE_RETENTION, 1 / self.decay) - 1

    @property
    def target_factor(self) -> float:
        return math.pow(self.request_retention, 1 / self.decay) - 1


_WEIGHTS_CACHE: Dict[str, WeightConfig] = {}


def ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        parsed = parse_datetime(value)
        if parsed is None:
            raise ValueError(f"Unparsable review timestamp: {value!r}")
        return parsed
    raise TypeError("review time must be a datetime or an ISO-8601 string")


def config_from_mapping(payload: Dict[str, Any], *, default_version: str = "fsrs_v6") -> WeightConfig:
    """Build a :class:`WeightConfig` from a JSON preset payload."""

    defaults = WeightConfig()
    return WeightConfig(
        version=str(payload.get("w_version") or default_version),
        weights=tuple(float(x) for x in payload.get("weights", defaults.weights)),
        request_retention=float(payload.get("request_retention", defaults.request_retention)),
        maximum_interval=int(payload.get("maximum_interval", defaults.maximum_interval)),
        learning_steps=parse_steps(payload.get("learning_steps", ("1m", "10m"))),
        relearning_steps=parse_steps(payload.get("relearning_steps", ("10m",))),
        enable_short_term=bool(payload.get("enable_short_term", defaults.enable_short_term)),
        enable_fuzz=bool(payload.get("enable_fuzz", defaults.enable_fuzz)),
    )


def _load_weight_file(path: Path) -> WeightConfig:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return config_from_mapping(payload, default_version=path.stem)


def weights_dir() -> Path:
    override = os.environ.get(WEIGHTS_DIR_ENV)
    return Path(override) if override else WEIGHTS_DIR


def _iter_weight_files() -> Iterable[Path]:
    root = weights_dir()
    if not root.exists():
        return []
    return sorted(root.glob("*.json"))


def load_weights(version: Optional[str] = None) -> WeightConfig:
    """Load the weight configuration for *version* from the presets directory."""

    if version in _WEIGHTS_CACHE:
        return _WEIGHTS_CACHE[version]  # type: ignore[index]

    if version is not None:
        for path in _iter_weight_files():
            config = _load_weight_file(path)
            _WEIGHTS_CACHE[config.version] = config
            if config.version == version:
                logger.debug("Loaded FSRS weights %s from %s", version, path)
                return config
        raise FileNotFoundError(f"No weights found for version '{version}' in {weights_dir()}")

    # Load the first available weight file when no version is specified.
    for path in _iter_weight_files():
        config = _load_weight_file(path)
        _WEIGHTS_CACHE[config.version] = config
        logger.debug("Loaded default FSRS weights %s from %s", config.version, path)
        return config
    raise FileNotFoundError(f"No weight files found in {weights_dir()}")


def clear_weights_cache() -> None:
    _WEIGHTS_CACHE.clear()


# ---------------------------------------------------------------------------
# Core FSRS equations
# ---------------------------------------------------------------------------

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def constrain_difficulty(value: float) -> float:
    return min(max(value, D_MIN), D_MAX)


def predict_R(stability: float, elapsed_days: float, config: Optional[WeightConfig] = None) -> float:
    cfg = config or WeightConfig()
    stability = max(stability, S_MIN)
    return math.pow(1 + cfg.base_factor * elapsed_days / stability, cfg.decay)


def fuzz_range(interval: float, elapsed_days: int, maximum_interval: int) -> Tuple[int, int]:
    delta = 1.0
    for start, end, factor in FUZZ_RANGES:
        delta += factor * max(min(interval, end) - start, 0.0)
    interval = min(interval, maximum_interval)
    min_ivl = max(2, _round_half_up(interval - delta))
    max_ivl = min(_round_half_up(interval + delta), maximum_interval)
    if interval > elapsed_days:
        min_ivl = max(min_ivl, elapsed_days + 1)
    min_ivl = min(min_ivl, max_ivl)
    return min_ivl, max_ivl


def next_interval(
    stability: float,
    config: Optional[WeightConfig] = None,
    *,
    elapsed_days: int = 0,
    fuzz_factor: Optional[float] = None,
) -> int:
    """Days until retrievability falls to the requested retention.

    The result is clamped to ``[1, maximum_interval]``. When fuzzing is
    enabled and a *fuzz_factor* in ``[0, 1)`` is given, intervals of 2.5
    days or more are spread over the fuzz window.
    """

    cfg = config or WeightConfig()
    stability = max(stability, S_MIN)
    raw_interval = stability / cfg.base_factor * cfg.target_factor
    if cfg.enable_fuzz and fuzz_factor is not None and raw_interval >= 2.5:
        low, high = fuzz_range(raw_interval, elapsed_days, cfg.maximum_interval)
        interval = min(int(fuzz_factor * (high - low + 1) + low), high)
    else:
        interval = _round_half_up(raw_interval)
    return min(max(interval, 1), cfg.maximum_interval)


def linear_damping(delta_d: float, old_d: float) -> float:
    return delta_d * (10 - old_d) / 9


def _raw_init_difficulty(rating: Rating, cfg: WeightConfig) -> float:
    return cfg.weights[4] - math.exp(cfg.weights[5] * (rating - 1)) + 1


def init_difficulty(rating: Rating, cfg: WeightConfig) -> float:
    return constrain_difficulty(_raw_init_difficulty(rating, cfg))


def init_stability(rating: Rating, cfg: WeightConfig) -> float:
    return max(cfg.weights[rating - 1], S_MIN)


def mean_reversion(initial: float, current: float, cfg: WeightConfig) -> float:
    return cfg.weights[7] * initial + (1 - cfg.weights[7]) * current


def next_difficulty(difficulty: float, rating: Rating, cfg: WeightConfig) -> float:
    delta = -cfg.weights[6] * (rating - 3)
    next_d = difficulty + linear_damping(delta, difficulty)
    # The mean-reversion target is the unclamped initial difficulty of Easy.
    return constrain_difficulty(mean_reversion(_raw_init_difficulty(Rating.EASY, cfg), next_d, cfg))


def next_recall_stability(
    difficulty: float, stability: float, retrievability: float, rating: Rating, cfg: WeightConfig
) -> float:
    hard_penalty = cfg.weights[15] if rating is Rating.HARD else 1.0
    easy_bonus = cfg.weights[16] if rating is Rating.EASY else 1.0
    value = stability * (
        1
        + math.exp(cfg.weights[8])
        * (11 - difficulty)
        * math.pow(stability, -cfg.weights[9])
        * (math.exp((1 - retrievability) * cfg.weights[10]) - 1)
        * hard_penalty
        * easy_bonus
    )
    return max(value, S_MIN)


def next_forget_stability(difficulty: float, stability: float, retrievability: float, cfg: WeightConfig) -> float:
    return (
        cfg.weights[11]
        * math.pow(difficulty, -cfg.weights[12])
        * (math.pow(stability + 1, cfg.weights[13]) - 1)
        * math.exp((1 - retrievability) * cfg.weights[14])
    )


def next_short_term_stability(stability: float, rating: Rating, cfg: WeightConfig) -> float:
    sinc = math.exp(cfg.weights[17] * (rating - 3 + cfg.weights[18])) * math.pow(
        max(stability, S_MIN), -cfg.weights[19]
    )
    if rating >= Rating.GOOD:
        sinc = max(sinc, 1.0)
    return max(stability * sinc, S_MIN)


def next_memory_state(
    memory: Optional[Tuple[float, float]],
    elapsed_days: int,
    rating: Rating,
    cfg: WeightConfig,
) -> Tuple[float, float]:
    """Return ``(difficulty, stability)`` after a review graded *rating*.

    *memory* is the prior ``(difficulty, stability)`` pair, ``None`` for a
    card reviewed for the first time. A ``(0, 0)`` pair (records backfilled
    without a memory state) is treated as a first review too.
    """

    if memory is None or (memory[0] == 0 and memory[1] == 0):
        return init_difficulty(rating, cfg), init_stability(rating, cfg)

    difficulty = constrain_difficulty(memory[0])
    stability = max(memory[1], S_MIN)
    if elapsed_days == 0 and cfg.enable_short_term:
        new_stability = next_short_term_stability(stability, rating, cfg)
    elif rating is Rating.AGAIN:
        retrievability = predict_R(stability, elapsed_days, cfg)
        shrink = cfg.weights[17] * cfg.weights[18] if cfg.enable_short_term else 0.0
        stability_floor = stability / math.exp(shrink)
        new_stability = max(
            min(next_forget_stability(difficulty, stability, retrievability, cfg), stability_floor),
            S_MIN,
        )
    else:
        retrievability = predict_R(stability, elapsed_days, cfg)
        new_stability = next_recall_stability(difficulty, stability, retrievability, rating, cfg)

    return next_difficulty(difficulty, rating, cfg), new_stability


__all__ = [
    "DEFAULT_WEIGHTS",
    "WeightConfig",
    "clear_weights_cache",
    "config_from_mapping",
    "constrain_difficulty",
    "ensure_datetime",
    "fuzz_range",
    "init_difficulty",
    "init_stability",
    "load_weights",
    "mean_reversion",
    "next_difficulty",
    "next_forget_stability",
    "next_interval",
    "next_memory_state",
    "next_recall_stability",
    "next_short_term_stability",
    "predict_R",
]
