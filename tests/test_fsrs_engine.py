import json
import math
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fsrs_core.card_state import Rating
from fsrs_core.fsrs_engine import (
    D_MAX,
    D_MIN,
    DEFAULT_WEIGHTS,
    WeightConfig,
    clear_weights_cache,
    config_from_mapping,
    fuzz_range,
    init_difficulty,
    init_stability,
    load_weights,
    next_difficulty,
    next_interval,
    next_memory_state,
    predict_R,
)


def almost_equal(a: float, b: float, tol: float = 1e-9) -> bool:
    return math.isclose(a, b, rel_tol=tol, abs_tol=tol)


@pytest.fixture(autouse=True)
def _fresh_weights_cache():
    clear_weights_cache()
    yield
    clear_weights_cache()


def test_load_weights_default():
    config = load_weights()
    assert config.version == "fsrs_v6"
    assert len(config.weights) == 21
    assert config.maximum_interval == 365
    assert config.learning_steps == (1, 10)
    assert config.relearning_steps == (10,)
    assert config == WeightConfig()


def test_load_weights_from_env_directory(tmp_path, monkeypatch):
    preset = {
        "w_version": "custom",
        "weights": list(DEFAULT_WEIGHTS),
        "request_retention": 0.85,
        "maximum_interval": 100,
        "learning_steps": ["5m", "1h"],
        "relearning_steps": [],
    }
    (tmp_path / "custom.json").write_text(json.dumps(preset), encoding="utf-8")
    monkeypatch.setenv("FSRS_WEIGHTS_DIR", str(tmp_path))

    config = load_weights("custom")

    assert config.request_retention == 0.85
    assert config.maximum_interval == 100
    assert config.learning_steps == (5, 60)
    assert config.relearning_steps == ()
    assert load_weights("custom") is config
    with pytest.raises(FileNotFoundError):
        load_weights("missing")


@pytest.mark.parametrize(
    "changes",
    [
        {"weights": (0.1, 0.2, 0.3)},
        {"request_retention": 0.0},
        {"request_retention": 1.5},
        {"maximum_interval": 0},
        {"learning_steps": (0, 10)},
        {"relearning_steps": (-5,)},
    ],
)
def test_weight_config_rejects_invalid_values(changes):
    with pytest.raises(ValueError):
        WeightConfig(**changes)


def test_predict_retrievability_hits_ninety_percent_at_stability():
    config = WeightConfig()
    assert almost_equal(predict_R(7.5, 7.5, config), 0.9)
    assert almost_equal(predict_R(7.5, 0, config), 1.0)
    assert predict_R(7.5, 30, config) < predict_R(7.5, 10, config)


def test_next_interval_matches_closed_form_and_cap():
    config = WeightConfig()
    assert next_interval(12.4, config) == 12
    assert next_interval(0.0, config) == 1
    assert next_interval(10_000, config) == config.maximum_interval

    looser = WeightConfig(request_retention=0.8)
    assert next_interval(12.4, looser) > next_interval(12.4, config)


def test_initial_memory_state():
    config = WeightConfig()
    for rating in Rating:
        assert init_stability(rating, config) == DEFAULT_WEIGHTS[rating - 1]
    expected_good = DEFAULT_WEIGHTS[4] - math.exp(DEFAULT_WEIGHTS[5] * 2) + 1
    assert almost_equal(init_difficulty(Rating.GOOD, config), expected_good)
    assert almost_equal(init_difficulty(Rating.AGAIN, config), DEFAULT_WEIGHTS[4])
    assert init_difficulty(Rating.EASY, config) == D_MIN


@pytest.mark.parametrize("difficulty", [1.0, 3.3, 5.0, 8.7, 10.0])
def test_next_difficulty_is_bounded_and_ordered(difficulty):
    config = WeightConfig()
    values = [next_difficulty(difficulty, rating, config) for rating in Rating]
    assert all(D_MIN <= value <= D_MAX for value in values)
    assert values == sorted(values, reverse=True)


def test_memory_state_after_recall_and_lapse():
    config = WeightConfig()
    difficulty, stability = 5.0, 10.0

    _, recalled = next_memory_state((difficulty, stability), 10, Rating.GOOD, config)
    _, forgotten = next_memory_state((difficulty, stability), 10, Rating.AGAIN, config)
    _, easy = next_memory_state((difficulty, stability), 10, Rating.EASY, config)

    assert recalled > stability
    assert easy > recalled
    assert 0 < forgotten < stability


def test_same_day_review_uses_short_term_stability():
    config = WeightConfig()
    _, good = next_memory_state((5.0, 2.0), 0, Rating.GOOD, config)
    _, again = next_memory_state((5.0, 2.0), 0, Rating.AGAIN, config)
    assert good >= 2.0
    assert again < 2.0

    no_short_term = WeightConfig(enable_short_term=False)
    _, long_term = next_memory_state((5.0, 2.0), 0, Rating.GOOD, no_short_term)
    assert long_term == pytest.approx(2.0)


def test_fuzz_range_and_fuzzed_interval():
    assert fuzz_range(10.0, 0, 365) == (8, 12)
    assert fuzz_range(400.0, 0, 365)[1] == 365

    config = WeightConfig(enable_fuzz=True)
    assert next_interval(10.0, config, fuzz_factor=0.0) == 8
    assert next_interval(10.0, config, fuzz_factor=0.999) == 12
    # Short intervals are never fuzzed.
    assert next_interval(2.0, config, fuzz_factor=0.999) == 2


def test_sub_minute_steps_are_rejected_in_presets():
    with pytest.raises(ValueError):
        config_from_mapping({"learning_steps": ["0.4m", "10m"]})


def test_empty_memory_state_starts_from_initial_values():
    config = WeightConfig()
    for rating in Rating:
        assert next_memory_state((0.0, 0.0), 9, rating, config) == (
            init_difficulty(rating, config),
            init_stability(rating, config),
        )
    difficulty, stability = next_memory_state((0.0, 4.0), 9, Rating.AGAIN, config)
    assert D_MIN <= difficulty <= D_MAX
    assert stability > 0
