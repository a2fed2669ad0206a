import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fsrs_core.card_state import PERSISTED_FIELDS
from fsrs_core.card_store import read_jsonl, write_jsonl
from fsrs_core.migrate_fsrs_fields import ensure_entry_defaults, main, migrate_file

LEGACY = {
    "due": "2026-01-13T00:00:00Z",
    "stability": 12.4,
    "difficulty": 5.1,
    "state": "review",
    "last_review": "2026-01-01T00:00:00Z",
    "scheduled_days": 12,
}


def test_ensure_entry_defaults_renames_aliases_and_fills_gaps():
    entry = dict(LEGACY)
    assert ensure_entry_defaults(entry) is True

    assert set(entry) == set(PERSISTED_FIELDS)
    assert entry["lastReview"] == "2026-01-01T00:00:00Z"
    assert entry["scheduledDays"] == 12
    assert entry["reps"] == 0
    assert entry["due"] == LEGACY["due"]

    assert ensure_entry_defaults(entry) is False


def test_migrate_jsonl_store(tmp_path):
    path = tmp_path / "card_state.jsonl"
    write_jsonl(path, [{"user_id": "default", "card_id": "card-1", "fsrs": dict(LEGACY)}])

    assert migrate_file(path) is True
    migrated = read_jsonl(path)[0]["fsrs"]
    assert set(migrated) == set(PERSISTED_FIELDS)
    assert migrated["lastReview"] == "2026-01-01T00:00:00Z"


def test_migrate_json_mapping(tmp_path):
    path = tmp_path / "cards.json"
    path.write_text(json.dumps({"card-1": dict(LEGACY), "meta": "v1"}), encoding="utf-8")

    assert migrate_file(path) is True
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["meta"] == "v1"
    assert payload["card-1"]["lastReview"] == "2026-01-01T00:00:00Z"


def test_dry_run_leaves_files_untouched(tmp_path, capsys):
    path = tmp_path / "card_state.jsonl"
    write_jsonl(path, [{"user_id": "default", "card_id": "card-1", "fsrs": dict(LEGACY)}])
    before = path.read_text(encoding="utf-8")

    assert main([str(path), "--dry-run"]) == [path]
    assert path.read_text(encoding="utf-8") == before
    assert "Would update 1 file(s):" in capsys.readouterr().out


def test_main_scans_directories_and_is_idempotent(tmp_path, capsys):
    write_jsonl(tmp_path / "card_state.jsonl", [{"user_id": "default", "card_id": "card-1", "fsrs": dict(LEGACY)}])
    write_jsonl(tmp_path / "review_log.jsonl", [{"card_id": "card-1", "rating": "good"}])

    assert main([str(tmp_path)]) == [tmp_path / "card_state.jsonl"]
    assert "Updated 1 file(s):" in capsys.readouterr().out
    assert read_jsonl(tmp_path / "review_log.jsonl") == [{"card_id": "card-1", "rating": "good"}]

    assert main([str(tmp_path)]) == []
    assert "No changes required." in capsys.readouterr().out
