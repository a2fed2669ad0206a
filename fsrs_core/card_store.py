"""JSONL persistence for card scheduling state and the review log."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple, Union

from fsrs_core.card_state import PERSISTED_FIELDS, SchedulingState, format_datetime

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths and constants
# ---------------------------------------------------------------------------
STATE_FILENAME = "card_state.jsonl"
LOG_FILENAME = "review_log.jsonl"
DEFAULT_USER_ID = "default"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _normalise_user_id(user_id: Optional[str]) -> str:
    return str(user_id) if user_id not in (None, "") else DEFAULT_USER_ID


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    records: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            records.append(json.loads(line))
    return records


def write_jsonl(path: Path, records: Iterable[Mapping[str, Any]]) -> None:
    _ensure_parent(path)
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, ensure_ascii=False))
            handle.write("\n")


def _state_record_key(record: Mapping[str, Any]) -> Tuple[str, str]:
    user_id = _normalise_user_id(record.get("user_id"))
    card_id = record.get("card_id")
    if not card_id:
        raise ValueError("State records must define a card_id")
    return user_id, str(card_id)


class CardNotFoundError(LookupError):
    """Raised when a card id has no stored scheduling record."""


class CardStore:
    """Card scheduling records and review log kept as JSONL files under *root*.

    Each state record stores the full persisted field set under ``"fsrs"``;
    saving always replaces the whole record, never merges fields.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.state_file = self.root / STATE_FILENAME
        self.log_file = self.root / LOG_FILENAME

    # ------------------------------------------------------------------
    # Card state store
    # ------------------------------------------------------------------
    def create_card(self, card_id: str, *, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Register *card_id* with a blank New scheduling record."""

        payload = SchedulingState.new(now).to_storage_dict()
        return self.save_card_state(card_id, payload, user_id=user_id)

    def load_card_state(self, card_id: str, *, user_id: Optional[str] = None) -> Dict[str, Any]:
        key = (_normalise_user_id(user_id), str(card_id))
        for record in read_jsonl(self.state_file):
            if _state_record_key(record) == key:
                return dict(record["fsrs"])
        raise CardNotFoundError(f"Card '{card_id}' not found for user '{key[0]}'")

    def load_card_states(self, *, user_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        key_user = _normalise_user_id(user_id)
        states: Dict[str, Dict[str, Any]] = {}
        for record in read_jsonl(self.state_file):
            record_user, card_id = _state_record_key(record)
            if record_user == key_user:
                states[card_id] = dict(record["fsrs"])
        return states

    def save_card_state(
        self,
        card_id: str,
        persisted: Mapping[str, Any],
        *,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        missing = [key for key in PERSISTED_FIELDS if key not in persisted]
        if missing:
            raise ValueError(f"Scheduling record is missing fields: {', '.join(missing)}")
        record = {
            "user_id": _normalise_user_id(user_id),
            "card_id": str(card_id),
            "fsrs": {key: persisted[key] for key in PERSISTED_FIELDS},
        }
        key = _state_record_key(record)
        records = [stored for stored in read_jsonl(self.state_file) if _state_record_key(stored) != key]
        records.append(record)
        write_jsonl(self.state_file, records)
        logger.debug("Saved scheduling state for %s/%s", key[0], key[1])
        return dict(record["fsrs"])

    # ------------------------------------------------------------------
    # Review log (append-only)
    # ------------------------------------------------------------------
    def append_review_log(self, log_entry: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(log_entry, Mapping):
            raise TypeError("log_entry must be a mapping containing card metadata")
        record: MutableMapping[str, Any] = dict(log_entry)
        record.setdefault("logged_at", format_datetime(_utc_now()))
        required = {"user_id", "card_id", "rating", "reviewedAt"}
        missing = sorted(field for field in required if field not in record)
        if missing:
            raise ValueError(f"log_entry is missing required fields: {', '.join(missing)}")
        _ensure_parent(self.log_file)
        with self.log_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False))
            handle.write("\n")
        return dict(record)

    def read_review_log(self, *, user_id: Optional[str] = None, card_id: Optional[str] = None) -> List[Dict[str, Any]]:
        records = read_jsonl(self.log_file)
        if user_id is not None:
            records = [r for r in records if r.get("user_id") == _normalise_user_id(user_id)]
        if card_id is not None:
            records = [r for r in records if r.get("card_id") == str(card_id)]
        return records

    def find_review_by_idempotency_key(self, user_id: Optional[str], idempotency_key: str) -> Optional[Dict[str, Any]]:
        key_user = _normalise_user_id(user_id)
        for record in read_jsonl(self.log_file):
            if record.get("user_id") == key_user and record.get("idempotency_key") == idempotency_key:
                return record
        return None


__all__ = [
    "CardNotFoundError",
    "CardStore",
    "DEFAULT_USER_ID",
    "read_jsonl",
    "write_jsonl",
]
