"""Utility to backfill FSRS persisted fields in legacy card stores.

Older records only carried ``due``, ``stability``, ``difficulty`` and
``state``; reconstructing them needs the full field set. Missing fields are
filled from snake_case aliases when present, otherwise with the New-card
defaults. ``lastReview`` is never invented from other timestamps.
"""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Iterable, Iterator, MutableMapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from fsrs_core.card_state import PERSISTED_FIELDS, format_datetime
from fsrs_core.card_store import STATE_FILENAME, read_jsonl, write_jsonl

logger = logging.getLogger(__name__)


def _constant(value: Any):
    return lambda: value


DEFAULT_FACTORIES = {
    "due": lambda: format_datetime(datetime.now(tz=timezone.utc)),
    "stability": _constant(0.0),
    "difficulty": _constant(0.0),
    "state": _constant("new"),
    "reps": _constant(0),
    "lapses": _constant(0),
    "elapsedDays": _constant(0),
    "scheduledDays": _constant(0),
    "learningSteps": _constant(0),
    "lastReview": _constant(None),
}


def _iter_store_files(paths: Iterable[Path]) -> Iterator[Path]:
    for root in paths:
        if not root.exists():
            continue
        if root.is_file() and root.suffix.lower() in {".json", ".jsonl"}:
            yield root
        elif root.is_dir():
            for candidate in sorted(root.rglob("*.json")):
                if candidate.is_file():
                    yield candidate
            # Review logs live beside the state file and are left alone.
            for candidate in sorted(root.rglob(STATE_FILENAME)):
                if candidate.is_file():
                    yield candidate


def ensure_entry_defaults(entry: MutableMapping[str, Any]) -> bool:
    """Give *entry* every persisted field; return ``True`` when it changed."""

    changed = False
    for key, factory in DEFAULT_FACTORIES.items():
        if key in entry:
            continue
        for alias in PERSISTED_FIELDS[key][1:]:
            if alias in entry:
                entry[key] = entry.pop(alias)
                break
        else:
            entry[key] = factory()
        changed = True
    return changed


def migrate_file(path: Path, dry_run: bool = False) -> bool:
    if path.suffix.lower() == ".jsonl":
        records = read_jsonl(path)
        changed = False
        for record in records:
            payload = record.get("fsrs")
            if not isinstance(payload, MutableMapping):
                continue
            if ensure_entry_defaults(payload):
                changed = True
        if changed and not dry_run:
            write_jsonl(path, records)
        return changed

    with path.open("r", encoding="utf-8") as handle:
        payload: Dict[str, Any] = json.load(handle)

    changed = False
    for value in payload.values():
        if not isinstance(value, MutableMapping):
            continue
        if ensure_entry_defaults(value):
            changed = True

    if changed and not dry_run:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=4)

    return changed


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backfill FSRS scheduling fields in card state stores."
    )
    parser.add_argument(
        "paths",
        nargs="*",
        type=Path,
        default=[Path("data") / STATE_FILENAME],
        help=f"Files or directories to process (defaults to data/{STATE_FILENAME}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report changes without writing updated files.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every file inspected.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> List[Path]:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    targets = list(_iter_store_files(args.paths))

    updated = []
    for file_path in targets:
        logger.debug("Inspecting %s", file_path)
        if migrate_file(file_path, dry_run=args.dry_run):
            updated.append(file_path)

    if args.dry_run:
        action = "would update"
    else:
        action = "updated"

    if updated:
        print(f"{action.capitalize()} {len(updated)} file(s):")
        for file_path in updated:
            print(f" - {file_path}")
    else:
        print("No changes required.")
    return updated


if __name__ == "__main__":
    main()
