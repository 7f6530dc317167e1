from __future__ import annotations
import os, json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Iterable

# Default: backend/var/audit (override with env AUDIT_DIR)
_DEFAULT_DIR = Path(__file__).resolve().parents[2] / "var" / "audit"
AUDIT_DIR = Path(os.getenv("AUDIT_DIR", str(_DEFAULT_DIR)))

def _day_file(base: Path) -> Path:
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return base / f"actions-{day}.jsonl"

def write_events(events: Iterable[Dict[str, Any]], base: Path | None = None) -> int:
    """
    Append workflow action events to today's .jsonl file, one JSON object per line.
    Returns the number of lines written.
    """
    events = list(events)
    if not events:
        return 0
    base = base or AUDIT_DIR
    base.mkdir(parents=True, exist_ok=True)
    with _day_file(base).open("a", encoding="utf-8") as fh:
        for event in events:
            json.dump(event, fh, ensure_ascii=False, default=str)
            fh.write("\n")
    return len(events)

def read_events(day: str, base: Path | None = None) -> list[Dict[str, Any]]:
    fp = (base or AUDIT_DIR) / f"actions-{day}.jsonl"
    if not fp.exists():
        return []
    with fp.open("r", encoding="utf-8") as fh:
        return [json.loads(line) for line in fh if line.strip()]
