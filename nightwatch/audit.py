"""
Sync history as structured JSON-Lines, one event per finished cycle.
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_REDACTED_KEYS = ("token", "password", "secret", "private_key")


class AuditLogger:
    """Appends JSONL events to a history file without sensitive values."""

    def __init__(self, log_file: Path):
        self.log_file = Path(log_file)

    def log(self, event_type: str, **kwargs: Any) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": kwargs,
        }
        for key in _REDACTED_KEYS:
            if key in entry["details"]:
                entry["details"][key] = "*****"

        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            # Best effort: the cycle outcome is already decided.
            logger.warning("Failed to write history entry to %s: %s", self.log_file, e)


def read_history(log_file: Path, last_n: int = 50) -> List[Dict[str, Any]]:
    """Return the last N events, skipping lines that are not valid JSON."""
    log_file = Path(log_file)
    if not log_file.exists():
        return []

    events = []
    with log_file.open("r", encoding="utf-8") as f:
        lines = f.readlines()
    for line in lines[-last_n:]:
        if not line.strip():
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping malformed history line")
    return events
