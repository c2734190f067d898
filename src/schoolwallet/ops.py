"""Operational utilities for SchoolWallet."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

REDACTED = "***"


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if "pin" in key.lower():
            cleaned[key] = REDACTED
        elif isinstance(value, dict):
            cleaned[key] = _redact(value)
        else:
            cleaned[key] = value
    return cleaned


class StructuredLogger:
    """Write JSON lines log entries for operator inspection.

    Fields whose name mentions a PIN are masked before the entry is kept, so
    entered or expected PINs never reach the buffer or the file sink.
    """

    def __init__(self, *, path: Path | None = None, limit: int = 500) -> None:
        self.path = path
        self._limit = limit
        self._entries: list[dict] = []

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.utcnow().isoformat(), "event": event_type, **_redact(fields)}
        self._entries.append(entry)
        if len(self._entries) > self._limit:
            del self._entries[: len(self._entries) - self._limit]
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])

    def events(self, event_type: Optional[str] = None) -> tuple[dict, ...]:
        if event_type is None:
            return tuple(self._entries)
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["StructuredLogger", "REDACTED"]
