"""Operational utilities for familyhub."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, limit: int = 1000) -> None:
        self.path = path
        self._limit = limit
        self._entries: list[dict] = []

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), "event": event_type, **fields}
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

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


class HealthMonitor:
    """Aggregate runtime health information for the status endpoint."""

    def __init__(self, *, mode: str = "production") -> None:
        self.mode = mode
        self.database_online = True
        self.started_at = datetime.now(timezone.utc)
        self._checks: Dict[str, Callable[[], Any]] = {}

    def add_check(self, name: str, check: Callable[[], Any]) -> None:
        self._checks[name] = check

    def status(self) -> dict:
        payload: Dict[str, Any] = {
            "status": "ok" if self.database_online else "degraded",
            "message": "API is running",
            "mode": self.mode,
            "database": "ok" if self.database_online else "down",
            "uptime_seconds": self.uptime_seconds(),
        }
        for name, check in self._checks.items():
            payload[name] = check()
        return payload

    def uptime_seconds(self, *, at: Optional[datetime] = None) -> int:
        moment = at or datetime.now(timezone.utc)
        return int((moment - self.started_at).total_seconds())


__all__ = ["HealthMonitor", "StructuredLogger"]
