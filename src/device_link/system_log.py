"""Persistent journal of connectivity, session and control events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable, Mapping

logger = logging.getLogger(__name__)

CATEGORIES = ("connectivity", "session", "control", "system")


@dataclass(slots=True)
class JournalEntry:
    """One line of the journal."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_payload(cls, payload: object) -> "JournalEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        if not isinstance(category, str) or category not in CATEGORIES:
            category = "system"
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            return None
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category,
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """Append-only JSONL journal with a bounded in-memory tail.

    Passing ``path=None`` keeps the journal in memory only, which is what the
    tests and the diagnostics CLI use.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/device_link_log.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[JournalEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._path: Path | None = None
        if path is not None:
            candidate = Path(path)
            try:
                candidate.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem specific
                logger.warning("Journal directory unavailable, keeping events in memory: %s", exc)
            else:
                self._path = candidate
                self._restore(candidate)

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------ operations -----------------------------
    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: Mapping[str, object | None] | None = None,
    ) -> JournalEntry:
        """Append an event and return the stored entry.

        Unknown categories are filed under ``system``; ``None`` metadata
        values are dropped.
        """

        if category not in CATEGORIES:
            category = "system"
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = JournalEntry(
            timestamp=time.time(),
            category=category,
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._write(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[JournalEntry]:
        """Return the newest entries, oldest first."""

        with self._lock:
            entries: Iterable[JournalEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category]
        selected = list(entries)
        if limit is not None and limit > 0:
            selected = selected[-int(limit):]
        return selected

    # ----------------------------- implementation --------------------------
    def _restore(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - filesystem specific
            logger.warning("Unable to read journal %s: %s", path, exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = JournalEntry.from_payload(payload)
            if entry is not None:
                self._entries.append(entry)

    def _write(self, entry: JournalEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - filesystem specific
            logger.warning("Unable to append to journal %s: %s", self._path, exc)


__all__ = ["CATEGORIES", "JournalEntry", "SystemLog"]
