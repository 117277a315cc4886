"""Write ended sessions to disk as JSON and a plain-text report."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .session import SessionData

logger = logging.getLogger(__name__)


def _format_timestamp(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def render_report(session: SessionData) -> str:
    """Return a human readable summary of *session*."""

    lines = [
        "Device session report",
        "=====================",
        f"Session:  {session.session_id}",
        f"Mode:     {session.mode}",
        f"Started:  {_format_timestamp(session.start_time)}",
        f"Ended:    {_format_timestamp(session.end_time)}",
        f"Duration: {_format_duration(session.duration)}",
        f"Events:   {len(session.events)}",
        "",
    ]
    for event in session.events:
        line = f"[{_format_timestamp(event.timestamp)}] {event.kind.upper():<8} {event.title}"
        if event.detail:
            line += f" - {event.detail}"
        lines.append(line)
    return "\n".join(lines) + "\n"


class SessionFileExporter:
    """Persist each ended session under ``directory``."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _stem(self, session: SessionData) -> str:
        started = datetime.fromtimestamp(session.start_time, tz=timezone.utc)
        return f"session_{started.strftime('%Y%m%d_%H%M%S')}_{session.session_id[:8]}"

    def write(self, session: SessionData) -> tuple[Path, Path]:
        self._directory.mkdir(parents=True, exist_ok=True)
        stem = self._stem(session)
        json_path = self._directory / f"{stem}.json"
        report_path = self._directory / f"{stem}.txt"
        json_path.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
        report_path.write_text(render_report(session), encoding="utf-8")
        logger.info("Exported session %s to %s", session.session_id, json_path)
        return json_path, report_path

    async def export_session(self, session: SessionData) -> tuple[Path, Path]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.write, session)


__all__ = ["SessionFileExporter", "render_report"]
