"""Filesystem append-log channel for live task progress.

Each task owns one text file ``<root>/<task_id>.log``. Every update appends a
record ``status|progress|processed|total|eta|message``; the last record is the
current state. The channel lives outside the database, so handlers can
report progress at high frequency without writing to the store.
Only one process writes a given task's file at a time, and appends of one
short line are treated as atomic, so no locking is used.

Literal ``|`` in a field is written as ``¦`` and read back as ``|``, so a
message that already contains ``¦`` reads back with ``|`` in its place.
Newlines are flattened to spaces. Undecodable bytes, such as a torn
multibyte character at the end of an interrupted append, are read as U+FFFD.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from task_engine.engine.models import ProgressSnapshot

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
PIPE_SENTINEL = "¦"
DEFAULT_ETA = "—"
RECORD_FIELDS = 6
TEMP_FILE_PREFIX = ".~"


class ProgressTracker:
    """Reads and writes per-task progress logs under one directory."""

    def __init__(
        self,
        root: Path,
        *,
        snapshot_ttl_seconds: int = 24 * 3600,
        temp_ttl_seconds: int = 10 * 3600,
    ) -> None:
        self.root = root
        self.snapshot_ttl_seconds = snapshot_ttl_seconds
        self.temp_ttl_seconds = temp_ttl_seconds

    def dir(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def file(self, task_id: int | str) -> Path:
        return self.dir() / f"{task_id}.log"

    def init(self, payload: Mapping[str, Any]) -> None:
        """Seed the first record of a task's log."""

        self.write(payload)

    def write(self, payload: Mapping[str, Any]) -> None:
        """Append one progress record; ``payload['id']`` is required."""

        if payload.get("id") is None:
            raise ValueError('Progress payload must contain "id".')

        line = format_record(
            status=str(payload.get("status") or "unknown"),
            progress=_clamp_progress(payload.get("progress", 0)),
            processed=_as_int(payload.get("processed", 0)),
            total=_as_int(payload.get("total", 0)),
            eta=str(payload.get("eta") or DEFAULT_ETA),
            message=str(payload.get("message") or ""),
        )
        with self.file(payload["id"]).open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read_current(self, task_id: int | str) -> ProgressSnapshot | None:
        """Return the last record of a task's log, or None when absent/malformed."""

        path = self.file(task_id)
        if not path.is_file():
            return None

        last_line = ""
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                if line.strip():
                    last_line = line
        return parse_record(task_id, last_line)

    def read_history(self, task_id: int | str, lines: int = 50) -> list[str]:
        """Return the messages of the last ``lines`` records."""

        path = self.file(task_id)
        if not path.is_file() or lines <= 0:
            return []

        with path.open("r", encoding="utf-8", errors="replace") as handle:
            recent = deque((line for line in handle if line.strip()), maxlen=lines)

        messages: list[str] = []
        for line in recent:
            parts = line.rstrip("\n").split(FIELD_SEPARATOR, RECORD_FIELDS - 1)
            if len(parts) == RECORD_FIELDS:
                messages.append(_unescape(parts[5]))
        return messages

    def remove(self, task_id: int | str) -> bool:
        path = self.file(task_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def collect_garbage(self, now: datetime | None = None) -> int:
        """Delete expired progress logs and stray temp files; return count deleted.

        Callers must only invoke this while no task is queued or running.
        """

        current = now.timestamp() if now is not None else time.time()
        deleted = 0
        for path in self.dir().iterdir():
            if not path.is_file():
                continue
            if path.name.startswith(TEMP_FILE_PREFIX):
                ttl = self.temp_ttl_seconds
            elif path.suffix == ".log":
                ttl = self.snapshot_ttl_seconds
            else:
                continue
            try:
                age = current - path.stat().st_mtime
                if age > ttl:
                    path.unlink()
                    deleted += 1
            except OSError:
                logger.debug("Could not remove progress file %s", path, exc_info=True)
        if deleted:
            logger.info("Progress garbage collection removed %d file(s)", deleted)
        return deleted


def format_record(  # noqa: PLR0913
    *,
    status: str,
    progress: int,
    processed: int,
    total: int,
    eta: str,
    message: str,
) -> str:
    fields = [
        _escape(status),
        str(progress),
        str(processed),
        str(total),
        _escape(eta),
        _escape(message),
    ]
    return FIELD_SEPARATOR.join(fields)


def parse_record(task_id: int | str, line: str) -> ProgressSnapshot | None:
    parts = line.rstrip("\n").split(FIELD_SEPARATOR, RECORD_FIELDS - 1)
    if len(parts) < RECORD_FIELDS:
        return None
    try:
        progress = _clamp_progress(int(parts[1]))
        processed = int(parts[2])
        total = int(parts[3])
    except ValueError:
        return None
    return ProgressSnapshot(
        task_id=int(task_id),
        status=parts[0],
        progress=progress,
        processed=processed,
        total=total,
        eta=parts[4],
        message=_unescape(parts[5]),
    )


def _escape(value: str) -> str:
    flattened = value.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    return flattened.replace(FIELD_SEPARATOR, PIPE_SENTINEL)


def _unescape(value: str) -> str:
    return value.replace(PIPE_SENTINEL, FIELD_SEPARATOR)


def _clamp_progress(value: object) -> int:
    return min(100, max(0, _as_int(value)))


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0


