from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JournalError(RuntimeError):
    """Raised when the session journal cannot be written."""


class SessionJournal:
    """Append-only JSON Lines log of custom session entries.

    Each line is ``{"type": "custom", "customType": kind, "data": ..., "timestamp": ...}``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_name(f"{path.name}.lock")

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise JournalError(
                        f"Timed out waiting for journal lock {self.lock_file}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def append(self, kind: str, data: Any) -> dict[str, Any]:
        record = {
            "type": "custom",
            "customType": kind,
            "data": data,
            "timestamp": self._utcnow_iso(),
        }
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock():
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            raise JournalError(f"Could not append to journal {self.path}: {exc}") from exc
        return record

    def read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        records: list[dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8", errors="replace") as handle:
            for number, raw_line in enumerate(handle, start=1):
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping undecodable journal line %d in %s", number, self.path)
                    continue
                if isinstance(record, dict):
                    records.append(record)
        return records
