"""Append-only audit trail of processed commands."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import IO, List, Optional

import structlog
from pydantic import ValidationError

from .errors import RejectionReason
from .models import AuditRecord

logger = structlog.get_logger(__name__)


def read_records(path: Path, limit: Optional[int] = None) -> List[AuditRecord]:
    """Parse the audit file, newest last. Unreadable lines are skipped."""
    path = Path(path)
    if not path.exists():
        return []
    records: List[AuditRecord] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(AuditRecord.model_validate_json(line))
            except ValidationError as e:
                logger.warning("Skipping malformed audit line", path=str(path), line=lineno, error=str(e))
    if limit is not None:
        records = records[-limit:] if limit > 0 else []
    return records


class AuditLogger:
    """JSON-lines audit sink.

    Every record is written, flushed and fsynced before ``record`` returns, so
    an acknowledged record survives a crash. Disk I/O runs in a worker thread;
    the lock keeps records in submission order.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.failures = 0
        self._fh: Optional[IO[str]] = None
        self._lock = asyncio.Lock()
        self._closed = False

    def _open(self) -> IO[str]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        return os.fdopen(fd, "a", encoding="utf-8")

    def _append(self, line: str) -> None:
        if self._fh is None:
            self._fh = self._open()
        self._fh.write(line + "\n")
        self._fh.flush()
        os.fsync(self._fh.fileno())

    async def record(self, record: AuditRecord) -> bool:
        """Persist one record. Returns False (and logs) when the write failed."""
        line = record.to_line()
        async with self._lock:
            if self._closed:
                self.failures += 1
                logger.error(
                    "Audit write failed",
                    reason=RejectionReason.AUDIT_WRITE_FAILED.value,
                    error="log closed",
                    record=line,
                )
                return False
            try:
                await asyncio.to_thread(self._append, line)
            except OSError as e:
                self.failures += 1
                logger.error(
                    "Audit write failed",
                    reason=RejectionReason.AUDIT_WRITE_FAILED.value,
                    path=str(self.path),
                    error=str(e),
                    record=line,
                )
                await asyncio.to_thread(self._reset)
                return False
        logger.debug("Audit record written", outcome=record.outcome.value, command=record.command)
        return True

    async def read(self, limit: Optional[int] = None) -> List[AuditRecord]:
        async with self._lock:
            return await asyncio.to_thread(read_records, self.path, limit)

    async def close(self) -> None:
        """Flush and close. Later records are refused and logged."""
        async with self._lock:
            self._closed = True
            await asyncio.to_thread(self._reset)
        logger.info("Audit log closed", path=str(self.path), failures=self.failures)

    def _reset(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError as e:
            logger.error(
                "Audit flush failed",
                reason=RejectionReason.AUDIT_WRITE_FAILED.value,
                path=str(self.path),
                error=str(e),
            )
        finally:
            fh.close()
