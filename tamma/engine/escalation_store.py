"""
Persistence for escalation records.

Each record is stored as ``{escalation_id}.json`` in the configured
directory, written atomically through a temporary file and a rename, so a
blocked workflow and its escalation survive a restart. Records are cached in
memory after ``load()``; the files are the source of truth on startup.
"""

import asyncio
import json
from pathlib import Path

import aiofiles
import structlog

from tamma.models.domain import EscalationRecord

log = structlog.get_logger(__name__)


class EscalationRepository:
    """Store escalation records with per-record locks and atomic writes.

    A repository without a directory keeps records in memory only.
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory) if directory is not None else None
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
        self._records: dict[str, EscalationRecord] = {}
        # Per-record locks to prevent interleaved writes of the same file
        self._locks: dict[str, asyncio.Lock] = {}
        # Meta-lock for lock creation
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, escalation_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if escalation_id not in self._locks:
                self._locks[escalation_id] = asyncio.Lock()
            return self._locks[escalation_id]

    def _path(self, escalation_id: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{escalation_id}.json"

    async def load(self) -> list[EscalationRecord]:
        """Read every persisted record into the cache."""
        if self.directory is None:
            return list(self._records.values())

        for path in sorted(self.directory.glob("*.json")):
            async with aiofiles.open(path) as f:
                content = await f.read()
            try:
                record = EscalationRecord.from_dict(json.loads(content))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                log.error("escalation_record_unreadable", path=str(path), error=str(e))
                continue
            self._records[record.escalation_id] = record

        log.info("escalations_loaded", count=len(self._records))
        return list(self._records.values())

    async def save(self, record: EscalationRecord) -> None:
        """Persist a record, replacing any previous version."""
        lock = await self._get_lock(record.escalation_id)
        async with lock:
            self._records[record.escalation_id] = record
            if self.directory is not None:
                await self._write(self._path(record.escalation_id), record)

    async def _write(self, path: Path, record: EscalationRecord) -> None:
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(record.to_dict(), indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    def get(self, escalation_id: str) -> EscalationRecord | None:
        return self._records.get(escalation_id)

    def list_records(self, *, open_only: bool = False) -> list[EscalationRecord]:
        records = sorted(self._records.values(), key=lambda record: record.created_at)
        if open_only:
            return [record for record in records if record.is_open]
        return records

    def find_open(self, instance_id: str, action_type: str) -> EscalationRecord | None:
        """The unresolved record for (instance, action), if any."""
        for record in self._records.values():
            if record.is_open and record.dedup_key == (instance_id, action_type):
                return record
        return None
