from __future__ import annotations

import json
import logging
import re

from pydantic import ValidationError

from digestcron.core.config import get_settings
from digestcron.core.errors import BlobStoreError, PersistenceError
from digestcron.domain.documents import JobRunLogEntry
from digestcron.persistence.blob_store import BlobStore


logger = logging.getLogger(__name__)

TAIL_FILE_NAME = "job_runs_tail.jsonl"
LEGACY_FILE_NAME = "job_runs.jsonl"
_MONTH_PATTERN = re.compile(r"^\d{6}$")


def month_file_name(yyyymm: str) -> str:
    return f"job_runs_{yyyymm}.jsonl"


def parse_lines(raw: str) -> list[JobRunLogEntry]:
    # Skip blank, truncated or foreign lines instead of failing the read.
    entries: list[JobRunLogEntry] = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(JobRunLogEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            continue
    return entries


def _serialize(entry: JobRunLogEntry) -> str:
    return json.dumps(entry.to_json_dict(), separators=(",", ":"))


class JobRunLog:
    """Append-only run history: a monthly shard plus a bounded tail for status reads."""

    def __init__(
        self,
        store: BlobStore,
        *,
        folder_id: str,
        max_tail_lines: int | None = None,
        tail_guard_bytes: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._folder_id = folder_id
        self._max_tail_lines = max(1, max_tail_lines or settings.job_runs_max_tail_lines)
        self._tail_guard_bytes = tail_guard_bytes or settings.job_runs_tail_guard_bytes

    async def _append_month(self, entry: JobRunLogEntry) -> None:
        name = month_file_name(entry.ts.strftime("%Y%m"))
        line = (_serialize(entry) + "\n").encode("utf-8")
        ref = await self._store.find_by_name(parent=self._folder_id, name=name)
        if ref is None:
            await self._store.create(name=name, parent=self._folder_id, body=line)
            return
        existing = await self._store.get(ref.id)
        if existing and not existing.endswith(b"\n"):
            existing += b"\n"
        await self._store.update(ref.id, body=existing + line)

    async def _append_tail(self, entry: JobRunLogEntry) -> None:
        ref = await self._store.find_by_name(parent=self._folder_id, name=TAIL_FILE_NAME)
        lines: list[str] = []
        if ref is not None:
            raw = await self._store.get(ref.id)
            if len(raw) > self._tail_guard_bytes:
                logger.warning("job_runs_tail_reset bytes=%s", len(raw))
            else:
                lines = [_serialize(item) for item in parse_lines(raw.decode("utf-8", errors="replace"))]
        lines.append(_serialize(entry))
        lines = lines[-self._max_tail_lines :]
        body = ("\n".join(lines) + "\n").encode("utf-8")
        if ref is None:
            await self._store.create(name=TAIL_FILE_NAME, parent=self._folder_id, body=body)
        else:
            await self._store.update(ref.id, body=body)

    async def append(self, entry: JobRunLogEntry) -> None:
        # Attempt both shards even when the first write fails.
        errors: list[str] = []
        for target, writer in (("month", self._append_month), ("tail", self._append_tail)):
            try:
                await writer(entry)
            except BlobStoreError as exc:
                errors.append(f"{target}: {exc}")
        if errors:
            raise PersistenceError("; ".join(errors))

    async def _read(self, name: str) -> list[JobRunLogEntry]:
        ref = await self._store.find_by_name(parent=self._folder_id, name=name)
        if ref is None:
            return []
        raw = await self._store.get(ref.id)
        return parse_lines(raw.decode("utf-8", errors="replace"))

    async def read_tail(self, max_lines: int | None = None) -> list[JobRunLogEntry]:
        limit = max(1, max_lines or self._max_tail_lines)
        entries = await self._read(TAIL_FILE_NAME)
        if not entries:
            entries = await self._read(LEGACY_FILE_NAME)
        return entries[-limit:]

    async def read_month(self, yyyymm: str, *, limit: int | None = None) -> list[JobRunLogEntry]:
        if not _MONTH_PATTERN.match(yyyymm):
            raise ValueError(f"Invalid month {yyyymm!r}; expected YYYYMM")
        limit = max(1, limit or get_settings().job_runs_month_read_lines)
        return (await self._read(month_file_name(yyyymm)))[-limit:]
