from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from digestcron.core.config import get_settings
from digestcron.core.errors import BlobNotFoundError, BlobStoreError
from digestcron.domain.models import BlobFile


logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._\-]+$")


@dataclass(frozen=True)
class BlobRef:
    id: str
    name: str


class BlobStore(ABC):
    """Opaque name-keyed document namespace.

    There are no transactions and no compare-and-swap: uniqueness relies on
    find-by-name before create, and every write is last-writer-wins.
    """

    @abstractmethod
    async def ensure_folder(self, name: str) -> str:
        """Return the id of the folder called ``name``, creating it when absent."""

    @abstractmethod
    async def list(self, *, parent: str, name: str | None = None, prefix: str | None = None) -> list[BlobRef]:
        """List documents in ``parent`` in creation order, optionally filtered."""

    @abstractmethod
    async def get(self, blob_id: str) -> bytes: ...

    @abstractmethod
    async def create(self, *, name: str, parent: str, body: bytes) -> BlobRef: ...

    @abstractmethod
    async def update(self, blob_id: str, *, body: bytes) -> None: ...

    async def find_by_name(self, *, parent: str, name: str) -> BlobRef | None:
        rows = await self.list(parent=parent, name=name)
        return rows[0] if rows else None

    async def read_text(self, *, parent: str, name: str) -> str | None:
        ref = await self.find_by_name(parent=parent, name=name)
        if ref is None:
            return None
        return (await self.get(ref.id)).decode("utf-8")

    async def read_json(self, *, parent: str, name: str) -> Any | None:
        # Callers decide how to degrade on malformed JSON.
        text = await self.read_text(parent=parent, name=name)
        if text is None:
            return None
        return json.loads(text)

    async def upsert_text(self, *, parent: str, name: str, text: str) -> BlobRef:
        body = text.encode("utf-8")
        ref = await self.find_by_name(parent=parent, name=name)
        if ref is None:
            return await self.create(name=name, parent=parent, body=body)
        await self.update(ref.id, body=body)
        return ref

    async def upsert_json(self, *, parent: str, name: str, payload: Any) -> BlobRef:
        return await self.upsert_text(parent=parent, name=name, text=json.dumps(payload, indent=2))


class InMemoryBlobStore(BlobStore):
    """Process-local store for tests and dry runs."""

    def __init__(self) -> None:
        self._folders: dict[str, str] = {}
        self._docs: dict[str, tuple[str, str, bytes]] = {}

    async def ensure_folder(self, name: str) -> str:
        if name not in self._folders:
            self._folders[name] = f"folder-{uuid4().hex}"
        return self._folders[name]

    async def list(self, *, parent: str, name: str | None = None, prefix: str | None = None) -> list[BlobRef]:
        refs: list[BlobRef] = []
        for blob_id, (doc_parent, doc_name, _body) in self._docs.items():
            if doc_parent != parent:
                continue
            if name is not None and doc_name != name:
                continue
            if prefix is not None and not doc_name.startswith(prefix):
                continue
            refs.append(BlobRef(id=blob_id, name=doc_name))
        return refs

    async def get(self, blob_id: str) -> bytes:
        if blob_id not in self._docs:
            raise BlobNotFoundError(blob_id)
        return self._docs[blob_id][2]

    async def create(self, *, name: str, parent: str, body: bytes) -> BlobRef:
        blob_id = uuid4().hex
        self._docs[blob_id] = (parent, name, bytes(body))
        return BlobRef(id=blob_id, name=name)

    async def update(self, blob_id: str, *, body: bytes) -> None:
        if blob_id not in self._docs:
            raise BlobNotFoundError(blob_id)
        parent, name, _old = self._docs[blob_id]
        self._docs[blob_id] = (parent, name, bytes(body))

    def names(self, parent: str) -> list[str]:
        # Expose stored names for assertions in tests.
        return [doc_name for doc_parent, doc_name, _body in self._docs.values() if doc_parent == parent]


class FileSystemBlobStore(BlobStore):
    """One directory per folder under ``root``; ids are ``folder/name`` paths."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, blob_id: str) -> Path:
        folder, _, name = blob_id.partition("/")
        if not _SAFE_NAME.match(folder) or not _SAFE_NAME.match(name):
            raise BlobNotFoundError(blob_id)
        return self._root / folder / name

    async def ensure_folder(self, name: str) -> str:
        if not _SAFE_NAME.match(name):
            raise BlobStoreError(f"Invalid folder name: {name}")
        try:
            (self._root / name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Unable to create folder {name}") from exc
        return name

    async def list(self, *, parent: str, name: str | None = None, prefix: str | None = None) -> list[BlobRef]:
        folder = self._root / parent
        if not folder.is_dir():
            return []
        entries: list[tuple[int, str]] = []
        for child in folder.iterdir():
            if name is not None and child.name != name:
                continue
            if prefix is not None and not child.name.startswith(prefix):
                continue
            entries.append((child.stat().st_ctime_ns, child.name))
        entries.sort()
        return [BlobRef(id=f"{parent}/{child_name}", name=child_name) for _ctime, child_name in entries]

    async def get(self, blob_id: str) -> bytes:
        try:
            return self._path(blob_id).read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(blob_id) from exc
        except OSError as exc:
            raise BlobStoreError(f"Unable to read {blob_id}") from exc

    async def create(self, *, name: str, parent: str, body: bytes) -> BlobRef:
        blob_id = f"{parent}/{name}"
        try:
            self._path(blob_id).write_bytes(body)
        except OSError as exc:
            raise BlobStoreError(f"Unable to create {blob_id}") from exc
        return BlobRef(id=blob_id, name=name)

    async def update(self, blob_id: str, *, body: bytes) -> None:
        path = self._path(blob_id)
        if not path.exists():
            raise BlobNotFoundError(blob_id)
        try:
            path.write_bytes(body)
        except OSError as exc:
            raise BlobStoreError(f"Unable to update {blob_id}") from exc


class SqlBlobStore(BlobStore):
    """Blob namespace persisted in the ``blob_files`` table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def ensure_folder(self, name: str) -> str:
        try:
            async with self._sessionmaker() as session:
                row = (
                    await session.execute(
                        select(BlobFile)
                        .where(BlobFile.is_folder.is_(True), BlobFile.name == name)
                        .order_by(BlobFile.created_at)
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if row is not None:
                    return row.id
                folder_id = uuid4().hex
                session.add(BlobFile(id=folder_id, parent_id=None, name=name, is_folder=True, body=b""))
                await session.commit()
                return folder_id
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Unable to ensure folder {name}") from exc

    async def list(self, *, parent: str, name: str | None = None, prefix: str | None = None) -> list[BlobRef]:
        stmt = select(BlobFile.id, BlobFile.name).where(
            BlobFile.parent_id == parent, BlobFile.is_folder.is_(False)
        )
        if name is not None:
            stmt = stmt.where(BlobFile.name == name)
        if prefix is not None:
            stmt = stmt.where(BlobFile.name.startswith(prefix, autoescape=True))
        stmt = stmt.order_by(BlobFile.created_at, BlobFile.id)
        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Unable to list folder {parent}") from exc
        return [BlobRef(id=row.id, name=row.name) for row in rows]

    async def get(self, blob_id: str) -> bytes:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(BlobFile, blob_id)
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Unable to read {blob_id}") from exc
        if row is None or row.is_folder:
            raise BlobNotFoundError(blob_id)
        return bytes(row.body or b"")

    async def create(self, *, name: str, parent: str, body: bytes) -> BlobRef:
        blob_id = uuid4().hex
        try:
            async with self._sessionmaker() as session:
                session.add(BlobFile(id=blob_id, parent_id=parent, name=name, is_folder=False, body=body))
                await session.commit()
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Unable to create {name}") from exc
        return BlobRef(id=blob_id, name=name)

    async def update(self, blob_id: str, *, body: bytes) -> None:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(BlobFile, blob_id)
                if row is None or row.is_folder:
                    raise BlobNotFoundError(blob_id)
                row.body = body
                await session.commit()
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Unable to update {blob_id}") from exc


_default_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    # Build the configured backend once per process.
    global _default_store
    if _default_store is not None:
        return _default_store
    settings = get_settings()
    backend = settings.blob_backend.lower()
    if backend == "memory":
        _default_store = InMemoryBlobStore()
    elif backend == "filesystem":
        _default_store = FileSystemBlobStore(settings.blob_root)
    elif backend == "sql":
        from digestcron.persistence.db import SessionLocal

        _default_store = SqlBlobStore(SessionLocal)
    else:
        raise BlobStoreError(f"Unknown blob backend: {settings.blob_backend}")
    logger.info("blob_store_selected backend=%s", backend)
    return _default_store


def set_blob_store(store: BlobStore | None) -> None:
    # Allow tests and scripts to swap the process-wide store.
    global _default_store
    _default_store = store
