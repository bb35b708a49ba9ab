from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from digestcron.core.errors import BlobStoreError
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.content.entities import canonicalize_entity


logger = logging.getLogger(__name__)

CONTENT_INDEX_NAME = "content_index.json"

ContentKind = Literal["summary", "synthesis"]


class _ContentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RiskItem(_ContentModel):
    text: str
    severity: Literal["low", "medium", "high"] = "low"
    owner: str | None = None
    due_date: str | None = Field(default=None, alias="dueDateISO")


class OpenLoopItem(_ContentModel):
    text: str
    owner: str | None = None
    due_date: str | None = Field(default=None, alias="dueDateISO")
    status: str = "open"


class DecisionItem(_ContentModel):
    text: str
    date: str | None = Field(default=None, alias="dateISO")
    owner: str | None = None


class ActionItem(_ContentModel):
    type: str = "task"
    text: str
    due_date: str | None = Field(default=None, alias="dueDateISO")


class EntityRef(_ContentModel):
    name: str


class Artifact(_ContentModel):
    id: str
    kind: ContentKind = "summary"
    title: str = ""
    content_date: datetime | None = Field(default=None, alias="contentDateISO")
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    entities: list[EntityRef] = Field(default_factory=list)
    risks: list[RiskItem] = Field(default_factory=list)
    open_loops: list[OpenLoopItem] = Field(default_factory=list, alias="openLoops")
    decisions: list[DecisionItem] = Field(default_factory=list)
    actions: list[ActionItem] = Field(default_factory=list)


class ContentIndex(_ContentModel):
    version: int = 1
    artifacts: list[Artifact] = Field(default_factory=list)


class StructuredQuery(_ContentModel):
    date_from: datetime | None = None
    date_to: datetime | None = None
    kinds: list[ContentKind] = Field(default_factory=list)
    entity: str | None = None
    tags: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    # Keep only artifacts carrying at least one of these item kinds.
    require_any: list[Literal["risks", "open_loops", "decisions", "actions"]] = Field(default_factory=list)
    open_loop_status: str | None = "open"
    limit_artifacts: int = 30
    limit_items_per_artifact: int = 10


class QueryResult(_ContentModel):
    artifacts: list[Artifact] = Field(default_factory=list)


class ContentSource(Protocol):
    async def query(self, query: StructuredQuery) -> QueryResult: ...


def _aware(moment: datetime) -> datetime:
    # Date-only index entries parse as naive; treat them as UTC.
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _in_window(moment: datetime | None, query: StructuredQuery) -> bool:
    if moment is None:
        return query.date_from is None and query.date_to is None
    moment = _aware(moment)
    if query.date_from is not None and moment < _aware(query.date_from):
        return False
    if query.date_to is not None and moment > _aware(query.date_to):
        return False
    return True


class IndexedContentSource:
    """Query artifacts from the ``content_index.json`` document kept by the indexer."""

    def __init__(self, store: BlobStore, *, folder_id: str, aliases: dict[str, str] | None = None) -> None:
        self._store = store
        self._folder_id = folder_id
        self._aliases = aliases or {}
        self._index: ContentIndex | None = None

    async def _load(self) -> ContentIndex:
        if self._index is not None:
            return self._index
        try:
            payload = await self._store.read_json(parent=self._folder_id, name=CONTENT_INDEX_NAME)
            self._index = ContentIndex.model_validate(payload or {})
        except (BlobStoreError, UnicodeDecodeError, json.JSONDecodeError, ValidationError):
            logger.warning("content_index_unreadable folder=%s", self._folder_id, exc_info=True)
            self._index = ContentIndex()
        return self._index

    def _matches(self, artifact: Artifact, query: StructuredQuery, entity: str | None) -> bool:
        if not _in_window(artifact.content_date, query):
            return False
        if query.kinds and artifact.kind not in query.kinds:
            return False
        if entity is not None:
            names = {canonicalize_entity(ref.name, self._aliases) for ref in artifact.entities}
            if entity not in names:
                return False
        if query.tags:
            tags = {tag.lower() for tag in artifact.tags}
            if not any(tag in tags for tag in query.tags):
                return False
        if query.participants:
            people = {person.lower() for person in artifact.participants}
            if not any(person in people for person in query.participants):
                return False
        return True

    async def query(self, query: StructuredQuery) -> QueryResult:
        index = await self._load()
        entity = canonicalize_entity(query.entity, self._aliases) if query.entity else None
        ordered = sorted(
            index.artifacts,
            key=lambda item: _aware(item.content_date).timestamp() if item.content_date else 0.0,
            reverse=True,
        )
        limit = query.limit_items_per_artifact
        results: list[Artifact] = []
        for artifact in ordered:
            if not self._matches(artifact, query, entity):
                continue
            loops = artifact.open_loops
            if query.open_loop_status:
                loops = [loop for loop in loops if loop.status == query.open_loop_status]
            trimmed = artifact.model_copy(
                update={
                    "risks": artifact.risks[:limit],
                    "open_loops": loops[:limit],
                    "decisions": artifact.decisions[:limit],
                    "actions": artifact.actions[:limit],
                }
            )
            if query.require_any and not any(getattr(trimmed, kind) for kind in query.require_any):
                continue
            results.append(trimmed)
            if len(results) >= query.limit_artifacts:
                break
        return QueryResult(artifacts=results)
