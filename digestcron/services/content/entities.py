from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel, Field, ValidationError

from digestcron.core.errors import BlobStoreError
from digestcron.persistence.blob_store import BlobStore


logger = logging.getLogger(__name__)

ENTITY_ALIASES_NAME = "entity_aliases.json"

_SUFFIXES = ("ltd", "limited", "inc", "llc", "plc", "corp", "corporation", "co", "company", "gmbh", "s.a.", "srl")
_SUFFIX_PATTERNS = [re.compile(rf"(?:,\s*|\s+){re.escape(suffix)}$", re.IGNORECASE) for suffix in _SUFFIXES]
_TRAILING_PUNCT = re.compile(r"[\s.,;:!?)]+$")
_WHITESPACE = re.compile(r"\s+")


def _strip_trailing(value: str) -> str:
    return _TRAILING_PUNCT.sub("", value).strip()


def normalize_entity_name(name: str) -> str:
    # "Acme Holdings, Inc." and "acme holdings" collapse to the same key.
    current = _strip_trailing(_WHITESPACE.sub(" ", name.strip().lower()))
    changed = True
    while changed and current:
        changed = False
        for pattern in _SUFFIX_PATTERNS:
            if pattern.search(current):
                current = _strip_trailing(pattern.sub("", current))
                changed = True
    return current


class AliasRow(BaseModel):
    alias: str = Field(min_length=1, max_length=80)
    canonical: str = Field(min_length=1, max_length=80)
    display_name: str | None = Field(default=None, alias="displayName")


class EntityAliases(BaseModel):
    version: int = 1
    aliases: list[AliasRow] = Field(default_factory=list)


def alias_map_from(payload: EntityAliases) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for row in payload.aliases:
        alias = normalize_entity_name(row.alias)
        canonical = normalize_entity_name(row.canonical)
        if alias and canonical and alias != canonical:
            mapping[alias] = canonical
    return mapping


def canonicalize_entity(value: str, aliases: dict[str, str] | None = None) -> str:
    normalized = normalize_entity_name(value)
    if aliases:
        return aliases.get(normalized, normalized)
    return normalized


async def load_entity_aliases(store: BlobStore, *, folder_id: str) -> dict[str, str]:
    # Missing or invalid alias documents mean no aliasing.
    try:
        payload = await store.read_json(parent=folder_id, name=ENTITY_ALIASES_NAME)
    except (BlobStoreError, UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("entity_aliases_unreadable folder=%s", folder_id, exc_info=True)
        return {}
    if payload is None:
        return {}
    try:
        return alias_map_from(EntityAliases.model_validate(payload))
    except ValidationError:
        logger.warning("entity_aliases_invalid folder=%s", folder_id)
        return {}
