from __future__ import annotations

import os
from typing import Mapping

from digestcron.domain.schedule import TARGET_KEY_PATTERN


_ENV_PREFIXES = {
    "slack": "SLACK_WEBHOOK_",
    "webhook": "WEBHOOK_",
}


def target_env_name(channel: str, key: str) -> str | None:
    prefix = _ENV_PREFIXES.get(channel)
    normalized = str(key or "").strip().upper()
    if prefix is None or not TARGET_KEY_PATTERN.match(normalized):
        return None
    return f"{prefix}{normalized}"


def resolve_target(channel: str, key: str, *, env: Mapping[str, str] | None = None) -> str | None:
    # Secrets live in the environment; config only ever names the alias.
    name = target_env_name(channel, key)
    if name is None:
        return None
    value = (env if env is not None else os.environ).get(name, "").strip()
    return value or None


def missing_targets(channel: str, keys: list[str], *, env: Mapping[str, str] | None = None) -> list[str]:
    return [key for key in keys if resolve_target(channel, key, env=env) is None]
