from __future__ import annotations

import asyncio

from digestcron.core.config import get_settings
from digestcron.persistence.blob_store import get_blob_store


async def init() -> None:
    settings = get_settings()
    if settings.blob_backend.lower() == "sql":
        from digestcron.persistence.db import create_tables

        await create_tables()
    folder_id = await get_blob_store().ensure_folder(settings.app_folder_name)
    print(f"blob_backend={settings.blob_backend} folder_id={folder_id}")


if __name__ == "__main__":
    asyncio.run(init())
