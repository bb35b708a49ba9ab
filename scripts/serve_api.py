from __future__ import annotations

import uvicorn

from digestcron.apps.api.main import create_app
from digestcron.core.config import get_settings


def main() -> None:
    # Serve the cron trigger and ops routes with env-driven bind settings.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
