from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from digestcron.apps.api.deps import get_tick_dependencies, require_cron_secret
from digestcron.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from digestcron.apps.api.response import SuccessEnvelope, success_response
from digestcron.services.scheduler.orchestrator import TickDependencies, run_scheduler_tick


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], responses=DEFAULT_ERROR_RESPONSES)


# Schedulers differ on verb; both trigger the same tick.
@router.api_route(
    "/run",
    methods=["GET", "POST"],
    response_model=SuccessEnvelope[dict[str, Any]],
    dependencies=[Depends(require_cron_secret)],
)
async def cron_run(
    request: Request,
    deps: TickDependencies = Depends(get_tick_dependencies),
) -> dict:
    result = await run_scheduler_tick(deps=deps)
    logger.info(
        "cron_run ok=%s skipped=%s ran_jobs=%s",
        result.ok,
        bool(result.skipped),
        len(result.ran_jobs),
    )
    return success_response(request=request, data=result.to_json_dict())
