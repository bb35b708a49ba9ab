from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from digestcron.apps.api.deps import get_store, get_tick_dependencies, require_admin
from digestcron.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from digestcron.apps.api.response import SuccessEnvelope, success_response
from digestcron.core.config import get_settings
from digestcron.domain.schedule import normalize_target_key
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.notifications.breaker import TargetRef
from digestcron.services.ops_status import build_ops_status, list_muted_targets, unmute_breaker_target
from digestcron.services.scheduler.orchestrator import TickDependencies, run_scheduler_tick
from digestcron.services.scheduler.run_log import JobRunLog
from digestcron.services.scheduler.schedule_store import read_schedule_config, write_schedule_config


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class TargetActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["unmute"]
    channel: Literal["email", "slack", "webhook"]
    target_key: str | None = Field(default=None, alias="targetKey")
    recipient_key: str | None = Field(default=None, alias="recipientKey")


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})


def _target_ref(payload: TargetActionRequest) -> TargetRef:
    # Email targets are keyed by recipient; chat and webhook targets by alias.
    if payload.channel == "email":
        recipient = (payload.recipient_key or "").strip()
        if not recipient:
            raise _bad_request("recipientKey is required for email targets")
        return TargetRef(channel="email", recipient_key=recipient)
    try:
        target_key = normalize_target_key(payload.target_key or "")
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc
    return TargetRef(channel=payload.channel, target_key=target_key, recipient_key=payload.recipient_key)


@router.get("/status", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_status(request: Request, store: BlobStore = Depends(get_store)) -> dict:
    payload = await build_ops_status(store)
    return success_response(request=request, data=payload)


@router.get("/targets", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_targets(request: Request, store: BlobStore = Depends(get_store)) -> dict:
    muted = await list_muted_targets(store)
    return success_response(request=request, data={"muted": muted})


@router.post("/targets", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_target_action(
    request: Request,
    payload: TargetActionRequest,
    store: BlobStore = Depends(get_store),
) -> dict:
    target = _target_ref(payload)
    entry = await unmute_breaker_target(store, target)
    logger.info("ops_target_action action=%s key=%s", payload.action, target.key)
    return success_response(request=request, data={"target": entry})


@router.post("/run-now", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_run_now(
    request: Request,
    deps: TickDependencies = Depends(get_tick_dependencies),
) -> dict:
    result = await run_scheduler_tick(deps=deps)
    return success_response(request=request, data=result.to_json_dict())


@router.get("/job-runs", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_job_runs(
    request: Request,
    month: str = Query(default="tail", description="YYYYMM for a monthly shard, or 'tail'"),
    limit: int | None = Query(default=None, ge=1, le=2000),
    store: BlobStore = Depends(get_store),
) -> dict:
    folder_id = await store.ensure_folder(get_settings().app_folder_name)
    run_log = JobRunLog(store, folder_id=folder_id)
    if month == "tail":
        entries = await run_log.read_tail(limit)
    else:
        try:
            entries = await run_log.read_month(month, limit=limit)
        except ValueError as exc:
            raise _bad_request(str(exc)) from exc
    return success_response(
        request=request,
        data={"month": month, "items": [entry.to_json_dict() for entry in entries]},
    )


@router.get("/schedule", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_get_schedule(request: Request, store: BlobStore = Depends(get_store)) -> dict:
    folder_id = await store.ensure_folder(get_settings().app_folder_name)
    loaded = await read_schedule_config(store, folder_id=folder_id)
    return success_response(
        request=request,
        data={
            "config": loaded.config.to_json_dict(),
            "issues": [{"ref": issue.ref, "message": issue.message} for issue in loaded.issues],
        },
    )


@router.put("/schedule", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_put_schedule(
    request: Request,
    payload: dict[str, Any] = Body(...),
    store: BlobStore = Depends(get_store),
) -> dict:
    # Strict validation; a ConfigError surfaces as a 400 envelope.
    folder_id = await store.ensure_folder(get_settings().app_folder_name)
    config = await write_schedule_config(store, folder_id=folder_id, payload=payload)
    logger.info("schedule_config_written jobs=%s profiles=%s", len(config.jobs), len(config.recipient_profiles))
    return success_response(request=request, data={"config": config.to_json_dict()})
