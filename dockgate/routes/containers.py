"""Container update endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.db import get_db
from dockgate.schemas.update import (
    BatchUpdateRequest,
    BatchUpdateResponse,
    PendingUpdateSchema,
    UpdateCheckResponse,
)
from dockgate.services.batch_updater import BatchUpdater, collect_results
from dockgate.services.docker_runtime import DockerRuntime
from dockgate.services.progress_stream import DEFAULT_KEEPALIVE_SECONDS, ProgressStream
from dockgate.services.scan_store import ScanStore
from dockgate.services.settings_service import SettingsService
from dockgate.services.update_checker import UpdateChecker
from dockgate.utils.error_handling import safe_error_response
from dockgate.utils.security import is_valid_container_ref, sanitize_log_message

logger = logging.getLogger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> DockerRuntime:
    """Docker runtime shared by the application."""
    return request.app.state.runtime


def _validated_ids(body: BatchUpdateRequest) -> list[str]:
    """Only a missing or empty list is fatal; unknown ids fail per container."""
    if not body.container_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="containerIds array is required",
        )
    invalid = [ref for ref in body.container_ids if not is_valid_container_ref(ref)]
    if invalid:
        logger.warning(
            f"Batch contains {len(invalid)} malformed container id(s): "
            f"{sanitize_log_message(invalid[:5])}"
        )
    return body.container_ids


@router.post("/batch-update-stream")
async def batch_update_stream(
    body: BatchUpdateRequest,
    request: Request,
    env: int | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    runtime: DockerRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """Update containers one by one, streaming progress as server-sent events.

    Raises:
        400: containerIds missing or empty
        422: Unknown vulnerabilityCriteria
    """
    container_ids = _validated_ids(body)
    keepalive = await SettingsService.get_int(
        db, "update_keepalive_seconds", int(DEFAULT_KEEPALIVE_SECONDS)
    )

    logger.info(
        f"Batch update stream requested for {len(container_ids)} container(s) "
        f"(env={env}, criteria={body.vulnerability_criteria.value})"
    )

    stream = ProgressStream(keepalive_seconds=max(keepalive, 1))
    updater = BatchUpdater(runtime, environment_id=env)
    stream.start(updater.run(container_ids, body.vulnerability_criteria))

    return StreamingResponse(
        stream.frames(request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/batch-update", response_model=BatchUpdateResponse, response_model_by_alias=True)
async def batch_update(
    body: BatchUpdateRequest,
    env: int | None = Query(default=None),
    runtime: DockerRuntime = Depends(get_runtime),
) -> BatchUpdateResponse:
    """Update containers one by one and return the outcome of each.

    Raises:
        400: containerIds missing or empty
        422: Unknown vulnerabilityCriteria
    """
    container_ids = _validated_ids(body)
    updater = BatchUpdater(runtime, environment_id=env)
    return await collect_results(updater.run(container_ids, body.vulnerability_criteria))


@router.post("/check-updates", response_model=UpdateCheckResponse, response_model_by_alias=True)
async def check_updates(
    env: int | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    runtime: DockerRuntime = Depends(get_runtime),
) -> UpdateCheckResponse:
    """Compare running images with their registries and refresh pending-update markers."""
    try:
        return await UpdateChecker.check_environment(db, runtime, env)
    except Exception as e:
        safe_error_response(logger, e, "Failed to check for updates")


@router.get(
    "/pending-updates",
    response_model=list[PendingUpdateSchema],
    response_model_by_alias=True,
)
async def list_pending_updates(
    env: int | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> list[PendingUpdateSchema]:
    """List containers that have an update waiting to be applied."""
    try:
        pending = await ScanStore.list_pending_container_updates(db, env)
        return [PendingUpdateSchema.model_validate(item) for item in pending]
    except Exception as e:
        safe_error_response(logger, e, "Failed to list pending updates")
