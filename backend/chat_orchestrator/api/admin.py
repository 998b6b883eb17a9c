"""
Admin endpoints for checkpoint and retention housekeeping.

Failures propagate: an incomplete cleanup is reported as an error with the
deleted count and the identifiers that could not be removed.
"""

from fastapi import APIRouter, Depends, Query

from chat_orchestrator.controllers.admin import ConsentRequest, ConsentResult, DeletedCount
from chat_orchestrator.core.container import Services, get_services
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.storage.models import CheckpointStats, RetentionStats

log = get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/checkpoints/stats", response_model=CheckpointStats)
async def checkpoint_stats(services: Services = Depends(get_services)):
    return await services.admin.get_checkpoint_stats()


@router.post("/checkpoints/cleanup", response_model=DeletedCount)
async def cleanup_checkpoints(
    max_age_seconds: float | None = Query(default=None, gt=0),
    services: Services = Depends(get_services),
):
    """Delete checkpoints not updated within max_age_seconds (default: the configured TTL)."""
    result = await services.admin.cleanup_checkpoints(max_age_seconds)
    log.info("checkpoint_cleanup_requested", deleted=result.deleted_count)
    return result


@router.get("/retention/stats", response_model=RetentionStats)
async def retention_stats(services: Services = Depends(get_services)):
    return await services.admin.get_data_retention_stats()


@router.post("/retention/cleanup", response_model=DeletedCount)
async def cleanup_expired_data(services: Services = Depends(get_services)):
    return await services.admin.cleanup_expired_data()


@router.delete("/users/{user_id}/data", response_model=DeletedCount)
async def delete_user_data(user_id: str, services: Services = Depends(get_services)):
    return await services.admin.delete_user_data(user_id)


@router.post("/users/{user_id}/consent", response_model=ConsentResult)
async def record_consent(
    user_id: str,
    req: ConsentRequest,
    category: str = Query(min_length=1),
    services: Services = Depends(get_services),
):
    return await services.admin.record_consent(user_id, category, req)
