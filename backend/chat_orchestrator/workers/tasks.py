"""
Celery maintenance tasks.

Each task builds its own Services on a fresh event loop: the Postgres pool is
bound to the loop that opened it, so nothing is shared with the API process.
"""

import asyncio
from typing import Any, Awaitable, Callable

from chat_orchestrator.core.container import Services, build_services
from chat_orchestrator.core.errors import CleanupIncompleteError
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.workers.celery_app import celery

log = get_logger(__name__)


def _run(coro):
    """Run an async coroutine from a sync Celery task."""
    return asyncio.run(coro)


async def _with_services(operation: Callable[[Services], Awaitable[int]]) -> int:
    services = build_services()
    await services.startup()
    try:
        return await operation(services)
    finally:
        await services.shutdown()


@celery.task(
    name="chat_orchestrator.workers.tasks.cleanup_checkpoints",
    bind=True,
    max_retries=1,
    queue="maintenance",
)
def cleanup_checkpoints(self, max_age_seconds: float | None = None) -> dict[str, Any]:
    """Delete checkpoints older than max_age_seconds (default: the configured TTL)."""
    try:
        deleted = _run(_with_services(lambda services: services.store.cleanup(max_age_seconds)))
    except Exception as exc:
        log.error("cleanup_checkpoints_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
    log.info("cleanup_checkpoints_done", deleted=deleted)
    return {"status": "ok", "deleted_count": deleted}


@celery.task(
    name="chat_orchestrator.workers.tasks.cleanup_expired_data",
    bind=True,
    max_retries=1,
    queue="maintenance",
)
def cleanup_expired_data(self) -> dict[str, Any]:
    """
    Delete retention records past their consent or policy expiry, along with
    the checkpoints they describe. A partial failure is retried once; the
    records already removed stay removed.
    """
    try:
        deleted = _run(_with_services(lambda services: services.retention.cleanup_expired_data()))
    except CleanupIncompleteError as exc:
        log.error("cleanup_expired_data_incomplete", deleted=exc.deleted_count, failed=len(exc.failed))
        raise self.retry(exc=exc)
    except Exception as exc:
        log.error("cleanup_expired_data_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
    log.info("cleanup_expired_data_done", deleted=deleted)
    return {"status": "ok", "deleted_count": deleted}
