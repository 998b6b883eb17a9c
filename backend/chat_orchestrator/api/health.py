from fastapi import APIRouter, Depends

from chat_orchestrator.core.container import Services, get_services
from chat_orchestrator.core.errors import StorageError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Health check endpoint.  Verifies the storage backend is reachable."""
    try:
        await services.backend.ping()
        storage_status = "ok"
    except StorageError as exc:
        storage_status = f"error: {exc}"

    return {"status": "ok", "storage": storage_status}
