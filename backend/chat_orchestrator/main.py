from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

# Must come after load_dotenv so env vars are available
from chat_orchestrator.api import admin, chat, health  # noqa: E402
from chat_orchestrator.core.config import get_settings  # noqa: E402
from chat_orchestrator.core.container import get_services  # noqa: E402
from chat_orchestrator.core.errors import (  # noqa: E402
    CheckpointStoreError,
    CleanupIncompleteError,
    ConsentRequiredError,
    InputValidationError,
    OrchestratorError,
)
from chat_orchestrator.core.logging import configure_logging, get_logger  # noqa: E402
from chat_orchestrator.rag.pipeline import configure_llamaindex  # noqa: E402

configure_logging()
log = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_llamaindex()
    services = get_services()
    await services.startup()
    log.info("startup", version=VERSION, environment=get_settings().environment)
    yield
    await services.shutdown()
    log.info("shutdown")


app = FastAPI(
    title="Chat Orchestrator",
    description="LangGraph conversation engine with encrypted checkpoints and data retention",
    version=VERSION,
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ─────────────────────────────────────────────────────────────

@app.exception_handler(InputValidationError)
async def input_validation_handler(request: Request, exc: InputValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConsentRequiredError)
async def consent_required_handler(request: Request, exc: ConsentRequiredError):
    return JSONResponse(status_code=403, content={"detail": str(exc), "category": exc.category})


@app.exception_handler(CleanupIncompleteError)
async def cleanup_incomplete_handler(request: Request, exc: CleanupIncompleteError):
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "operation": exc.operation,
            "deleted_count": exc.deleted_count,
            "failed": exc.failed,
        },
    )


@app.exception_handler(CheckpointStoreError)
async def checkpoint_store_handler(request: Request, exc: CheckpointStoreError):
    log.error("checkpoint_store_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    log.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.include_router(health.router)
app.include_router(chat.router)
app.include_router(admin.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chat_orchestrator.main:app", host="0.0.0.0", port=8000, reload=True)
