"""
Process-wide service wiring.

build_services() constructs exactly one storage backend, checkpoint store,
tool registry and graph executor and hands them to the controllers. The API
uses the cached get_services(); Celery tasks build their own instance per
task run because the Postgres pool is bound to the event loop that opened it.
"""

from dataclasses import dataclass
from functools import lru_cache

from chat_orchestrator.agents.graph import ChatGraphExecutor
from chat_orchestrator.controllers.admin import AdminController
from chat_orchestrator.controllers.chat import ChatController
from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.config import Settings, get_settings
from chat_orchestrator.core.crypto import StateCipher
from chat_orchestrator.core.db import create_pool
from chat_orchestrator.core.llm import LLMClient
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.core.telemetry import Telemetry
from chat_orchestrator.rag.pipeline import KnowledgeBaseSearch
from chat_orchestrator.retention.manager import DataRetentionManager
from chat_orchestrator.storage.backend import MemoryBackend, StorageBackend
from chat_orchestrator.storage.postgres import PostgresBackend
from chat_orchestrator.tools.defaults import build_default_registry
from chat_orchestrator.tools.executor import SecureToolExecutor

log = get_logger(__name__)


@dataclass
class Services:
    backend: StorageBackend
    store: CheckpointStore
    retention: DataRetentionManager
    executor: ChatGraphExecutor
    chat: ChatController
    admin: AdminController

    async def startup(self) -> None:
        await self.store.initialize()

    async def shutdown(self) -> None:
        await self.backend.close()


def _build_cipher(settings: Settings) -> StateCipher:
    if settings.checkpoint_encryption_key:
        return StateCipher.from_base64(settings.checkpoint_encryption_key)
    if settings.environment == "development":
        log.warning("checkpoint_key_ephemeral", detail="CHECKPOINT_ENCRYPTION_KEY unset; checkpoints will not survive a restart")
        return StateCipher.from_base64(StateCipher.generate_key())
    raise ValueError("CHECKPOINT_ENCRYPTION_KEY must be set outside development")


def _build_backend(settings: Settings) -> StorageBackend:
    if settings.storage_backend == "memory":
        return MemoryBackend()
    return PostgresBackend(create_pool(settings.database_url, settings.db_pool_max_size))


def build_services(
    settings: Settings | None = None,
    *,
    backend: StorageBackend | None = None,
    llm=None,
    search=None,
    cipher: StateCipher | None = None,
) -> Services:
    settings = settings or get_settings()
    telemetry = Telemetry()
    backend = backend or _build_backend(settings)

    search = search or KnowledgeBaseSearch()
    llm = llm or LLMClient(timeout_seconds=settings.llm_timeout_seconds, fast_model=settings.fast_model)

    store = CheckpointStore(
        backend,
        cipher or _build_cipher(settings),
        ttl_seconds=settings.checkpoint_ttl_seconds,
        telemetry=telemetry,
    )
    retention = DataRetentionManager(
        backend,
        store,
        default_retention_days=settings.default_retention_days,
        require_consent=settings.retention_require_consent,
        telemetry=telemetry,
    )
    registry = build_default_registry(search)
    executor = ChatGraphExecutor(
        store,
        registry,
        llm,
        search,
        tool_executor=SecureToolExecutor(
            registry,
            default_timeout_seconds=settings.tool_timeout_seconds,
            max_output_chars=settings.tool_max_output_chars,
            telemetry=telemetry,
        ),
        telemetry=telemetry,
    )
    return Services(
        backend=backend,
        store=store,
        retention=retention,
        executor=executor,
        chat=ChatController(executor, retention),
        admin=AdminController(store, retention),
    )


@lru_cache
def get_services() -> Services:
    return build_services(get_settings())
