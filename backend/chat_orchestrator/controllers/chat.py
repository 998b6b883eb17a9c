"""
Conversation entry points: generate_chat_response and resume_chat_session.

Both come in a blocking form (final AgentState) and a streaming form (one
StateUpdate per completed node). Validation, sanitization, consent and run
ownership (a run id stays with the user who first wrote it) are checked when the
call is awaited, before any node runs, so a rejected request raises
immediately instead of surfacing mid-stream.

The first snapshot of every run registers a chat_history retention record
keyed by the run id (idempotent), which makes the run's checkpoint subject
to retention cleanup.
"""

import asyncio
from typing import AsyncIterator

from pydantic import BaseModel, Field

from chat_orchestrator.agents.graph import ChatGraphExecutor, StateUpdate, final_state
from chat_orchestrator.core.errors import InputValidationError, OrchestratorError
from chat_orchestrator.core.graph_state import AgentState, ChatOptions, Message
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.middleware.sanitize import sanitize_message
from chat_orchestrator.retention.manager import DataCategory, DataRetentionManager

log = get_logger(__name__)

MAX_MESSAGES = 100


class InitialState(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    messages: list[Message] = Field(min_length=1, max_length=MAX_MESSAGES)
    options: ChatOptions = Field(default_factory=ChatOptions)


class ChatRequest(BaseModel):
    initial_state: InitialState
    run_id: str | None = Field(default=None, min_length=1, max_length=128)


class ChatController:
    def __init__(self, executor: ChatGraphExecutor, retention: DataRetentionManager):
        self._executor = executor
        self._retention = retention

    # ── generate ──────────────────────────────────────────────────────────────

    def _prepare(self, request: ChatRequest) -> AgentState:
        initial = request.initial_state
        for message in initial.messages:
            if message.role == "user":
                sanitize_message(message.content, initial.user_id)
        return AgentState(
            run_id=request.run_id,
            user_id=initial.user_id,
            messages=initial.messages,
            options=initial.options,
        )

    async def stream_chat_response(
        self, request: ChatRequest, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[StateUpdate]:
        state = self._prepare(request)
        await self._retention.ensure_consent(state.user_id, DataCategory.CHAT_HISTORY.value)
        await self._executor.claim_run(request.run_id, state.user_id)
        return self._track(self._executor.stream(state, request.run_id, cancel))

    async def generate_chat_response(self, request: ChatRequest, cancel: asyncio.Event | None = None) -> AgentState:
        return await final_state(await self.stream_chat_response(request, cancel))

    # ── resume ────────────────────────────────────────────────────────────────

    def _prepare_resume(self, run_id: str, new_message: str | None, user_id: str) -> Message | None:
        if not run_id:
            raise InputValidationError("run_id is required")
        if not user_id:
            raise InputValidationError("user_id is required")
        if new_message is None:
            return None
        sanitize_message(new_message, user_id)
        return Message(role="user", content=new_message)

    async def stream_resume_chat_session(
        self,
        run_id: str,
        new_message: str | None = None,
        *,
        user_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StateUpdate]:
        message = self._prepare_resume(run_id, new_message, user_id)
        await self._retention.ensure_consent(user_id, DataCategory.CHAT_HISTORY.value)
        await self._executor.claim_run(run_id, user_id)
        return self._track(self._executor.resume_stream(run_id, message, user_id=user_id, cancel=cancel))

    async def resume_chat_session(
        self,
        run_id: str,
        new_message: str | None = None,
        *,
        user_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AgentState:
        return await final_state(
            await self.stream_resume_chat_session(run_id, new_message, user_id=user_id, cancel=cancel)
        )

    # ── helpers ───────────────────────────────────────────────────────────────

    async def _track(self, updates: AsyncIterator[StateUpdate]) -> AsyncIterator[StateUpdate]:
        registered = False
        async for update in updates:
            if not registered:
                registered = True
                await self._register_run(update.state)
            yield update

    async def _register_run(self, state: AgentState) -> None:
        try:
            await self._retention.register_data_record(
                state.user_id, DataCategory.CHAT_HISTORY.value, record_id=state.run_id
            )
        except OrchestratorError as exc:
            log.warning("retention_registration_failed", run_id=state.run_id, error=str(exc))
