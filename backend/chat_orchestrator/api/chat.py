"""
Chat API endpoints.

Invoke and resume return the final state once the run has finished; the
/stream variants push one SSE `state` event per completed node. Rejected
input is reported before the run starts; failures inside a run come back
as the apology reply, never as an error status.
"""

import asyncio
import json
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chat_orchestrator.agents.graph import StateUpdate
from chat_orchestrator.controllers.chat import ChatRequest
from chat_orchestrator.core.container import Services, get_services
from chat_orchestrator.core.graph_state import AgentState
from chat_orchestrator.core.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class ResumeRequest(BaseModel):
    message: str | None = None
    user_id: str = Field(min_length=1, max_length=128)


def _reply(state: AgentState) -> dict:
    return {
        "run_id": state.run_id,
        "response": state.generated_text,
        "state": state.model_dump(mode="json"),
    }


def _event(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _sse(request: Request, updates: AsyncIterator[StateUpdate], cancel: asyncio.Event) -> StreamingResponse:
    """
    Events:
      {"type": "state", "node": "...", "state": {...}}   one per completed node
      {"type": "done",  "run_id": "..."}                  end of stream
    """

    async def event_generator():
        run_id = None
        async for update in updates:
            run_id = update.state.run_id
            yield _event({"type": "state", "node": update.node, "state": update.state.model_dump(mode="json")})
            if await request.is_disconnected():
                log.info("stream_client_disconnected", run_id=run_id, after_node=update.node)
                cancel.set()
        yield _event({"type": "done", "run_id": run_id})

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.post("/invoke")
async def invoke_chat(req: ChatRequest, services: Services = Depends(get_services)):
    """Run the graph to completion and return the final state."""
    state = await services.chat.generate_chat_response(req)
    log.info("invoke_complete", run_id=state.run_id, errors=len(state.metadata.errors))
    return _reply(state)


@router.post("/stream")
async def stream_chat(req: ChatRequest, request: Request, services: Services = Depends(get_services)):
    cancel = asyncio.Event()
    updates = await services.chat.stream_chat_response(req, cancel)
    return _sse(request, updates, cancel)


@router.post("/{run_id}/resume")
async def resume_chat(run_id: str, req: ResumeRequest, services: Services = Depends(get_services)):
    """Continue a run from its checkpoint, optionally with a new user message."""
    state = await services.chat.resume_chat_session(run_id, req.message, user_id=req.user_id)
    log.info("resume_complete", run_id=run_id, errors=len(state.metadata.errors))
    return _reply(state)


@router.post("/{run_id}/resume/stream")
async def resume_chat_stream(
    run_id: str,
    req: ResumeRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    cancel = asyncio.Event()
    updates = await services.chat.stream_resume_chat_session(run_id, req.message, user_id=req.user_id, cancel=cancel)
    return _sse(request, updates, cancel)
