"""
Chat graph: topology and execution.

    START → split_rewrite → retrieve → (route_after_retrieve)
                               ↑          ├─ widen  → dynamic_widen ─┐
                               └──────────┼──────────────────────────┘
                                          ├─ tool   → tool_router → (route_after_tool)
                                          │                ├─ run_tool → run_tool → generate_answer
                                          │                └─ answer   → generate_answer
                                          └─ answer → generate_answer → END

ChatGraphExecutor owns the single authoritative state of a run. It streams
one StateUpdate per completed node, writes a checkpoint after each node, and
checks the caller's cancellation event between nodes. The graph itself is
compiled without a LangGraph checkpointer: persistence goes through the
encrypted CheckpointStore only.
"""

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator

import structlog
from langgraph.graph import END, START, StateGraph

from chat_orchestrator.agents import nodes
from chat_orchestrator.agents.nodes import APOLOGY_MESSAGE, NodeContext
from chat_orchestrator.agents.wrapper import wrap_node
from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.errors import CheckpointStoreError, InputValidationError
from chat_orchestrator.core.graph_state import (
    AgentState,
    GraphState,
    Message,
    NodeError,
    RunMetadata,
    Tasks,
    merge_metadata,
)
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.core.telemetry import Telemetry
from chat_orchestrator.tools.executor import SecureToolExecutor
from chat_orchestrator.tools.registry import ToolRegistry

log = get_logger(__name__)

# Worst path is 7 node steps; anything beyond this is a routing bug
_RECURSION_LIMIT = 25


def build_chat_graph(context: NodeContext, telemetry: Telemetry | None = None):
    """
    Compile and return the chat graph.
    The compiled graph holds no run state and is built once per executor.
    """
    telemetry = telemetry or Telemetry()
    workflow = StateGraph(GraphState)

    # Nodes
    workflow.add_node("split_rewrite", wrap_node("split_rewrite", nodes.split_rewrite, context, telemetry=telemetry))
    workflow.add_node("retrieve", wrap_node("retrieve", nodes.retrieve, context, telemetry=telemetry))
    workflow.add_node(
        "dynamic_widen",
        wrap_node("dynamic_widen", nodes.dynamic_widen, context, fallback=nodes.widen_fallback, telemetry=telemetry),
    )
    workflow.add_node("tool_router", wrap_node("tool_router", nodes.tool_router, context, telemetry=telemetry))
    workflow.add_node("run_tool", wrap_node("run_tool", nodes.run_tool, context, telemetry=telemetry))
    workflow.add_node(
        "generate_answer",
        wrap_node("generate_answer", nodes.generate_answer, context, fallback=nodes.answer_fallback, telemetry=telemetry),
    )

    # Edges
    workflow.add_edge(START, "split_rewrite")
    workflow.add_edge("split_rewrite", "retrieve")
    workflow.add_conditional_edges(
        "retrieve",
        nodes.route_after_retrieve,
        {"widen": "dynamic_widen", "tool": "tool_router", "answer": "generate_answer"},
    )
    workflow.add_edge("dynamic_widen", "retrieve")   # second pass never widens again
    workflow.add_conditional_edges(
        "tool_router",
        nodes.route_after_tool,
        {"run_tool": "run_tool", "answer": "generate_answer"},
    )
    workflow.add_edge("run_tool", "generate_answer")
    workflow.add_edge("generate_answer", END)

    return workflow.compile()


@dataclass
class StateUpdate:
    """One streamed snapshot: the full state after `node` completed."""
    node: str
    state: AgentState

    @property
    def is_final(self) -> bool:
        return self.state.metadata.is_final_state


class ChatGraphExecutor:
    def __init__(
        self,
        store: CheckpointStore,
        registry: ToolRegistry,
        llm,
        search,
        *,
        tool_executor: SecureToolExecutor | None = None,
        telemetry: Telemetry | None = None,
    ):
        self._store = store
        self._telemetry = telemetry or Telemetry()
        context = NodeContext(
            llm=llm,
            search=search,
            registry=registry,
            tool_executor=tool_executor or SecureToolExecutor(registry, telemetry=self._telemetry),
        )
        self._graph = build_chat_graph(context, self._telemetry)

    # ── Public API ────────────────────────────────────────────────────────────

    async def claim_run(self, run_id: str | None, user_id: str | None) -> bool:
        """
        Raise InputValidationError when `run_id` already belongs to another user.

        The owner is read from the clear-text column, so a checkpoint that no
        longer decrypts still protects its run id. Returns False when the owner
        cannot be read; that invocation then runs without writing checkpoints.
        """
        if not run_id or not user_id:
            return True
        try:
            owner = await self._store.owner(run_id)
        except CheckpointStoreError as exc:
            log.warning("run_owner_unavailable", run_id=run_id, error=str(exc), mode="memory_only")
            return False
        if owner is not None and owner != user_id:
            log.warning("run_owner_mismatch", run_id=run_id)
            raise InputValidationError(f"Run {run_id} does not belong to this user")
        return True

    async def stream(
        self,
        initial_state: AgentState,
        run_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StateUpdate]:
        run_id = run_id or initial_state.run_id or str(uuid.uuid4())
        persist = await self.claim_run(run_id, initial_state.user_id)
        state = _fresh_turn(initial_state, run_id, initial_state.messages)
        async for update in self._execute(state, cancel, persist):
            yield update

    async def run(
        self,
        initial_state: AgentState,
        run_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AgentState:
        return await final_state(self.stream(initial_state, run_id, cancel))

    async def resume_stream(
        self,
        run_id: str,
        new_message: Message | None = None,
        *,
        user_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StateUpdate]:
        persist = await self.claim_run(run_id, user_id)
        state = await self._load_for_resume(run_id, new_message, user_id)
        async for update in self._execute(state, cancel, persist):
            yield update

    async def resume(
        self,
        run_id: str,
        new_message: Message | None = None,
        *,
        user_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AgentState:
        return await final_state(self.resume_stream(run_id, new_message, user_id=user_id, cancel=cancel))

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _load_for_resume(self, run_id: str, new_message: Message | None, user_id: str | None) -> AgentState:
        try:
            checkpoint = await self._store.get(run_id)
        except CheckpointStoreError as exc:
            log.warning("resume_checkpoint_unavailable", run_id=run_id, error=str(exc))
            checkpoint = None

        if checkpoint is None:
            # An ownerless run would be out of reach of per-user deletion
            if not user_id:
                raise InputValidationError(f"Run {run_id} has no checkpoint; user_id is required to start it")
            log.info("resume_cold_start", run_id=run_id)
            base = AgentState(run_id=run_id, user_id=user_id)
        else:
            base = checkpoint.state
            log.info("resume_from_checkpoint", run_id=run_id, version=checkpoint.version)

        messages = list(base.messages) + ([new_message] if new_message else [])
        return _fresh_turn(base, run_id, messages)

    async def _persist(self, state: AgentState, enabled: bool) -> bool:
        """Write a checkpoint. Returns False once writes are off for this invocation."""
        if not enabled:
            return False
        try:
            await self._store.put(state.run_id, state)
        except CheckpointStoreError as exc:
            log.warning("checkpoint_write_failed", run_id=state.run_id, error=str(exc), mode="memory_only")
            self._telemetry.increment("checkpoint.write_failures")
            return False
        return True

    async def _execute(
        self, state: AgentState, cancel: asyncio.Event | None, persist: bool = True
    ) -> AsyncIterator[StateUpdate]:
        structlog.contextvars.bind_contextvars(
            run_id=state.run_id, user_id=state.user_id, trace_id=state.metadata.trace_id
        )
        try:
            async for update in self._run_graph(state, cancel, persist):
                yield update
        finally:
            structlog.contextvars.unbind_contextvars("run_id", "user_id", "trace_id")

    async def _run_graph(
        self, state: AgentState, cancel: asyncio.Event | None, persist: bool
    ) -> AsyncIterator[StateUpdate]:
        start = time.perf_counter()
        last = state

        log.info("run_started", messages=len(state.messages))
        try:
            async with aclosing(
                self._graph.astream(
                    state.to_graph_input(),
                    config={"recursion_limit": _RECURSION_LIMIT},
                    stream_mode="values",
                )
            ) as snapshots:
                async for values in snapshots:
                    snapshot = AgentState.from_graph_values(values)
                    if snapshot.metadata.current_node is None:
                        continue   # the input echo, before any node ran
                    last = snapshot
                    persist = await self._persist(last, persist)
                    yield StateUpdate(node=last.metadata.current_node, state=last)

                    if cancel is not None and cancel.is_set() and not last.metadata.is_final_state:
                        log.info("run_cancelled", after_node=last.metadata.current_node)
                        self._telemetry.increment("run.cancelled")
                        return
        except Exception as exc:
            log.error("graph_failed", error=str(exc), error_type=type(exc).__name__)
            last = _apology(last, exc)
            await self._persist(last, persist)
            yield StateUpdate(node="executor", state=last)
            return

        if not last.metadata.is_final_state:
            last = _apology(last, RuntimeError("run ended before generate_answer"))
            persist = await self._persist(last, persist)
            yield StateUpdate(node="executor", state=last)

        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "run_completed",
            duration_ms=round(duration_ms, 2),
            errors=len(last.metadata.errors),
            persisted=persist,
        )
        self._telemetry.timing("run.duration", duration_ms)


def _fresh_turn(base: AgentState, run_id: str, messages: list[Message]) -> AgentState:
    """Carry identity, history and options forward; reset everything scoped to one turn."""
    return AgentState(
        run_id=run_id,
        user_id=base.user_id,
        messages=messages,
        options=base.options,
        tasks=Tasks(),
        docs=[],
        generated_text=None,
        metadata=RunMetadata(trace_id=uuid.uuid4().hex),
    )


def _apology(state: AgentState, exc: Exception) -> AgentState:
    metadata = merge_metadata(
        state.metadata,
        {"errors": [NodeError(node="executor", message=str(exc) or type(exc).__name__)], "is_final_state": True},
    )
    return state.model_copy(
        update={
            "generated_text": APOLOGY_MESSAGE,
            "messages": [*state.messages, Message(role="assistant", content=APOLOGY_MESSAGE)],
            "metadata": metadata,
        }
    )


async def final_state(updates: AsyncIterator[StateUpdate]) -> AgentState:
    """Drain a stream of updates and return the last state."""
    last: AgentState | None = None
    async for update in updates:
        last = update.state
    return last
