"""
Node wrapper applied to every step of the chat graph.

wrap_node() turns `async fn(state: AgentState, context) -> dict` into the
`async fn(values) -> dict` LangGraph expects, and adds:

  - a node_timings entry for the node, whether it succeeded or not
  - metadata.current_node, so streamed snapshots say which node produced them
  - containment: an exception becomes one NodeError entry plus the node's
    fallback delta (if it has one); nothing is re-raised
  - one structured log event and metric per invocation
"""

import time
from typing import Any, Awaitable, Callable

from chat_orchestrator.core.graph_state import AgentState, GraphState, NodeError
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.core.telemetry import Telemetry

log = get_logger(__name__)

NodeFunction = Callable[[AgentState, Any], Awaitable[dict[str, Any] | None]]
FallbackFunction = Callable[[AgentState], dict[str, Any]]


def wrap_node(
    name: str,
    fn: NodeFunction,
    context: Any,
    *,
    fallback: FallbackFunction | None = None,
    telemetry: Telemetry | None = None,
) -> Callable[[GraphState], Awaitable[dict[str, Any]]]:
    telemetry = telemetry or Telemetry()

    async def node(values: GraphState) -> dict[str, Any]:
        state = AgentState.from_graph_values(values)
        start = time.perf_counter()
        try:
            delta = dict(await fn(state, context) or {})
            failed = None
        except Exception as exc:
            failed = exc
            delta = dict(fallback(state)) if fallback else {}
        duration_ms = (time.perf_counter() - start) * 1000

        metadata = dict(delta.pop("metadata", None) or {})
        metadata["node_timings"] = {**(metadata.get("node_timings") or {}), name: duration_ms}
        metadata["current_node"] = name

        if failed is not None:
            message = str(failed) or type(failed).__name__
            metadata["errors"] = list(metadata.get("errors") or []) + [NodeError(node=name, message=message)]
            log.error(
                "node_failed",
                node=name,
                duration_ms=round(duration_ms, 2),
                error=message,
                error_type=type(failed).__name__,
            )
            telemetry.increment("node.invocations", node=name, outcome="error")
        else:
            log.info("node_completed", node=name, duration_ms=round(duration_ms, 2))
            telemetry.increment("node.invocations", node=name, outcome="ok")
        telemetry.timing("node.duration", duration_ms, node=name)

        delta["metadata"] = metadata
        return delta

    node.__name__ = name
    return node
