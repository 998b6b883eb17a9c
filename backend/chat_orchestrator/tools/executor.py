"""
Secure tool execution.

execute() never raises: lookup failures, invalid input, rejected intent,
timeouts and tool exceptions all come back as a failed ToolResult, so a
tool can never abort the graph run that invoked it.
"""

import asyncio
import time
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from chat_orchestrator.core.graph_state import ToolResult
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.core.telemetry import Telemetry
from chat_orchestrator.tools.registry import ToolContext, ToolRegistry, validate_parameters

log = get_logger(__name__)

_TRUNCATION_MARKER = " …[truncated]"

# Tools at or above this level only run when the user's request matches their triggers
INTENT_CHECK_RISK_LEVEL = 3


class SecureToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        default_timeout_seconds: float = 5.0,
        max_output_chars: int = 8_000,
        telemetry: Telemetry | None = None,
    ):
        self._registry = registry
        self._default_timeout = default_timeout_seconds
        self._max_output_chars = max_output_chars
        self._telemetry = telemetry or Telemetry()

    def default_timeout_for(self, risk_level: int) -> float:
        # One second less per level above 1, never below min(default, 1s)
        floor = min(self._default_timeout, 1.0)
        return max(self._default_timeout - (risk_level - 1), floor)

    async def execute(self, tool_name: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        start = time.perf_counter()
        params = dict(params or {})

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        def fail(message: str, outcome: str) -> ToolResult:
            log.warning("tool_failed", tool_name=tool_name, outcome=outcome, error=message,
                        run_id=context.run_id)
            self._telemetry.increment("tool.executions", tool=tool_name, outcome=outcome)
            return ToolResult.failure(tool_name, params, message, elapsed())

        definition = self._registry.get(tool_name)
        if definition is None:
            return fail(f"Tool '{tool_name}' is not registered", "not_found")

        params = definition.with_defaults(params)
        problems = validate_parameters(definition, params)
        if problems:
            return fail(f"Invalid input for tool '{tool_name}': {'; '.join(problems)}", "invalid_input")

        if definition.risk_level >= INTENT_CHECK_RISK_LEVEL and not definition.trigger_hits(context.query or ""):
            return fail(f"Tool '{tool_name}' was not requested by the query", "intent_rejected")

        timeout = definition.timeout_seconds or self.default_timeout_for(definition.risk_level)
        try:
            raw_output = await asyncio.wait_for(definition.execute(params, context), timeout=timeout)
        except asyncio.TimeoutError:
            return fail(f"Tool '{tool_name}' timed out after {timeout:g}s", "timeout")
        except Exception as exc:
            return fail(f"Tool '{tool_name}' failed: {exc}", "error")

        try:
            output = self._clean_output(raw_output)
        except (PydanticSerializationError, TypeError, ValueError) as exc:
            return fail(f"Tool '{tool_name}' returned unserializable output: {exc}", "bad_output")

        duration = elapsed()
        log.info("tool_executed", tool_name=tool_name, duration_ms=round(duration, 2), run_id=context.run_id)
        self._telemetry.increment("tool.executions", tool=tool_name, outcome="ok")
        self._telemetry.timing("tool.duration", duration, tool=tool_name)
        return ToolResult.success(tool_name, params, output, duration)

    def _clean_output(self, output: Any) -> Any:
        output = to_jsonable_python(output)
        if isinstance(output, str) and len(output) > self._max_output_chars:
            return output[: self._max_output_chars] + _TRUNCATION_MARKER
        return output
