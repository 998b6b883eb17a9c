"""
Tool registry.

A ToolDefinition is a named async callable plus everything needed to choose
it and call it safely: a typed parameter list, a category, trigger keywords
used for intent detection, and example requests that feed the
natural-language catalog shown to the router model. A risk level (1-5)
shortens the default timeout and, from level 3, requires the triggering
request to name the tool.

Tools written as LangChain `@tool` functions are registered through
ToolDefinition.from_langchain(), which derives the parameter list from the
tool's input schema.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Literal

from langchain_core.tools import BaseTool
from pydantic import BaseModel

from chat_orchestrator.core.errors import ToolValidationError
from chat_orchestrator.core.graph_state import Document
from chat_orchestrator.core.logging import get_logger

log = get_logger(__name__)

ParameterType = Literal["string", "number", "boolean", "object", "array"]

_JSON_SCHEMA_TYPES: dict[str, ParameterType] = {
    "string": "string",
    "number": "number",
    "integer": "number",
    "boolean": "boolean",
    "object": "object",
    "array": "array",
}

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string":  lambda v: isinstance(v, str),
    "number":  lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object":  lambda v: isinstance(v, dict),
    "array":   lambda v: isinstance(v, (list, tuple)),
}

# Minimum trigger hits across retrieved documents before they imply a tool
_DOCUMENT_TRIGGER_THRESHOLD = 2

MIN_RISK_LEVEL = 1
MAX_RISK_LEVEL = 5


class ToolCategory(str, Enum):
    SEARCH = "search"
    CALCULATION = "calculation"
    UTILITY = "utility"
    EXTERNAL_DATA = "external_data"


class ToolParameter(BaseModel):
    name: str
    type: ParameterType
    required: bool = True
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class ToolContext:
    """Who a tool is running for. Passed to every execute() call."""
    run_id: str
    user_id: str
    trace_id: str | None = None
    # The user request that led to the call; checked against high-risk tools' triggers
    query: str | None = None


ToolCallable = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]
ToolValidator = Callable[[dict[str, Any]], list[str]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    category: ToolCategory
    execute: ToolCallable
    parameters: list[ToolParameter] = field(default_factory=list)
    examples: list[str] = field(default_factory=list)
    triggers: tuple[str, ...] = ()
    # Returns a list of problems; replaces the type/required checks entirely when set
    validator: ToolValidator | None = None
    timeout_seconds: float | None = None
    # 1 (read-only, harmless) .. 5 (side effects outside this service)
    risk_level: int = 1

    def __post_init__(self):
        if not MIN_RISK_LEVEL <= self.risk_level <= MAX_RISK_LEVEL:
            raise ValueError(f"risk_level must be between {MIN_RISK_LEVEL} and {MAX_RISK_LEVEL}, got {self.risk_level}")
        self._trigger_pattern = (
            re.compile(r"\b(?:" + "|".join(re.escape(t) for t in self.triggers) + r")\b", re.I)
            if self.triggers
            else None
        )

    def trigger_hits(self, text: str) -> int:
        if self._trigger_pattern is None or not text:
            return 0
        return len(self._trigger_pattern.findall(text))

    def with_defaults(self, params: dict[str, Any]) -> dict[str, Any]:
        merged = dict(params)
        for param in self.parameters:
            if param.name not in merged and param.default is not None:
                merged[param.name] = param.default
        return merged

    @classmethod
    def from_langchain(
        cls,
        tool: BaseTool,
        *,
        category: ToolCategory,
        examples: Iterable[str] = (),
        triggers: Iterable[str] = (),
        timeout_seconds: float | None = None,
        risk_level: int = 1,
    ) -> "ToolDefinition":
        schema = tool.get_input_schema().model_json_schema()
        required = set(schema.get("required", []))
        parameters = [
            ToolParameter(
                name=name,
                type=_schema_type(prop),
                required=name in required,
                default=prop.get("default"),
                description=prop.get("description", ""),
            )
            for name, prop in schema.get("properties", {}).items()
        ]

        async def _execute(params: dict[str, Any], context: ToolContext) -> Any:
            return await tool.ainvoke(params)

        description = (tool.description or "").strip()
        return cls(
            name=tool.name,
            description=description.splitlines()[0] if description else tool.name,
            category=category,
            execute=_execute,
            parameters=parameters,
            examples=list(examples),
            triggers=tuple(triggers),
            timeout_seconds=timeout_seconds,
            risk_level=risk_level,
        )


def _schema_type(prop: dict[str, Any]) -> ParameterType:
    if "type" in prop:
        return _JSON_SCHEMA_TYPES.get(prop["type"], "string")
    for option in prop.get("anyOf", []):
        if option.get("type") not in (None, "null"):
            return _JSON_SCHEMA_TYPES.get(option["type"], "string")
    return "string"


def validate_parameters(definition: ToolDefinition, params: dict[str, Any]) -> list[str]:
    """Return the problems with `params` for `definition`; empty when valid."""
    if definition.validator is not None:
        return list(definition.validator(params))

    problems = []
    for param in definition.parameters:
        if param.name not in params or params[param.name] is None:
            if param.required:
                problems.append(f"missing required parameter '{param.name}'")
            continue
        if not _TYPE_CHECKS[param.type](params[param.name]):
            problems.append(
                f"parameter '{param.name}' must be of type {param.type}, "
                f"got {type(params[param.name]).__name__}"
            )
    return problems


class ToolRegistry:
    def __init__(self, definitions: Iterable[ToolDefinition] = ()):
        self._tools: dict[str, ToolDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            log.warning("tool_replaced", tool_name=definition.name)
        self._tools[definition.name] = definition
        log.debug("tool_registered", tool_name=definition.name, category=definition.category.value)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def list_by_category(self, category: ToolCategory) -> list[ToolDefinition]:
        return [tool for tool in self._tools.values() if tool.category == category]

    def names(self) -> list[str]:
        return list(self._tools)

    def validate(self, name: str, params: dict[str, Any]) -> None:
        definition = self._tools.get(name)
        if definition is None:
            raise ToolValidationError(name, ["tool is not registered"])
        problems = validate_parameters(definition, params)
        if problems:
            raise ToolValidationError(name, problems)

    def match_intent(self, query: str, docs: Iterable[Document] = ()) -> list[str]:
        """
        Names of tools whose triggers appear in the query, or appear repeatedly
        across the retrieved documents. Registration order is preserved.
        """
        bodies = [doc.body for doc in docs]
        matched = []
        for name, tool in self._tools.items():
            if tool.trigger_hits(query):
                matched.append(name)
            elif bodies and sum(tool.trigger_hits(body) for body in bodies) >= _DOCUMENT_TRIGGER_THRESHOLD:
                matched.append(name)
        return matched

    def describe_tools(self, names: Iterable[str] | None = None) -> str:
        """Render a plain-text catalog of the given tools (all tools by default)."""
        selected = [self._tools[n] for n in names if n in self._tools] if names is not None else list(self._tools.values())
        blocks = []
        for tool in selected:
            lines = [f"- {tool.name} ({tool.category.value}): {tool.description}"]
            if tool.parameters:
                params = ", ".join(
                    f"{p.name} ({p.type}, {'required' if p.required else 'optional'})"
                    + (f": {p.description}" if p.description else "")
                    for p in tool.parameters
                )
                lines.append(f"  Parameters: {params}")
            if tool.examples:
                lines.append("  Examples: " + "; ".join(f'"{e}"' for e in tool.examples))
            blocks.append("\n".join(lines))
        return "\n".join(blocks)
