"""
Conversation state threaded through the chat graph.

Two shapes of the same data:

  GraphState:  the LangGraph TypedDict. Each key is a channel; the
                Annotated reducers decide how a node's delta is folded in.
  AgentState:  the pydantic snapshot handed to callers, persisted in
                checkpoints and rebuilt into graph input on resume.

Nodes return plain dict deltas, e.g. {"tasks": {"rewritten_query": "..."}}.
A delta for `tasks` or `metadata` is merged field by field; a full model
instance replaces the section (used when seeding a run).
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, TypedDict

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class DocumentMetadata(BaseModel):
    source: str = "knowledge_base"
    url: str | None = None
    relevance_score: float = 0.0
    created_at: datetime | None = None


class Document(BaseModel):
    id: str
    title: str = ""
    body: str
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


class ToolResult(BaseModel):
    """Outcome of one tool invocation. `status` tags which of output/error is meaningful."""

    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: Literal["ok", "error"]
    output: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0

    @model_validator(mode="after")
    def _one_outcome(self) -> "ToolResult":
        if self.status == "ok" and self.error is not None:
            raise ValueError("successful ToolResult cannot carry an error")
        if self.status == "error" and (not self.error or self.output is not None):
            raise ValueError("failed ToolResult needs an error message and no output")
        return self

    @classmethod
    def success(cls, tool_name: str, input: dict, output: Any, execution_time_ms: float) -> "ToolResult":
        return cls(tool_name=tool_name, input=input, status="ok", output=output,
                   execution_time_ms=execution_time_ms)

    @classmethod
    def failure(cls, tool_name: str, input: dict, error: str, execution_time_ms: float) -> "ToolResult":
        return cls(tool_name=tool_name, input=input, status="error", error=error,
                   execution_time_ms=execution_time_ms)


class NodeError(BaseModel):
    node: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class QueryAnalysis(BaseModel):
    is_complex: bool = False
    should_split: bool = False
    suggested_queries: list[str] = Field(default_factory=list)
    reason: str | None = None


class Tasks(BaseModel):
    """Per-turn scratch space written by the nodes."""

    original_query: str | None = None
    rewritten_query: str | None = None
    query_analysis: QueryAnalysis | None = None

    retrieval_quality: Literal["none", "low", "high", "skipped"] | None = None
    widening_attempts: int = 0
    widening_strategy: Literal["broaden", "relax"] | None = None
    widened_query: str | None = None
    min_relevance: float | None = None
    drop_filters: bool = False

    required_tools: list[str] = Field(default_factory=list)
    tool_to_run: str | None = None
    tool_parameters: dict[str, Any] = Field(default_factory=dict)
    tool_selection_reason: str | None = None
    tool_results: list[ToolResult] = Field(default_factory=list)


class RunMetadata(BaseModel):
    start_time: datetime = Field(default_factory=utcnow)
    trace_id: str | None = None
    current_node: str | None = None
    node_timings: dict[str, float] = Field(default_factory=dict)   # node name → duration ms
    token_counts: dict[str, int] = Field(default_factory=dict)
    errors: list[NodeError] = Field(default_factory=list)
    is_final_state: bool = False


class ChatOptions(BaseModel):
    enhance_with_context: bool = True
    max_context_items: int = Field(default=5, ge=1, le=20)
    max_tokens: int = Field(default=1024, ge=1, le=4096)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    model: str | None = None
    include_source_info: bool = True
    filters: dict[str, str] = Field(default_factory=dict)   # metadata filters for retrieval


# ── Reducers ──────────────────────────────────────────────────────────────────

def append_messages(current: list[Message] | None, update: list | None) -> list[Message]:
    current = list(current or [])
    if not update:
        return current
    return current + [Message.model_validate(m) for m in update]


def merge_tasks(current: Tasks | None, update: Tasks | dict | None) -> Tasks:
    current = current or Tasks()
    if update is None:
        return current
    if isinstance(update, Tasks):
        return update
    changes = dict(update)
    new_results = changes.pop("tool_results", None) or []
    data = current.model_dump()
    data.update(changes)
    data["tool_results"] = list(current.tool_results) + list(new_results)
    return Tasks.model_validate(data)


def merge_metadata(current: RunMetadata | None, update: RunMetadata | dict | None) -> RunMetadata:
    current = current or RunMetadata()
    if update is None:
        return current
    if isinstance(update, RunMetadata):
        return update
    changes = dict(update)
    data = current.model_dump()
    data["node_timings"] = {**current.node_timings, **(changes.pop("node_timings", None) or {})}
    data["token_counts"] = {**current.token_counts, **(changes.pop("token_counts", None) or {})}
    data["errors"] = list(current.errors) + list(changes.pop("errors", None) or [])
    data.update(changes)
    return RunMetadata.model_validate(data)


class GraphState(TypedDict):
    """Shared state passed between all LangGraph nodes."""
    run_id:         str
    user_id:        str
    messages:       Annotated[list[Message], append_messages]   # append-only
    tasks:          Annotated[Tasks, merge_tasks]
    docs:           list[Document]
    generated_text: str | None                                  # set only by generate_answer
    metadata:       Annotated[RunMetadata, merge_metadata]
    options:        ChatOptions


class AgentState(BaseModel):
    """Materialized snapshot of a run."""

    run_id: str | None = None
    user_id: str = Field(min_length=1)
    messages: list[Message] = Field(default_factory=list)
    tasks: Tasks = Field(default_factory=Tasks)
    docs: list[Document] = Field(default_factory=list)
    generated_text: str | None = None
    metadata: RunMetadata = Field(default_factory=RunMetadata)
    options: ChatOptions = Field(default_factory=ChatOptions)

    @classmethod
    def from_graph_values(cls, values: dict[str, Any]) -> "AgentState":
        return cls.model_validate({k: v for k, v in values.items() if k in cls.model_fields})

    def to_graph_input(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in type(self).model_fields}

    def last_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None
