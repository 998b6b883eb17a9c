"""
Chat graph node implementations and routing predicates.

Graph topology:

    START → split_rewrite → retrieve → (route_after_retrieve)
                               ↑            │ widen   → dynamic_widen → retrieve
                               └────────────┤ tool    → tool_router → (route_after_tool)
                                            │                            │ run_tool → run_tool → generate_answer
                                            │                            └ answer   → generate_answer
                                            └ answer  → generate_answer → END

Every node is `async fn(state: AgentState, ctx: NodeContext) -> dict` and
returns only the delta it wants applied; GraphState reducers fold it in.
Nodes are wrapped by wrap_node(), which records timings and absorbs errors.

Routing predicates read the graph values and nothing else, so the same
state always takes the same branch.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from chat_orchestrator.core import prompts
from chat_orchestrator.core.graph_state import (
    AgentState,
    ChatOptions,
    Document,
    Message,
    QueryAnalysis,
)
from chat_orchestrator.core.llm import FALLBACK_RESPONSE, extract_json
from chat_orchestrator.core.logging import get_logger
from chat_orchestrator.middleware.sanitize import filter_output
from chat_orchestrator.rag.pipeline import SearchOptions
from chat_orchestrator.tools.executor import SecureToolExecutor
from chat_orchestrator.tools.registry import ToolContext, ToolDefinition, ToolRegistry

log = get_logger(__name__)

APOLOGY_MESSAGE = "I'm sorry, but I encountered an issue while generating a response. Please try again."

_AMBIGUOUS_PRONOUNS = re.compile(r"\b(it|this|that|they|these|those)\b", re.I)
_REWRITE_CONTEXT_MESSAGES = 6

BASE_MIN_RELEVANCE = 0.5
MIN_RELEVANCE_FLOOR = 0.2
_RELEVANCE_STEP = 0.1
LOW_RELEVANCE_THRESHOLD = 0.4


@dataclass
class NodeContext:
    """Collaborators shared by every node of one compiled graph."""
    llm: Any            # LLMClient interface: call / rewrite_query / analyze_complexity
    search: Any         # search(user_id, query, options) -> list[Document]
    registry: ToolRegistry
    tool_executor: SecureToolExecutor


# ── Helpers ───────────────────────────────────────────────────────────────────

def count_tokens(text: str | None) -> int:
    """Rough token estimate (≈4 characters per token) for budgeting and metrics."""
    return math.ceil(len(text) / 4) if text else 0


def needs_rewrite(query: str, analysis: QueryAnalysis) -> bool:
    return query.count("?") > 1 or bool(_AMBIGUOUS_PRONOUNS.search(query)) or analysis.is_complex


def relaxed_min_relevance(widening_attempts: int) -> float:
    return max(BASE_MIN_RELEVANCE - widening_attempts * _RELEVANCE_STEP, MIN_RELEVANCE_FLOOR)


def rank_documents(docs: list[Document], min_relevance: float, limit: int) -> list[Document]:
    kept = [doc for doc in docs if doc.metadata.relevance_score >= min_relevance]
    kept.sort(key=lambda doc: doc.metadata.relevance_score, reverse=True)
    return kept[:limit]


def assess_retrieval_quality(docs: list[Document]) -> Literal["none", "low", "high"]:
    if not docs:
        return "none"
    average = sum(doc.metadata.relevance_score for doc in docs) / len(docs)
    return "low" if average < LOW_RELEVANCE_THRESHOLD else "high"


def format_docs_for_prompt(docs: list[Document], include_source_info: bool) -> str:
    blocks = []
    for i, doc in enumerate(docs, start=1):
        header = f"[{i}] {doc.title}".rstrip()
        if include_source_info:
            source = doc.metadata.url or doc.metadata.source
            header += f" (source: {source}, relevance: {doc.metadata.relevance_score:.2f})"
        blocks.append(f"{header}\n{doc.body}")
    return "\n\n".join(blocks)


def format_tool_results_for_prompt(state: AgentState) -> str:
    lines = []
    for result in state.tasks.tool_results:
        if result.status == "ok":
            lines.append(f"- {result.tool_name}({result.input}) returned: {result.output}")
        else:
            lines.append(f"- {result.tool_name}({result.input}) failed: {result.error}")
    return "\n".join(lines)


def current_query(state: AgentState) -> str:
    return state.tasks.rewritten_query or state.tasks.original_query or ""


# ── split_rewrite ─────────────────────────────────────────────────────────────

async def split_rewrite(state: AgentState, ctx: NodeContext) -> dict:
    """
    Normalize the latest user query. Rewrites it into a standalone question
    when it leans on earlier turns or is judged complex.
    """
    message = state.last_user_message()
    if message is None:
        log.warning("no_user_message", user_id=state.user_id)
        return {"tasks": {"original_query": "", "rewritten_query": ""}}

    query = message.content.strip()
    analysis = await ctx.llm.analyze_complexity(query)

    rewritten = query
    if needs_rewrite(query, analysis):
        history = [m for m in state.messages if m.role != "system" and m is not message]
        rewritten = await ctx.llm.rewrite_query(query, history[-_REWRITE_CONTEXT_MESSAGES:])

    log.debug("query_normalized", rewritten=rewritten != query, is_complex=analysis.is_complex)
    return {
        "tasks": {
            "original_query": query,
            "rewritten_query": rewritten,
            "query_analysis": analysis,
        },
        "metadata": {
            "token_counts": {
                "original_query": count_tokens(query),
                "rewritten_query": count_tokens(rewritten),
            }
        },
    }


# ── retrieve ──────────────────────────────────────────────────────────────────

async def retrieve(state: AgentState, ctx: NodeContext) -> dict:
    tasks = state.tasks
    if not state.options.enhance_with_context:
        return {
            "docs": [],
            "tasks": {
                "retrieval_quality": "skipped",
                "required_tools": ctx.registry.match_intent(tasks.original_query or ""),
            },
        }

    query = tasks.widened_query or current_query(state)
    if not query:
        raise ValueError("No query available for retrieval")

    min_relevance = tasks.min_relevance if tasks.min_relevance is not None else relaxed_min_relevance(tasks.widening_attempts)
    filters = {} if tasks.drop_filters else state.options.filters
    docs = await ctx.search.search(
        state.user_id,
        query,
        SearchOptions(limit=state.options.max_context_items, min_relevance=min_relevance, filters=filters),
    )
    docs = rank_documents(docs, min_relevance, state.options.max_context_items)
    quality = assess_retrieval_quality(docs)

    log.debug("retrieve_done", returned=len(docs), quality=quality, min_relevance=min_relevance)
    return {
        "docs": docs,
        "tasks": {
            "retrieval_quality": quality,
            "required_tools": ctx.registry.match_intent(tasks.original_query or query, docs),
        },
        "metadata": {"token_counts": {"retrieved_docs": sum(count_tokens(d.body) for d in docs)}},
    }


def route_after_retrieve(state: Mapping[str, Any]) -> Literal["widen", "tool", "answer"]:
    """
    widen  : first pass came back empty or weak (at most one widening per run)
    tool   : a registered tool's triggers matched
    answer : otherwise
    """
    tasks = state["tasks"]
    if (
        state["options"].enhance_with_context
        and tasks.widening_attempts == 0
        and assess_retrieval_quality(state.get("docs") or []) != "high"
    ):
        return "widen"
    if tasks.required_tools:
        return "tool"
    return "answer"


# ── dynamic_widen ─────────────────────────────────────────────────────────────

async def dynamic_widen(state: AgentState, ctx: NodeContext) -> dict:
    """Relax retrieval for one more pass: broader query, lowest relevance floor, no filters."""
    query = current_query(state)
    # Through the graph only "relax" occurs: first-pass docs already clear
    # BASE_MIN_RELEVANCE > LOW_RELEVANCE_THRESHOLD, so any kept doc assesses as high.
    # "broaden" needs a retrieve that ran with a lower tasks.min_relevance.
    strategy = "broaden" if state.docs else "relax"

    widened = query
    if query:
        outcome = "only weak matches" if state.docs else "no results"
        reply = await ctx.llm.call(
            [Message(role="user", content=prompts.BROADEN_QUERY_PROMPT.format(outcome=outcome, query=query))],
            ChatOptions(temperature=0.2, max_tokens=128),
        )
        candidate = reply.strip().strip("\"'").strip()
        if reply != FALLBACK_RESPONSE and candidate and "\n" not in candidate:
            widened = candidate

    log.info("retrieval_widened", strategy=strategy, attempt=state.tasks.widening_attempts + 1)
    return {
        "tasks": {
            "widening_attempts": state.tasks.widening_attempts + 1,
            "widening_strategy": strategy,
            "widened_query": widened,
            "min_relevance": MIN_RELEVANCE_FLOOR,
            "drop_filters": True,
        }
    }


def widen_fallback(state: AgentState) -> dict:
    # The attempt must be counted even on failure or routing would widen again
    return {"tasks": {"widening_attempts": state.tasks.widening_attempts + 1}}


# ── tool_router ───────────────────────────────────────────────────────────────

async def _select_tool(ctx: NodeContext, query: str, candidates: list[str]) -> tuple[str, str]:
    prompt = prompts.SELECT_TOOL_PROMPT.format(catalog=ctx.registry.describe_tools(candidates), query=query)
    reply = await ctx.llm.call([Message(role="user", content=prompt)], ChatOptions(temperature=0.0, max_tokens=200))
    parsed = extract_json(reply) if reply != FALLBACK_RESPONSE else None
    if parsed and parsed.get("tool_name") in candidates:
        return parsed["tool_name"], str(parsed.get("reason") or "selected by model")
    return candidates[0], "fallback to first candidate"


async def _extract_parameters(ctx: NodeContext, query: str, definition: ToolDefinition) -> dict[str, Any]:
    if not definition.parameters:
        return {}

    prompt = prompts.EXTRACT_PARAMETERS_PROMPT.format(
        catalog=ctx.registry.describe_tools([definition.name]), query=query
    )
    reply = await ctx.llm.call([Message(role="user", content=prompt)], ChatOptions(temperature=0.0, max_tokens=200))
    parsed = (extract_json(reply) if reply != FALLBACK_RESPONSE else None) or {}

    declared = {p.name for p in definition.parameters}
    params = {key: value for key, value in parsed.items() if key in declared}

    first_text_param = next(
        (p for p in definition.parameters if p.required and p.type == "string"), None
    )
    if first_text_param is not None and first_text_param.name not in params:
        params[first_text_param.name] = query
    return params


async def tool_router(state: AgentState, ctx: NodeContext) -> dict:
    """Pick which of the indicated tools to run and with what arguments."""
    candidates = [name for name in state.tasks.required_tools if ctx.registry.has(name)]
    if not candidates:
        return {"tasks": {"tool_to_run": None, "tool_selection_reason": "no registered tool matched"}}

    query = current_query(state)
    if len(candidates) == 1:
        name, reason = candidates[0], "only candidate"
    else:
        name, reason = await _select_tool(ctx, query, candidates)

    params = await _extract_parameters(ctx, query, ctx.registry.get(name))
    log.info("tool_selected", tool_name=name, candidates=candidates, reason=reason)
    return {"tasks": {"tool_to_run": name, "tool_parameters": params, "tool_selection_reason": reason}}


def route_after_tool(state: Mapping[str, Any]) -> Literal["run_tool", "answer"]:
    return "run_tool" if state["tasks"].tool_to_run else "answer"


# ── run_tool ──────────────────────────────────────────────────────────────────

async def run_tool(state: AgentState, ctx: NodeContext) -> dict:
    name = state.tasks.tool_to_run
    if not name:
        log.warning("run_tool_without_selection")
        return {}

    result = await ctx.tool_executor.execute(
        name,
        state.tasks.tool_parameters,
        ToolContext(
            run_id=state.run_id or "",
            user_id=state.user_id,
            trace_id=state.metadata.trace_id,
            query=state.tasks.original_query or current_query(state),
        ),
    )
    return {"tasks": {"tool_results": [result]}}


# ── generate_answer ───────────────────────────────────────────────────────────

def build_system_prompt(state: AgentState) -> str:
    system = prompts.ASSISTANT_SYSTEM_PROMPT
    if state.docs:
        system += prompts.CONTEXT_SECTION.format(
            docs=format_docs_for_prompt(state.docs, state.options.include_source_info)
        )
    if state.tasks.tool_results:
        system += prompts.TOOL_RESULTS_SECTION.format(results=format_tool_results_for_prompt(state))
    return system


async def generate_answer(state: AgentState, ctx: NodeContext) -> dict:
    """Terminal node. Synthesizes the reply from messages, documents and tool results."""
    system = build_system_prompt(state)
    conversation = [m for m in state.messages if m.role != "system"]
    text = await ctx.llm.call([Message(role="system", content=system), *conversation], state.options)
    text = filter_output(text.strip()) or APOLOGY_MESSAGE

    return {
        "generated_text": text,
        "messages": [Message(role="assistant", content=text)],
        "metadata": {
            "is_final_state": True,
            "token_counts": {"prompt": count_tokens(system), "completion": count_tokens(text)},
        },
    }


def answer_fallback(state: AgentState) -> dict:
    return {
        "generated_text": APOLOGY_MESSAGE,
        "messages": [Message(role="assistant", content=APOLOGY_MESSAGE)],
        "metadata": {"is_final_state": True},
    }
