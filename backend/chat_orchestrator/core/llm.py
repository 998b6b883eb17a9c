"""
LLM access for the chat graph.

get_chat_model() returns the appropriate LangChain chat model based on
LITELLM_MODE:

  proxy   → ChatOpenAI pointed at the LiteLLM proxy container (dev default)
  library → ChatLiteLLM using the litellm library in-process (production)

LLMClient wraps it with the contract the graph relies on: every call is
raced against a hard timeout, and an unreachable or misbehaving model
yields FALLBACK_RESPONSE instead of an exception. No retries happen here;
LiteLLM owns retry and provider fallback.
"""

import asyncio
import json
import re
from typing import Any, Callable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from chat_orchestrator.core import prompts
from chat_orchestrator.core.config import get_settings
from chat_orchestrator.core.graph_state import ChatOptions, Message, QueryAnalysis
from chat_orchestrator.core.logging import get_logger

log = get_logger(__name__)

FALLBACK_RESPONSE = "I'm sorry, but I couldn't process that just now – please try again."

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.S)
_JSON_OBJECT = re.compile(r"\{.*\}", re.S)


def get_chat_model(
    *,
    model: str | None = None,
    streaming: bool = False,
    temperature: float = 0.3,
    max_tokens: int | None = None,
) -> BaseChatModel:
    """
    Return a configured chat model.

    Args:
        model:       Override the model name. Defaults to settings.primary_model.
        streaming:   Enable token-by-token streaming.
        temperature: Sampling temperature.
        max_tokens:  Completion token cap.
    """
    settings = get_settings()
    model_name = model or settings.primary_model

    if settings.litellm_mode == "library":
        from langchain_community.chat_models import ChatLiteLLM

        return ChatLiteLLM(
            model=model_name,
            streaming=streaming,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    else:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            base_url=settings.litellm_base_url,
            api_key=settings.litellm_master_key,
            model=model_name,
            streaming=streaming,
            temperature=temperature,
            max_tokens=max_tokens,
        )


def to_langchain_messages(messages: list[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def extract_json(text: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of a model response, fenced or bare."""
    fenced = _FENCED_JSON.search(text)
    candidate = fenced.group(1) if fenced else text
    match = _JSON_OBJECT.search(candidate)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class LLMClient:
    def __init__(
        self,
        model_factory: Callable[..., BaseChatModel] = get_chat_model,
        *,
        timeout_seconds: float | None = None,
        fast_model: str | None = None,
    ):
        settings = get_settings()
        self._model_factory = model_factory
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.llm_timeout_seconds
        self._fast_model = fast_model or settings.fast_model

    async def call(self, messages: list[Message], options: ChatOptions | None = None) -> str:
        """Return the model's reply text, or FALLBACK_RESPONSE if it cannot be obtained."""
        options = options or ChatOptions()
        try:
            llm = self._model_factory(
                model=options.model,
                streaming=False,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
            response = await asyncio.wait_for(
                llm.ainvoke(to_langchain_messages(messages)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.warning("llm_timeout", timeout_s=self._timeout, model=options.model)
            return FALLBACK_RESPONSE
        except Exception as exc:
            log.error("llm_call_failed", error=str(exc), error_type=type(exc).__name__)
            return FALLBACK_RESPONSE

        text = response.content if isinstance(response.content, str) else str(response.content)
        text = text.strip()
        if not text:
            log.warning("llm_empty_response", model=options.model)
            return FALLBACK_RESPONSE
        return text

    async def rewrite_query(self, query: str, context: list[Message]) -> str:
        """Rewrite `query` into a standalone question; returns `query` unchanged when unsure."""
        transcript = "\n".join(f"{m.role.upper()}: {m.content}" for m in context)
        prompt = prompts.REWRITE_QUERY_PROMPT.format(context=transcript or "(none)", query=query)
        rewritten = await self.call(
            [Message(role="user", content=prompt)],
            ChatOptions(model=self._fast_model, temperature=0.0, max_tokens=256),
        )
        if rewritten == FALLBACK_RESPONSE:
            return query

        rewritten = rewritten.strip().strip("\"'").strip()
        if not rewritten or "\n" in rewritten or len(rewritten) > len(query) * 2:
            log.debug("rewrite_rejected", original_length=len(query), rewritten_length=len(rewritten))
            return query
        return rewritten

    async def analyze_complexity(self, query: str) -> QueryAnalysis:
        prompt = prompts.ANALYZE_COMPLEXITY_PROMPT.format(query=query)
        raw = await self.call(
            [Message(role="user", content=prompt)],
            ChatOptions(model=self._fast_model, temperature=0.0, max_tokens=256),
        )
        parsed = extract_json(raw) if raw != FALLBACK_RESPONSE else None
        if parsed is None:
            return QueryAnalysis(reason="parse_error")

        suggested = parsed.get("suggestedQueries") or parsed.get("suggested_queries") or []
        return QueryAnalysis(
            is_complex=bool(parsed.get("isComplex", parsed.get("is_complex", False))),
            should_split=bool(parsed.get("shouldSplit", parsed.get("should_split", False))),
            suggested_queries=[str(q) for q in suggested if isinstance(q, str)],
            reason=parsed.get("reason") if isinstance(parsed.get("reason"), str) else None,
        )
