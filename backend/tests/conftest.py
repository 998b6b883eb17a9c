"""Shared fixtures: fake collaborators, in-memory storage and a wired executor."""

import pytest

from chat_orchestrator.agents.graph import ChatGraphExecutor
from chat_orchestrator.core.checkpointer import CheckpointStore
from chat_orchestrator.core.crypto import StateCipher
from chat_orchestrator.core.graph_state import (
    AgentState,
    Document,
    DocumentMetadata,
    Message,
    QueryAnalysis,
)
from chat_orchestrator.retention.manager import DataRetentionManager
from chat_orchestrator.storage.backend import MemoryBackend
from chat_orchestrator.tools.defaults import build_default_registry
from chat_orchestrator.tools.executor import SecureToolExecutor

ANSWER = "Paris is the capital of France."


class FakeLLM:
    """
    Scripted stand-in for LLMClient.

    `replies` maps a marker string to a reply; the first marker found in any
    message of a call decides the reply, otherwise `answer` is returned.
    """

    def __init__(self, answer: str = ANSWER, replies: dict[str, str] | None = None, fail: bool = False):
        self.answer = answer
        self.replies = replies or {}
        self.fail = fail
        self.calls: list[list[Message]] = []
        self.rewrites: list[str] = []

    async def call(self, messages, options=None) -> str:
        self.calls.append(list(messages))
        if self.fail:
            raise RuntimeError("model unavailable")
        for marker, reply in self.replies.items():
            if any(marker in m.content for m in messages):
                return reply
        return self.answer

    async def rewrite_query(self, query, context) -> str:
        self.rewrites.append(query)
        return query

    async def analyze_complexity(self, query) -> QueryAnalysis:
        return QueryAnalysis()


class FakeSearch:
    """Returns `pages` in order, repeating the last one; raises when `error` is set."""

    def __init__(self, pages: list[list[Document]] | None = None, error: Exception | None = None):
        self.pages = list(pages or [])
        self.error = error
        self.calls: list[tuple] = []

    async def search(self, user_id, query, options=None):
        self.calls.append((user_id, query, options))
        if self.error is not None:
            raise self.error
        if not self.pages:
            return []
        return self.pages.pop(0) if len(self.pages) > 1 else list(self.pages[0])


def make_doc(doc_id: str, score: float, body: str = "Paris has been the capital of France since 987.") -> Document:
    return Document(id=doc_id, title=f"Doc {doc_id}", body=body, metadata=DocumentMetadata(relevance_score=score))


def make_state(text: str = "What is the capital of France?", user_id: str = "user-1") -> AgentState:
    return AgentState(user_id=user_id, messages=[Message(role="user", content=text)])


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def cipher():
    return StateCipher.from_base64(StateCipher.generate_key())


@pytest.fixture
def store(backend, cipher):
    return CheckpointStore(backend, cipher, ttl_seconds=3600)


@pytest.fixture
def retention(backend, store):
    return DataRetentionManager(backend, store)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def search():
    return FakeSearch([[make_doc("a", 0.9), make_doc("b", 0.8)]])


@pytest.fixture
def registry(search):
    return build_default_registry(search)


@pytest.fixture
def executor(store, registry, llm, search):
    return ChatGraphExecutor(
        store,
        registry,
        llm,
        search,
        tool_executor=SecureToolExecutor(registry, default_timeout_seconds=1.0),
    )
