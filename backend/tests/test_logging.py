import logging

import pytest
import structlog

from chat_orchestrator.agents.graph import ChatGraphExecutor
from chat_orchestrator.core.logging import configure_logging, get_logger

from conftest import ANSWER, FakeLLM, FakeSearch, make_state


@pytest.fixture
def configured_logging():
    configure_logging()
    yield
    structlog.reset_defaults()


def test_configured_logger_emits_through_stdlib(configured_logging, caplog):
    caplog.set_level(logging.INFO)

    get_logger("chat_orchestrator.tests").info("logging_ready", component="tests")

    assert "logging_ready" in caplog.text
    assert any(record.name == "chat_orchestrator.tests" for record in caplog.records)


@pytest.mark.asyncio
async def test_run_completes_with_logging_configured(configured_logging, executor, caplog):
    caplog.set_level(logging.DEBUG)

    final = await executor.run(make_state("Hello, world!", user_id="u1"))

    assert final.generated_text == ANSWER
    assert final.metadata.is_final_state
    assert "run_completed" in caplog.text


@pytest.mark.asyncio
async def test_contained_node_error_is_logged_not_raised(configured_logging, store, registry, caplog):
    caplog.set_level(logging.INFO)
    executor = ChatGraphExecutor(store, registry, FakeLLM(), FakeSearch(error=RuntimeError("index offline")))

    final = await executor.run(make_state(), run_id="run-1")

    assert final.generated_text == ANSWER
    assert [e.node for e in final.metadata.errors] == ["retrieve", "retrieve"]
    assert "index offline" in caplog.text
