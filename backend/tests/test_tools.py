import asyncio

import pytest

from chat_orchestrator.core.errors import ToolValidationError
from chat_orchestrator.tools.calculator import CalculationError, evaluate_expression
from chat_orchestrator.tools.defaults import build_default_registry
from chat_orchestrator.tools.executor import SecureToolExecutor
from chat_orchestrator.tools.registry import (
    ToolCategory,
    ToolContext,
    ToolDefinition,
    ToolParameter,
    ToolRegistry,
    validate_parameters,
)

from conftest import FakeSearch, make_doc

CONTEXT = ToolContext(run_id="run-1", user_id="user-1")


def asked_by(query: str) -> ToolContext:
    return ToolContext(run_id="run-1", user_id="user-1", query=query)


def echo_tool(**overrides) -> ToolDefinition:
    async def echo(params, context):
        return {"echo": params["text"], "user": context.user_id}

    fields = dict(
        name="echo",
        description="Echo text back.",
        category=ToolCategory.UTILITY,
        execute=echo,
        parameters=[ToolParameter(name="text", type="string")],
        triggers=("echo", "repeat after me"),
    )
    fields.update(overrides)
    return ToolDefinition(**fields)


# ── Registry ──────────────────────────────────────────────────────────────────

def test_default_registry_contents():
    registry = build_default_registry(FakeSearch())

    assert registry.names() == ["calculator", "get_current_datetime", "search_knowledge_base"]
    calculator = registry.get("calculator")
    assert calculator.category == ToolCategory.CALCULATION
    assert [(p.name, p.type, p.required) for p in calculator.parameters] == [("expression", "string", True)]
    assert registry.get("get_current_datetime").parameters == []
    assert [t.name for t in registry.list_by_category(ToolCategory.SEARCH)] == ["search_knowledge_base"]


def test_validate_reports_missing_and_mistyped_parameters():
    registry = ToolRegistry([echo_tool()])

    with pytest.raises(ToolValidationError, match="missing required parameter 'text'"):
        registry.validate("echo", {})
    with pytest.raises(ToolValidationError, match="must be of type string"):
        registry.validate("echo", {"text": 42})
    with pytest.raises(ToolValidationError, match="not registered"):
        registry.validate("nope", {})
    registry.validate("echo", {"text": "hi"})


def test_custom_validator_replaces_default_checks():
    tool = echo_tool(validator=lambda params: [] if params.get("text") == "magic" else ["only magic allowed"])

    assert validate_parameters(tool, {"text": "magic"}) == []
    assert validate_parameters(tool, {"text": "plain"}) == ["only magic allowed"]


def test_number_parameters_reject_booleans():
    tool = echo_tool(parameters=[ToolParameter(name="count", type="number")])

    assert validate_parameters(tool, {"count": 3.5}) == []
    assert validate_parameters(tool, {"count": True}) != []


def test_match_intent_from_query_and_documents():
    registry = ToolRegistry([echo_tool()])

    assert registry.match_intent("please ECHO this") == ["echo"]
    assert registry.match_intent("nothing relevant") == []
    assert registry.match_intent("nothing relevant", [make_doc("a", 0.9, body="echo")]) == []
    assert registry.match_intent(
        "nothing relevant", [make_doc("a", 0.9, body="echo"), make_doc("b", 0.9, body="repeat after me")]
    ) == ["echo"]


def test_describe_tools_catalog():
    registry = build_default_registry(FakeSearch())

    catalog = registry.describe_tools(["calculator", "missing"])

    assert catalog.startswith("- calculator (calculation):")
    assert "expression (string, required)" in catalog
    assert "search_knowledge_base" not in catalog


def test_register_replaces_and_unregister_removes():
    registry = ToolRegistry([echo_tool()])
    registry.register(echo_tool(description="Second version."))

    assert registry.get("echo").description == "Second version."
    assert registry.unregister("echo") is True
    assert registry.unregister("echo") is False
    assert not registry.has("echo")


# ── Executor ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_execute_success():
    executor = SecureToolExecutor(ToolRegistry([echo_tool()]))

    result = await executor.execute("echo", {"text": "hi"}, CONTEXT)

    assert result.status == "ok"
    assert result.output == {"echo": "hi", "user": "user-1"}
    assert result.error is None
    assert result.execution_time_ms >= 0


@pytest.mark.asyncio
async def test_execute_unknown_tool():
    result = await SecureToolExecutor(ToolRegistry()).execute("ghost", {}, CONTEXT)

    assert result.status == "error"
    assert "not registered" in result.error


@pytest.mark.asyncio
async def test_execute_rejects_invalid_input_without_calling_tool():
    called = []

    async def record(params, context):
        called.append(params)

    executor = SecureToolExecutor(ToolRegistry([echo_tool(execute=record)]))
    result = await executor.execute("echo", {"text": 1}, CONTEXT)

    assert result.status == "error"
    assert "Invalid input" in result.error
    assert called == []


@pytest.mark.asyncio
async def test_execute_contains_tool_exceptions():
    async def boom(params, context):
        raise RuntimeError("upstream 500")

    result = await SecureToolExecutor(ToolRegistry([echo_tool(execute=boom)])).execute("echo", {"text": "x"}, CONTEXT)

    assert result.status == "error"
    assert "upstream 500" in result.error
    assert result.output is None


@pytest.mark.asyncio
async def test_execute_times_out():
    async def slow(params, context):
        await asyncio.sleep(1)

    executor = SecureToolExecutor(ToolRegistry([echo_tool(execute=slow)]), default_timeout_seconds=0.05)
    result = await executor.execute("echo", {"text": "x"}, CONTEXT)

    assert result.status == "error"
    assert "timed out after 0.05s" in result.error


@pytest.mark.asyncio
async def test_high_risk_tool_needs_matching_query():
    executor = SecureToolExecutor(ToolRegistry([echo_tool(risk_level=4)]))

    unasked = await executor.execute("echo", {"text": "hi"}, asked_by("What time is it?"))
    asked = await executor.execute("echo", {"text": "hi"}, asked_by("Please echo hi"))
    no_query = await executor.execute("echo", {"text": "hi"}, CONTEXT)

    assert unasked.status == "error"
    assert "not requested" in unasked.error
    assert asked.status == "ok"
    assert no_query.status == "error"


@pytest.mark.asyncio
async def test_low_risk_tool_runs_without_matching_query():
    executor = SecureToolExecutor(ToolRegistry([echo_tool(risk_level=2)]))

    result = await executor.execute("echo", {"text": "hi"}, asked_by("hello"))

    assert result.status == "ok"


def test_default_timeout_shrinks_with_risk():
    executor = SecureToolExecutor(ToolRegistry(), default_timeout_seconds=5.0)

    assert [executor.default_timeout_for(level) for level in range(1, 6)] == [5.0, 4.0, 3.0, 2.0, 1.0]
    assert SecureToolExecutor(ToolRegistry(), default_timeout_seconds=0.5).default_timeout_for(5) == 0.5


@pytest.mark.parametrize("level", [0, 6])
def test_risk_level_out_of_range_is_rejected(level):
    with pytest.raises(ValueError):
        echo_tool(risk_level=level)


@pytest.mark.asyncio
async def test_execute_truncates_long_output():
    async def chatty(params, context):
        return "x" * 100

    executor = SecureToolExecutor(ToolRegistry([echo_tool(execute=chatty)]), max_output_chars=10)
    result = await executor.execute("echo", {"text": "x"}, CONTEXT)

    assert result.output.startswith("x" * 10)
    assert result.output.endswith("[truncated]")


@pytest.mark.asyncio
async def test_execute_rejects_unserializable_output():
    async def opaque(params, context):
        return object()

    result = await SecureToolExecutor(ToolRegistry([echo_tool(execute=opaque)])).execute("echo", {"text": "x"}, CONTEXT)

    assert result.status == "error"
    assert "unserializable" in result.error


@pytest.mark.asyncio
async def test_search_tool_applies_defaults_and_scopes_to_user():
    search = FakeSearch([[make_doc("a", 0.9, body="Refunds within 30 days.")]])
    registry = build_default_registry(search)

    result = await SecureToolExecutor(registry).execute("search_knowledge_base", {"query": "refunds"}, CONTEXT)

    assert result.status == "ok"
    assert result.input == {"query": "refunds", "limit": 3}
    assert "Refunds within 30 days." in result.output
    user_id, query, options = search.calls[0]
    assert (user_id, query, options.limit) == ("user-1", "refunds", 3)


@pytest.mark.asyncio
async def test_calculator_tool_end_to_end():
    registry = build_default_registry(FakeSearch())

    ok = await SecureToolExecutor(registry).execute("calculator", {"expression": "(1 + 2) * 4"}, CONTEXT)
    bad = await SecureToolExecutor(registry).execute("calculator", {"expression": "1 / 0"}, CONTEXT)

    assert ok.output == "12"
    assert bad.status == "error"
    assert "division by zero" in bad.error


# ── Calculator ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("expression,expected", [
    ("2 + 3 * 4", 14),
    ("7 / 2", 3.5),
    ("7 // 2", 3),
    ("-(2 ** 3)", -8),
    ("10 % 4", 2),
    ("(1.5 + 2.5) * 2", 8.0),
])
def test_evaluate_expression(expression, expected):
    assert evaluate_expression(expression) == expected


@pytest.mark.parametrize("expression", [
    "",
    "__import__('os').system('ls')",
    "2 ** 1000",
    "1 / 0",
    "2 +",
    "1" * 201,
])
def test_evaluate_expression_rejects(expression):
    with pytest.raises(CalculationError):
        evaluate_expression(expression)


def test_evaluate_expression_bounds_result_size():
    with pytest.raises(CalculationError):
        evaluate_expression("((9**99)**99)**99")
    with pytest.raises(CalculationError):
        evaluate_expression("(9**99)**99")
    with pytest.raises(CalculationError):
        evaluate_expression("(5**99)**8 * (5**99)**8 * (5**99)**8")

    assert evaluate_expression("2 ** 10") == 1024
    assert evaluate_expression("9 ** 99") == 9 ** 99
    assert evaluate_expression("(5**99)**8") == 5 ** 792
