"""
Built-in tools.

Current tools:
  - calculator:            arithmetic on an expression string (LangChain @tool)
  - get_current_datetime:  current UTC date and time (LangChain @tool)
  - search_knowledge_base: explicit knowledge base lookup scoped to the run's
                           user (complements the automatic retrieve node)

build_default_registry() is called once per process by the service
container; add new tools there.
"""

from datetime import datetime, timezone
from typing import Any

from langchain_core.tools import tool

from chat_orchestrator.rag.pipeline import SearchOptions
from chat_orchestrator.tools.calculator import evaluate_expression
from chat_orchestrator.tools.registry import (
    ToolCategory,
    ToolContext,
    ToolDefinition,
    ToolParameter,
    ToolRegistry,
)


@tool
def calculator(expression: str) -> str:
    """Evaluate an arithmetic expression using + - * / // % ** and parentheses."""
    return str(evaluate_expression(expression))


@tool
def get_current_datetime() -> str:
    """Return the current UTC date and time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def build_search_tool(search) -> ToolDefinition:
    async def search_knowledge_base(params: dict[str, Any], context: ToolContext) -> str:
        docs = await search.search(
            context.user_id,
            params["query"],
            SearchOptions(limit=int(params.get("limit", 3))),
        )
        if not docs:
            return "No relevant information found in the knowledge base."
        return "\n\n---\n\n".join(
            f"{doc.title}\n{doc.body}" if doc.title else doc.body for doc in docs
        )

    return ToolDefinition(
        name="search_knowledge_base",
        description="Search the user's knowledge base for passages relevant to a query.",
        category=ToolCategory.SEARCH,
        execute=search_knowledge_base,
        parameters=[
            ToolParameter(name="query", type="string", description="A concise search query"),
            ToolParameter(name="limit", type="number", required=False, default=3,
                          description="Maximum number of passages"),
        ],
        examples=["Look up our refund policy", "Find the onboarding checklist in my documents"],
        triggers=("look up", "search", "find in my documents", "knowledge base"),
    )


def build_default_registry(search) -> ToolRegistry:
    return ToolRegistry([
        ToolDefinition.from_langchain(
            calculator,
            category=ToolCategory.CALCULATION,
            examples=["What is 15% of 240?", "Calculate (12.5 * 4) / 3"],
            triggers=("calculate", "compute", "math", "equation", "sum", "average", "divide", "multiply"),
        ),
        ToolDefinition.from_langchain(
            get_current_datetime,
            category=ToolCategory.UTILITY,
            examples=["What is today's date?", "What time is it in UTC?"],
            triggers=("today's date", "current date", "current time", "what time", "what day"),
        ),
        build_search_tool(search),
    ])
