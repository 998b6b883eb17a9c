"""Prompt templates used by the chat graph and the LLM client."""

ASSISTANT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Answer the user's question accurately and concisely. "
    "If the supplied context does not contain the answer, say so rather than guessing."
)

REWRITE_QUERY_PROMPT = (
    "Rewrite the user's latest question so it can be understood without the conversation. "
    "Resolve pronouns using the conversation, keep every constraint the user stated, and "
    "answer with the rewritten question only, on a single line, without quotes.\n\n"
    "Conversation:\n{context}\n\nLatest question: {query}"
)

ANALYZE_COMPLEXITY_PROMPT = (
    "Decide whether the following question is complex (needs several facts or steps) and "
    "whether it should be split into independent sub-questions. Respond with JSON only:\n"
    '{{"isComplex": bool, "shouldSplit": bool, "suggestedQueries": [str], "reason": str}}\n\n'
    "Question: {query}"
)

BROADEN_QUERY_PROMPT = (
    "A search for the question below returned {outcome}. Rewrite it as a broader search "
    "query: drop narrow qualifiers, prefer general terms and synonyms. Answer with the "
    "query only, on a single line.\n\nQuestion: {query}"
)

SELECT_TOOL_PROMPT = (
    "Pick the single best tool for the user's request.\n\nAvailable tools:\n{catalog}\n\n"
    "Request: {query}\n\n"
    'Respond with JSON only: {{"tool_name": str, "confidence": float, "reason": str}}'
)

EXTRACT_PARAMETERS_PROMPT = (
    "Extract the arguments for the tool below from the user's request.\n\n{catalog}\n\n"
    "Request: {query}\n\nRespond with a JSON object mapping parameter names to values. "
    "Omit parameters the request does not mention."
)

CONTEXT_SECTION = "\n\nRelevant knowledge base context:\n{docs}"
TOOL_RESULTS_SECTION = "\n\nTool results:\n{results}"
