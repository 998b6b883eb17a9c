"""
Input sanitization and output filtering.

sanitize_message() is a lightweight prompt injection filter applied to user
messages before they enter the chat graph. It complements, and does not
replace, keeping user text out of the system prompt.

filter_output() scrubs generated text of data that should never be echoed
back: e-mail addresses, card-like digit runs and API-key-like tokens.
"""

import re

from chat_orchestrator.core.errors import MessageRejectedError
from chat_orchestrator.core.logging import get_logger

log = get_logger(__name__)

# Patterns that signal likely prompt injection attempts
_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions?", re.I),
    re.compile(r"disregard\s+(all\s+)?(previous|prior|above)\s+instructions?", re.I),
    re.compile(r"you\s+are\s+now\s+(?:a|an|the)\s+\w+", re.I),
    re.compile(r"forget\s+(all\s+)?(previous|prior|above)\s+instructions?", re.I),
    re.compile(r"system\s*prompt\s*:", re.I),
    re.compile(r"<\s*/?system\s*>", re.I),
    re.compile(r"\[INST\]", re.I),
    re.compile(r"###\s*instruction", re.I),
]

_OUTPUT_REDACTIONS = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[email redacted]"),
    (re.compile(r"\b(?:\d[ -]?){13,16}\b"), "[number redacted]"),
    (re.compile(r"\b(?:sk|pk|rk)[-_][A-Za-z0-9_-]{16,}\b"), "[key redacted]"),
]

# Hard length cap against token flooding
MAX_MESSAGE_LENGTH = 8_000  # characters


def sanitize_message(text: str, user_id: str) -> str:
    """
    Validate a user message.
    Raises MessageRejectedError on injection detection or length violation.
    Returns the (unchanged) text if clean.
    """
    if len(text) > MAX_MESSAGE_LENGTH:
        raise MessageRejectedError(
            f"Message too long ({len(text)} chars). Maximum is {MAX_MESSAGE_LENGTH}."
        )

    for pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            log.warning(
                "prompt_injection_detected",
                user_id=user_id,
                pattern=pattern.pattern,
            )
            raise MessageRejectedError("Message contains disallowed content.")

    return text


def filter_output(text: str) -> str:
    for pattern, replacement in _OUTPUT_REDACTIONS:
        text = pattern.sub(replacement, text)
    return text
