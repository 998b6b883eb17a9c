"""
Exception hierarchy.

Conversational failures never surface as exceptions (nodes are wrapped,
collaborators return safe defaults). What remains here is what a caller
must be told about: rejected input, an unusable persistence layer, and
administrative operations that did not complete.
"""


class OrchestratorError(Exception):
    """Base class for every error raised by the engine."""


# ── Validation ────────────────────────────────────────────────────────────────

class InputValidationError(OrchestratorError):
    """Caller-supplied input was rejected before any work was done."""


class ToolValidationError(InputValidationError):
    def __init__(self, tool_name: str, problems: list[str]):
        self.tool_name = tool_name
        self.problems = problems
        super().__init__(f"Invalid input for tool '{tool_name}': {'; '.join(problems)}")


class ConsentValidationError(InputValidationError):
    pass


class ConsentRequiredError(InputValidationError):
    """The user has no current consent for a category that requires one."""

    def __init__(self, user_id: str, category: str):
        self.user_id = user_id
        self.category = category
        super().__init__(f"consent required for {category}")


class MessageRejectedError(InputValidationError):
    pass


# ── Persistence ───────────────────────────────────────────────────────────────

class StorageError(OrchestratorError):
    """A persistence backend operation failed."""


class CheckpointStoreError(OrchestratorError):
    pass


class CheckpointStoreUnavailable(CheckpointStoreError):
    """The backing store could not be reached during initialization."""


# ── Retention ─────────────────────────────────────────────────────────────────

class RetentionError(OrchestratorError):
    pass


class CleanupIncompleteError(RetentionError):
    """
    A bulk cleanup or deletion finished its pass but some items could not be
    removed. `deleted_count` reflects what was removed before reporting.
    """

    def __init__(self, operation: str, deleted_count: int, failed: list[str]):
        self.operation = operation
        self.deleted_count = deleted_count
        self.failed = failed
        super().__init__(
            f"{operation} incomplete: deleted {deleted_count}, "
            f"{len(failed)} item(s) failed"
        )
