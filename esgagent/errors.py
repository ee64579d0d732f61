"""Error taxonomy shared by the tool dispatcher, services and HTTP layer."""
from __future__ import annotations


class ESGAgentError(Exception):
    """Base class for errors surfaced to users as a message."""


class NotFoundError(ESGAgentError):
    """A referenced company, document, run or action does not exist."""

    def __init__(self, label: str, entity_id: int | str):
        super().__init__(f"{label} with ID {entity_id} not found.")
        self.label = label
        self.entity_id = entity_id


class UnsafeQueryError(ESGAgentError):
    """Query is not a SELECT/WITH statement."""

    def __init__(self, statement: str):
        super().__init__(
            f"Only SELECT and WITH queries are allowed (got {statement or 'empty statement'})."
        )
        self.statement = statement


class ForbiddenKeywordError(ESGAgentError):
    """Query contains a keyword that could modify data or the database."""

    def __init__(self, keyword: str):
        super().__init__(f'Dangerous keyword "{keyword}" not allowed in read-only queries.')
        self.keyword = keyword


class QueryExecutionError(ESGAgentError):
    """The store rejected an otherwise valid read-only query."""

    def __init__(self, message: str):
        super().__init__(f"SQL execution error: {message}")
        self.store_message = message


class InvalidArgumentsError(ESGAgentError):
    """Tool arguments do not match the tool's declared schema."""

    def __init__(self, tool: str, field: str, reason: str = "invalid value"):
        super().__init__(f"Invalid arguments for {tool}: '{field}' {reason}")
        self.tool = tool
        self.field = field
        self.reason = reason


class ArgumentParseError(ESGAgentError):
    """Tool call arguments were not valid JSON."""

    def __init__(self, tool: str, detail: str):
        super().__init__(f"Could not parse arguments for {tool}: {detail}")
        self.tool = tool


class UnknownToolError(ESGAgentError):
    def __init__(self, tool: str):
        super().__init__(f"Unknown tool: {tool}")
        self.tool = tool


class InvalidTransitionError(ESGAgentError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, label: str, current: str, target: str):
        super().__init__(f"{label} cannot move from '{current}' to '{target}'.")
        self.current = current
        self.target = target
