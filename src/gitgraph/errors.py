"""Domain-specific error types for gitgraph operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Supported error codes exposed by gitgraph operations."""

    GIT_INVOCATION_FAILED = "GIT_INVOCATION_FAILED"
    NOT_A_GIT_REPOSITORY = "NOT_A_GIT_REPOSITORY"
    MALFORMED_RECORD = "MALFORMED_RECORD"
    INVALID_REGEX = "INVALID_REGEX"
    DUPLICATE_BRANCH = "DUPLICATE_BRANCH"
    UNKNOWN_ACTION_ID = "UNKNOWN_ACTION_ID"
    MISSING_CONTEXT_PARAM = "MISSING_CONTEXT_PARAM"
    SCOPE_VIOLATION = "SCOPE_VIOLATION"
    DYNAMIC_PLACEHOLDER_FAILED = "DYNAMIC_PLACEHOLDER_FAILED"
    TEMPLATE_SYNTAX_ERROR = "TEMPLATE_SYNTAX_ERROR"
    BLAME_FILE_NOT_FOUND = "BLAME_FILE_NOT_FOUND"
    BLAME_LINE_OUT_OF_RANGE = "BLAME_LINE_OUT_OF_RANGE"
    STATE_DECODE_DEFAULTED = "STATE_DECODE_DEFAULTED"
    STATE_WRITE_FAILED = "STATE_WRITE_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class GitGraphError(Exception):
    """Structured exception carrying a stable error contract."""

    code: ErrorCode
    message: str
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def causes(self) -> list[str]:
        """Return the wrapped cause chain, outermost first and innermost last."""
        chain: list[str] = []
        current = self.__cause__
        seen: set[int] = set()
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            if isinstance(current, GitGraphError):
                chain.append(str(current))
            else:
                chain.append(f"{current.__class__.__name__}: {current}")
            current = current.__cause__
        return chain

    def to_payload(self) -> dict[str, Any]:
        details = dict(self.details)
        causes = self.causes()
        if causes:
            details["causes"] = causes
        return {
            "status": "error",
            "error_code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion or "",
            "details": details,
        }
