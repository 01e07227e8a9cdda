"""Line-level blame lookups."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from .errors import ErrorCode, GitGraphError
from .models import BlameResult

if TYPE_CHECKING:
    from .git_runner import RecordSource

logger = logging.getLogger(__name__)


def normalize_path(file: str) -> str:
    normalized = file.strip().replace("\\", "/")
    if not normalized:
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            "File path must not be empty",
            "Pass a path relative to the repository root.",
        )
    return str(PurePosixPath(normalized))


class BlameResolver:
    """Resolves the commit that last touched one line of a checked-out file."""

    def __init__(self, source: RecordSource) -> None:
        self.source = source

    def blame(self, file: str, line: int) -> BlameResult:
        path = normalize_path(file)
        if line < 1:
            raise GitGraphError(
                ErrorCode.BLAME_LINE_OUT_OF_RANGE,
                f"Line {line} is out of range for {path}",
                "Line numbers start at 1.",
                {"file": path, "line": line},
            )

        line_count = self.source.line_count(path)
        if line_count is None:
            raise GitGraphError(
                ErrorCode.BLAME_FILE_NOT_FOUND,
                f"File not found in checkout: {path}",
                "Pass a path relative to the repository root of a tracked file.",
                {"file": path},
            )
        if line > line_count:
            raise GitGraphError(
                ErrorCode.BLAME_LINE_OUT_OF_RANGE,
                f"Line {line} is out of range for {path} ({line_count} lines)",
                "Choose a line within the current file length.",
                {"file": path, "line": line, "line_count": line_count},
            )

        result = self.source.blame_line(path, line)
        logger.debug("Blamed %s:%d to %s", path, line, result.commit_hash)
        return result
