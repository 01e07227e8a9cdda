"""Low-level file system helpers used by gitgraph."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from .errors import ErrorCode, GitGraphError


class FileManager:
    """Wrapper around common text/JSON/YAML file operations."""

    def read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except PermissionError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Permission denied while reading {path}",
                "Check file permissions and try again.",
            ) from exc

    def read_json(self, path: Path) -> Any:
        """Return the decoded JSON document, or ``None`` when the file does not exist."""
        text = self.read_text(path)
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Invalid JSON in {path}",
                "Fix or remove the file.",
                {"path": str(path), "line": exc.lineno, "column": exc.colno},
            ) from exc

    def write_json_atomic(self, path: Path, payload: Any) -> None:
        """Write JSON to a sibling temp file and move it into place."""
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise GitGraphError(
                ErrorCode.STATE_WRITE_FAILED,
                f"Unable to write {path}",
                "Check directory permissions and free space.",
                {"path": str(path)},
            ) from exc

    def read_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        except PermissionError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Permission denied while reading {path}",
                "Check file permissions and try again.",
            ) from exc
        except yaml.YAMLError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Invalid YAML or JSON in {path}",
                "Fix the syntax of the file.",
                {"path": str(path)},
            ) from exc
        if isinstance(loaded, dict):
            return loaded
        if isinstance(loaded, list):
            return {"actions": loaded}
        return {}
