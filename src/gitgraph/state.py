"""Persisted application state and its permissive decoder."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .actions import ActionCatalog
from .constants import DEFAULT_GIT_BINARY, DEFAULT_REMOTE, STATE_SCHEMA_VERSION
from .errors import ErrorCode, GitGraphError
from .file_manager import FileManager
from .models import ActionDef, GraphQuery

logger = logging.getLogger(__name__)

# Field names used by schema 0 documents.
LEGACY_FIELD_NAMES = {
    "selected_repo_path": "selected_repo",
    "preferred_git_binary": "git_binary",
    "default_remote_name": "default_remote",
    "graph_query": "query_defaults",
    "selected_commit_hashes": "selected_commits",
}


@lru_cache(maxsize=1)
def _builtin_action_snapshot() -> tuple[ActionDef, ...]:
    return tuple(ActionCatalog.load_defaults().for_scope())


def _default_actions() -> list[ActionDef]:
    return list(_builtin_action_snapshot())


class AppState(BaseModel):
    schema_version: int = STATE_SCHEMA_VERSION
    selected_repo: str | None = None
    git_binary: str = DEFAULT_GIT_BINARY
    default_remote: str = DEFAULT_REMOTE
    query_defaults: GraphQuery = Field(default_factory=GraphQuery)
    selected_commits: list[str] = Field(default_factory=list)
    actions: list[ActionDef] = Field(default_factory=_default_actions)

    def select_repo(self, path: str | Path | None) -> None:
        self.selected_repo = str(path) if path is not None else None

    def set_git_binary(self, binary: str) -> None:
        self.git_binary = _require_text(binary, "git_binary")

    def set_default_remote(self, remote: str) -> None:
        self.default_remote = _require_text(remote, "default_remote")

    def select_commits(self, hashes: list[str]) -> None:
        self.selected_commits = list(dict.fromkeys(item.strip() for item in hashes if item.strip()))

    def set_query_defaults(self, query: GraphQuery) -> None:
        self.query_defaults = query.model_copy(deep=True)


class DecodeResult(BaseModel):
    state: AppState
    defaulted_fields: list[str] = Field(default_factory=list)
    migrated_fields: list[str] = Field(default_factory=list)
    source_version: int | None = None

    def notice(self) -> dict[str, Any] | None:
        """Informational payload describing defaulted fields, if any."""
        if not self.defaulted_fields:
            return None
        return {
            "status": "info",
            "code": ErrorCode.STATE_DECODE_DEFAULTED.value,
            "message": "Some state fields were missing or invalid and took default values.",
            "details": {"fields": list(self.defaulted_fields), "source_version": self.source_version},
        }


@lru_cache(maxsize=None)
def _field_adapter(name: str) -> TypeAdapter[Any]:
    return TypeAdapter(AppState.model_fields[name].annotation)


def decode(raw: str | bytes | Mapping[str, Any] | None) -> DecodeResult:
    """Decode a state document of any schema version.

    Missing or invalid fields take their defaults and are listed on the
    result; decoding itself never fails.
    """
    document = _load_document(raw)
    defaulted: list[str] = []
    migrated: list[str] = []

    for legacy, current in LEGACY_FIELD_NAMES.items():
        if legacy in document:
            value = document.pop(legacy)
            if current not in document:
                document[current] = value
                migrated.append(legacy)

    source_version = document.get("schema_version")
    if not isinstance(source_version, int) or isinstance(source_version, bool):
        source_version = None

    values: dict[str, Any] = {}
    for name in AppState.model_fields:
        if name == "schema_version":
            continue
        if name not in document:
            defaulted.append(name)
            continue
        if name == "query_defaults":
            values[name] = _decode_query_defaults(document[name], defaulted)
            continue
        try:
            values[name] = _field_adapter(name).validate_python(document[name])
        except ValidationError:
            logger.warning("Invalid state field %s; using default", name)
            defaulted.append(name)

    if source_version is None:
        defaulted.insert(0, "schema_version")
    state = AppState(schema_version=STATE_SCHEMA_VERSION, **values)

    unknown = sorted(set(document) - set(AppState.model_fields))
    if unknown:
        logger.debug("Ignoring unknown state fields: %s", ", ".join(unknown))
    if defaulted:
        logger.warning("State decoded with defaulted fields: %s", ", ".join(defaulted))
    return DecodeResult(
        state=state,
        defaulted_fields=defaulted,
        migrated_fields=migrated,
        source_version=source_version,
    )


def encode(state: AppState) -> dict[str, Any]:
    return state.model_dump(mode="json")


class StateStore:
    """Loads and saves ``AppState`` at a fixed path."""

    def __init__(self, path: Path, file_manager: FileManager | None = None) -> None:
        self.path = path
        self.file_manager = file_manager or FileManager()

    def load(self) -> DecodeResult:
        payload = self.file_manager.read_text(self.path)
        if not payload.strip():
            logger.info("No state file at %s; using defaults", self.path)
            return DecodeResult(state=AppState())
        return decode(payload)

    def save(self, state: AppState) -> None:
        self.file_manager.write_json_atomic(self.path, encode(state))
        logger.debug("Saved state to %s", self.path)


def _load_document(raw: str | bytes | Mapping[str, Any] | None) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        loaded = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("State document is not valid JSON; using defaults")
        return {}
    if not isinstance(loaded, dict):
        logger.warning("State document is not a JSON object; using defaults")
        return {}
    return loaded


def _decode_query_defaults(value: Any, defaulted: list[str]) -> GraphQuery:
    if not isinstance(value, Mapping):
        defaulted.append("query_defaults")
        return GraphQuery()
    fields: dict[str, Any] = {}
    for name in GraphQuery.model_fields:
        label = f"query_defaults.{name}"
        if name not in value:
            defaulted.append(label)
            continue
        try:
            GraphQuery.model_validate({name: value[name]})
        except ValidationError:
            logger.warning("Invalid state field %s; using default", label)
            defaulted.append(label)
            continue
        fields[name] = value[name]
    return GraphQuery.model_validate(fields)


def _require_text(value: str, field_name: str) -> str:
    cleaned = value.strip() if isinstance(value, str) else ""
    if not cleaned:
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            f"{field_name} must be a non-empty string",
            "Provide a non-empty value.",
            {"field": field_name},
        )
    return cleaned
