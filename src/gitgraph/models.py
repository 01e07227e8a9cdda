"""Pydantic models for gitgraph domain objects, queries and results."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from .constants import DEFAULT_GRAPH_LIMIT

_UNTYPED_FIELDS = {"extra", "args", "enabled_options", "confirmed", "commit_hashes"}


class RefKind(str, Enum):
    HEAD = "head"
    LOCAL_BRANCH = "local-branch"
    REMOTE_BRANCH = "remote-branch"
    TAG = "tag"
    STASH = "stash"
    OTHER = "other"


class EdgeKind(str, Enum):
    PARENT = "parent"
    MERGE = "merge"
    STASH = "stash"


class LaneNamespace(str, Enum):
    BRANCH = "branch"
    STASH = "stash"


class ActionScope(str, Enum):
    GLOBAL = "global"
    COMMIT = "commit"
    COMMITS = "commits"
    STASH = "stash"
    TAG = "tag"
    BRANCH = "branch"
    BRANCH_DROP = "branch-drop"


class ContinuationPolicy(str, Enum):
    RUN_NEXT = "run-next"
    RUN_NEXT_ON_SUCCESS = "run-next-on-success"
    RUN_NEXT_ON_FAILURE = "run-next-on-failure"
    UNCONDITIONAL = "unconditional"


class GitRef(BaseModel):
    kind: RefKind
    name: str
    target: str | None = None


class RawCommit(BaseModel):
    """One parsed history record before lane assignment."""

    hash: str
    short_hash: str = ""
    parents: list[str] = Field(default_factory=list)
    author_name: str = ""
    author_email: str = ""
    authored_at: int = 0
    committed_at: int = 0
    refs: list[GitRef] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    is_stash: bool = False


class Edge(BaseModel):
    from_hash: str
    to_hash: str
    lane: int
    kind: EdgeKind


class Commit(RawCommit):
    lane: int = 0
    lane_namespace: LaneNamespace = LaneNamespace.BRANCH
    row_width: int = 0
    edges: list[Edge] = Field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return not self.parents

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1


class LaneSpan(BaseModel):
    """Inclusive row range during which a lane index is occupied."""

    lane: int
    namespace: LaneNamespace
    start_row: int
    end_row: int


class CommitGraph(BaseModel):
    commits: list[Commit] = Field(default_factory=list)
    lane_spans: list[LaneSpan] = Field(default_factory=list)
    lane_count: int = 0
    stash_lane_count: int = 0
    boundary_parents: list[str] = Field(default_factory=list)

    _index: dict[str, int] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._index = {commit.hash: row for row, commit in enumerate(self.commits)}

    def row_of(self, commit_hash: str) -> int | None:
        return self._index.get(commit_hash)

    def get(self, commit_hash: str) -> Commit | None:
        row = self._index.get(commit_hash)
        if row is None:
            return None
        return self.commits[row]


class GraphQuery(BaseModel):
    limit: int = Field(default=DEFAULT_GRAPH_LIMIT, ge=0)
    skip: int = Field(default=0, ge=0)
    all_refs: bool = True
    include_stashes: bool = True
    fold_stashes: bool = False
    additional_args: list[str] = Field(default_factory=list)


class SearchQuery(BaseModel):
    text: str = ""
    regex: bool = False
    case_sensitive: bool = False
    file: str | None = None
    limit: int = Field(default=0, ge=0, description="Maximum matches, 0 means unbounded")
    skip: int = Field(default=0, ge=0)
    include_hash: bool = True
    include_subject: bool = True
    include_body: bool = True
    include_author: bool = True
    include_email: bool = True
    include_refs: bool = True

    @field_validator("file")
    @classmethod
    def _normalize_file(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().replace("\\", "/")
        return normalized or None


class SearchResult(BaseModel):
    matches: list[Commit] = Field(default_factory=list)
    skip: int = 0
    limit: int = 0
    scanned: int = 0
    exhausted: bool = True


class Branch(BaseModel):
    name: str
    full_ref: str = ""
    head: str
    upstream: str | None = None
    remote: bool = False
    remote_name: str | None = None


class BlameResult(BaseModel):
    file: str
    line: int
    commit_hash: str
    author_name: str = ""
    author_email: str = ""
    timestamp: int = 0
    summary: str = ""


class FileChange(BaseModel):
    """One ``--numstat`` row; counts are ``None`` for binary files."""

    path: str
    normalized_path: str
    added: int | None = None
    removed: int | None = None


class ActionParam(BaseModel):
    default: str = ""
    placeholder: str | None = None
    multiline: bool = False


class ActionOption(BaseModel):
    id: str
    flag: str
    title: str = ""
    default_active: bool = False
    info: str | None = None


class ActionDef(BaseModel):
    id: str = Field(..., min_length=1)
    scope: ActionScope = ActionScope.GLOBAL
    title: str = ""
    description: str = ""
    template: str = Field(..., min_length=1)
    params: list[ActionParam] = Field(default_factory=list)
    options: list[ActionOption] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    ignore_errors: bool = False

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped or any(char.isspace() for char in stripped):
            raise ValueError("action id must be non-blank and contain no whitespace")
        return stripped

    @field_validator("aliases")
    @classmethod
    def _aliases_not_blank(cls, value: list[str]) -> list[str]:
        cleaned = [alias.strip() for alias in value]
        if any(not alias for alias in cleaned):
            raise ValueError("aliases must not be blank")
        return cleaned


class ActionContext(BaseModel):
    branch_display_name: str | None = None
    branch_name: str | None = None
    local_branch_name: str | None = None
    branch_id: str | None = None
    source_branch_name: str | None = None
    target_branch_name: str | None = None
    commit_hash: str | None = None
    commit_hashes: list[str] = Field(default_factory=list)
    commit_body: str | None = None
    stash_name: str | None = None
    tag_name: str | None = None
    remote_name: str | None = None
    default_remote_name: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)
    args: list[str] = Field(default_factory=list)
    enabled_options: list[str] = Field(default_factory=list)
    confirmed: bool = False

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, str] | None = None,
        commit_hashes: Sequence[str] = (),
        args: Sequence[str] = (),
        enabled_options: Sequence[str] = (),
        confirmed: bool = False,
    ) -> ActionContext:
        """Build a context from placeholder-keyed values such as ``BRANCH_NAME``.

        Keys naming a typed field go there; anything else lands in ``extra``.
        """
        typed: dict[str, Any] = {}
        extra: dict[str, str] = {}
        for key, value in (values or {}).items():
            name = key.strip()
            field_name = name.lower()
            if field_name in cls.model_fields and field_name not in _UNTYPED_FIELDS:
                typed[field_name] = value
            elif name:
                extra[name] = value
        return cls(
            **typed,
            commit_hashes=list(commit_hashes),
            extra=extra,
            args=list(args),
            enabled_options=list(enabled_options),
            confirmed=confirmed,
        )

    def placeholder_values(self) -> dict[str, str]:
        """Return placeholder values keyed by name, in sorted key order."""
        values: dict[str, str] = {}
        named = {
            "BRANCH_DISPLAY_NAME": self.branch_display_name,
            "BRANCH_NAME": self.branch_name,
            "LOCAL_BRANCH_NAME": self.local_branch_name,
            "BRANCH_ID": self.branch_id,
            "SOURCE_BRANCH_NAME": self.source_branch_name,
            "TARGET_BRANCH_NAME": self.target_branch_name,
            "COMMIT_HASH": self.commit_hash,
            "COMMIT_BODY": self.commit_body,
            "STASH_NAME": self.stash_name,
            "TAG_NAME": self.tag_name,
            "REMOTE_NAME": self.remote_name,
            "DEFAULT_REMOTE_NAME": self.default_remote_name or self.remote_name,
        }
        for key, value in named.items():
            if value is not None:
                values[key] = value
        if self.commit_hashes:
            values["COMMIT_HASHES"] = " ".join(self.commit_hashes)
        values.update(self.extra)
        return dict(sorted(values.items()))


class UnresolvedPlaceholder(BaseModel):
    marker: str
    kind: str
    key: str
    error: dict[str, Any] = Field(default_factory=dict)


class PlanEntry(BaseModel):
    command: str
    policy: ContinuationPolicy = ContinuationPolicy.RUN_NEXT
    unresolved: list[str] = Field(default_factory=list)


class ExpandedPlan(BaseModel):
    action_id: str
    scope: ActionScope
    entries: list[PlanEntry] = Field(default_factory=list)
    unresolved: list[UnresolvedPlaceholder] = Field(default_factory=list)
    ignore_errors: bool = False

    @property
    def complete(self) -> bool:
        return not self.unresolved

    @property
    def command_line(self) -> str:
        parts: list[str] = []
        operators = {
            ContinuationPolicy.RUN_NEXT_ON_SUCCESS: " && ",
            ContinuationPolicy.RUN_NEXT_ON_FAILURE: " || ",
            ContinuationPolicy.UNCONDITIONAL: "; ",
        }
        for index, entry in enumerate(self.entries):
            parts.append(entry.command)
            if index < len(self.entries) - 1:
                parts.append(operators.get(entry.policy, "; "))
        return "".join(parts)


class CommandOutput(BaseModel):
    command: str
    args: list[str] = Field(default_factory=list)
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    skipped: bool = False


class ExecutionResult(BaseModel):
    action_id: str
    command_line: str
    outputs: list[CommandOutput] = Field(default_factory=list)
    succeeded: bool = True
