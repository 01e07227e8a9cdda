"""Branch and ref resolution."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from .constants import FIELD_SEP
from .errors import ErrorCode, GitGraphError
from .models import Branch, CommitGraph, GitRef, RefKind

logger = logging.getLogger(__name__)

_LOCAL_PREFIX = "refs/heads/"
_REMOTE_PREFIX = "refs/remotes/"


def parse_branch_record(line: str) -> Branch | None:
    """Parse one ``for-each-ref`` line; symbolic remote HEAD pointers yield ``None``."""
    fields = line.rstrip("\r\n").split(FIELD_SEP)
    if len(fields) < 2 or not fields[0].strip() or not fields[1].strip():
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Invalid branch record: {line!r}",
            "Branch records need at least a ref name and an object id.",
            {"record": line[:200]},
        )
    full_ref = fields[0].strip()
    head = fields[1].strip()
    upstream = fields[2].strip() if len(fields) > 2 and fields[2].strip() else None
    upstream_remote = fields[3].strip() if len(fields) > 3 and fields[3].strip() else None

    if full_ref.startswith(_REMOTE_PREFIX):
        name = full_ref[len(_REMOTE_PREFIX) :]
        if name.endswith("/HEAD"):
            return None
        remote_name, _, _ = name.partition("/")
        return Branch(
            name=name,
            full_ref=full_ref,
            head=head,
            upstream=None,
            remote=True,
            remote_name=remote_name,
        )

    name = full_ref[len(_LOCAL_PREFIX) :] if full_ref.startswith(_LOCAL_PREFIX) else full_ref
    return Branch(
        name=name,
        full_ref=full_ref,
        head=head,
        upstream=upstream,
        remote=False,
        remote_name=upstream_remote,
    )


def resolve(records: Iterable[str | Branch | Mapping[str, Any]]) -> list[Branch]:
    """Turn raw branch records into branches, keeping input order."""
    branches: list[Branch] = []
    seen: dict[tuple[bool, str], str] = {}
    for record in records:
        branch = _coerce_branch(record)
        if branch is None:
            continue
        key = (branch.remote, branch.name)
        if key in seen:
            namespace = "remote" if branch.remote else "local"
            raise GitGraphError(
                ErrorCode.DUPLICATE_BRANCH,
                f"Duplicate {namespace} branch {branch.name!r}",
                "Branch names must be unique within the local and each remote namespace.",
                {"name": branch.name, "remote": branch.remote, "heads": [seen[key], branch.head]},
            )
        seen[key] = branch.head
        branches.append(branch)
    logger.debug("Resolved %d branches", len(branches))
    return branches


def attach_refs(graph: CommitGraph, branches: Iterable[Branch]) -> CommitGraph:
    """Label the commit at each branch head, skipping labels already present."""
    for branch in branches:
        commit = graph.get(branch.head)
        if commit is None:
            continue
        kind = RefKind.REMOTE_BRANCH if branch.remote else RefKind.LOCAL_BRANCH
        if any(ref.name == branch.name and ref.kind == kind for ref in commit.refs):
            continue
        if any(ref.target == branch.name and ref.kind == RefKind.HEAD for ref in commit.refs):
            continue
        commit.refs.append(GitRef(kind=kind, name=branch.name))
    return graph


def _coerce_branch(record: str | Branch | Mapping[str, Any]) -> Branch | None:
    if isinstance(record, Branch):
        return record
    if isinstance(record, str):
        if not record.strip():
            return None
        return parse_branch_record(record)
    try:
        return Branch.model_validate(record)
    except ValidationError as exc:
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            "Invalid branch record",
            "Branch records need name and head fields.",
            {"errors": exc.errors(include_url=False)},
        ) from exc
