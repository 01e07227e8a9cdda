"""Parsing of bulk history records emitted by the record source."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from .constants import FIELD_SEP, RECORD_FIELD_COUNT, RECORD_SEP
from .errors import ErrorCode, GitGraphError
from .models import FileChange, GitRef, RawCommit, RefKind

logger = logging.getLogger(__name__)

_REF_PREFIXES = ("refs/heads/", "refs/remotes/", "refs/tags/")
_RENAME_BRACES = re.compile(r"\{([^{}]*) => ([^{}]*)\}")


def parse_records(stdout: str) -> list[RawCommit]:
    """Split raw history output into commit records.

    Records are terminated by the ASCII record separator and fields by the
    unit separator, neither of which can appear in commit messages produced by
    the history query.
    """
    commits: list[RawCommit] = []
    for index, raw_record in enumerate(stdout.split(RECORD_SEP)):
        record = raw_record.strip("\r\n ")
        if not record:
            continue
        commits.append(parse_record(record, index=index))
    logger.debug("Parsed %d history records", len(commits))
    return commits


def parse_record(record: str, index: int = 0) -> RawCommit:
    # A separator inside the subject or body shows up as extra fields.
    fields = record.split(FIELD_SEP)
    if len(fields) != RECORD_FIELD_COUNT:
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Expected {RECORD_FIELD_COUNT} fields, got {len(fields)} in record {index}",
            "Check that the history query uses the unit/record separator format "
            "and that commit messages do not contain the separator characters.",
            {"record_index": index, "record": record[:200]},
        )

    commit_hash = fields[0].strip()
    if not commit_hash:
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Record {index} has an empty commit hash",
            "Check the history query output.",
            {"record_index": index},
        )

    authored_at = _parse_timestamp(fields[5], "authored", index)
    committed_at = _parse_timestamp(fields[6], "committed", index)
    refs = parse_refs(fields[7])

    return RawCommit(
        hash=commit_hash,
        short_hash=fields[1].strip() or commit_hash[:7],
        parents=fields[2].split(),
        author_name=fields[3],
        author_email=fields[4],
        authored_at=authored_at,
        committed_at=committed_at,
        refs=refs,
        subject=fields[8],
        body=fields[9].strip("\n"),
        is_stash=any(ref.kind == RefKind.STASH for ref in refs),
    )


def mark_stashes(commits: Iterable[RawCommit], stash_entries: Mapping[str, str]) -> None:
    """Flag stash commits and label them with their reflog selector."""
    if not stash_entries:
        return
    for commit in commits:
        selector = stash_entries.get(commit.hash)
        if selector is None:
            continue
        commit.is_stash = True
        if not any(ref.kind == RefKind.STASH and ref.name == selector for ref in commit.refs):
            commit.refs.append(GitRef(kind=RefKind.STASH, name=selector))


def parse_refs(decorations: str) -> list[GitRef]:
    cleaned = decorations.strip()
    if not cleaned:
        return []
    return [parse_ref_token(token.strip()) for token in cleaned.split(",") if token.strip()]


def parse_ref_token(token: str) -> GitRef:
    if " -> " in token:
        left, right = token.split(" -> ", 1)
        left = left.strip()
        kind = RefKind.HEAD if left == "HEAD" else classify_ref(left)
        return GitRef(kind=kind, name=simplify_ref_name(left), target=simplify_ref_name(right.strip()))

    if token.startswith("tag: "):
        return GitRef(kind=RefKind.TAG, name=simplify_ref_name(token[len("tag: ") :].strip()))

    if token == "HEAD":
        return GitRef(kind=RefKind.HEAD, name="HEAD")

    return GitRef(kind=classify_ref(token), name=simplify_ref_name(token))


def classify_ref(raw: str) -> RefKind:
    if raw.startswith("refs/heads/"):
        return RefKind.LOCAL_BRANCH
    if raw.startswith("refs/remotes/"):
        return RefKind.REMOTE_BRANCH
    if raw.startswith("refs/tags/"):
        return RefKind.TAG
    if raw == "refs/stash":
        return RefKind.STASH
    return RefKind.OTHER


def simplify_ref_name(raw: str) -> str:
    for prefix in _REF_PREFIXES:
        if raw.startswith(prefix):
            return raw[len(prefix) :]
    return raw


def _parse_timestamp(value: str, label: str, index: int) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Invalid {label} timestamp {value!r} in record {index}",
            "Timestamps must be unix seconds.",
            {"record_index": index, "field": f"{label}_at"},
        ) from exc


def parse_numstat(stdout: str) -> list[FileChange]:
    """Parse ``git show --numstat`` rows of ``added<TAB>removed<TAB>path``."""
    changes: list[FileChange] = []
    for line in stdout.splitlines():
        parts = line.strip().split("\t", 2)
        if len(parts) != 3:
            continue
        added, removed, path = parts
        changes.append(
            FileChange(
                path=path,
                normalized_path=normalize_numstat_path(path),
                added=_parse_numstat_count(added),
                removed=_parse_numstat_count(removed),
            )
        )
    return changes


def normalize_numstat_path(raw: str) -> str:
    """Reduce a rename such as ``src/{old => new}/a.py`` to its destination path."""
    path = raw.strip().strip('"')
    if "{" in path and " => " in path:
        path = _RENAME_BRACES.sub(lambda match: match.group(2).strip(), path)
        path = path.replace("//", "/").lstrip("/")
    if " => " in path:
        path = path.rsplit(" => ", 1)[1].strip()
    return path


def _parse_numstat_count(value: str) -> int | None:
    # binary files report "-"
    try:
        return int(value)
    except ValueError:
        return None
