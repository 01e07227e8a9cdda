"""Metadata and historical file-content search over a commit graph."""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING

from .constants import DEFAULT_SEARCH_WORKERS
from .errors import ErrorCode, GitGraphError
from .models import Commit, CommitGraph, SearchQuery, SearchResult

if TYPE_CHECKING:
    from .git_runner import RecordSource

logger = logging.getLogger(__name__)

# Futures kept in flight per worker while scanning file snapshots.
_IN_FLIGHT_PER_WORKER = 4


class Matcher:
    """Substring or regular-expression matcher built from a search query."""

    def __init__(self, text: str, regex: bool = False, case_sensitive: bool = False) -> None:
        self.text = text
        self.regex = regex
        self.case_sensitive = case_sensitive
        self._pattern: re.Pattern[str] | None = None
        self._needle = text if case_sensitive else text.lower()
        if regex and text:
            try:
                self._pattern = re.compile(text, 0 if case_sensitive else re.IGNORECASE)
            except re.error as exc:
                raise GitGraphError(
                    ErrorCode.INVALID_REGEX,
                    f"Invalid regular expression: {exc}",
                    "Fix the pattern or disable regex mode.",
                    {"pattern": text, "position": exc.pos},
                ) from exc

    @classmethod
    def from_query(cls, query: SearchQuery) -> Matcher:
        return cls(query.text, regex=query.regex, case_sensitive=query.case_sensitive)

    @property
    def matches_everything(self) -> bool:
        return not self.text

    def match_text(self, value: str) -> bool:
        if not self.text:
            return True
        if self._pattern is not None:
            return self._pattern.search(value) is not None
        haystack = value if self.case_sensitive else value.lower()
        return self._needle in haystack

    def match_hash(self, commit: Commit) -> bool:
        if self._pattern is not None:
            return bool(self._pattern.search(commit.hash) or self._pattern.search(commit.short_hash))
        prefix = self.text.lower()
        return commit.hash.lower().startswith(prefix) or commit.short_hash.lower().startswith(prefix)


def match_metadata(commit: Commit, query: SearchQuery, matcher: Matcher) -> bool:
    if matcher.matches_everything:
        return True
    if query.include_hash and matcher.match_hash(commit):
        return True
    if query.include_subject and matcher.match_text(commit.subject):
        return True
    if query.include_body and commit.body and matcher.match_text(commit.body):
        return True
    if query.include_author and matcher.match_text(commit.author_name):
        return True
    if query.include_email and matcher.match_text(commit.author_email):
        return True
    if query.include_refs:
        for ref in commit.refs:
            if matcher.match_text(ref.name):
                return True
            if ref.target and matcher.match_text(ref.target):
                return True
    return False


def search(
    graph: CommitGraph,
    query: SearchQuery,
    source: RecordSource | None = None,
    workers: int = DEFAULT_SEARCH_WORKERS,
) -> SearchResult:
    """Return the commits matching ``query`` in graph order, paginated by skip/limit.

    Without a file scope the commit metadata is matched. With a file scope
    each commit's snapshot of that file is read from ``source`` and matched
    instead, on a bounded worker pool.
    """
    matcher = Matcher.from_query(query)
    commits = graph.commits
    wanted = query.skip + query.limit if query.limit else None

    if query.file:
        if source is None:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                "File-scoped search needs a record source",
                "Search through the engine or pass a record source.",
                {"file": query.file},
            )
        matches, scanned = _search_content(commits, query.file, matcher, source, workers, wanted)
    else:
        matches, scanned = _search_metadata(commits, query, matcher, wanted)

    end = query.skip + query.limit if query.limit else None
    result = SearchResult(
        matches=matches[query.skip : end],
        skip=query.skip,
        limit=query.limit,
        scanned=scanned,
        exhausted=scanned >= len(commits),
    )
    logger.info(
        "Search finished: text=%r regex=%s file=%s scanned=%d returned=%d",
        query.text,
        query.regex,
        query.file,
        scanned,
        len(result.matches),
    )
    return result


def _search_metadata(
    commits: Sequence[Commit],
    query: SearchQuery,
    matcher: Matcher,
    wanted: int | None,
) -> tuple[list[Commit], int]:
    matches: list[Commit] = []
    scanned = 0
    for commit in commits:
        scanned += 1
        if match_metadata(commit, query, matcher):
            matches.append(commit)
            if wanted is not None and len(matches) >= wanted:
                break
    return matches, scanned


def _search_content(
    commits: Sequence[Commit],
    path: str,
    matcher: Matcher,
    source: RecordSource,
    workers: int,
    wanted: int | None,
) -> tuple[list[Commit], int]:
    stop = threading.Event()

    def scan(commit: Commit) -> bool:
        if stop.is_set():
            return False
        snapshot = source.file_snapshot(commit.hash, path)
        if snapshot is None:
            return False
        return matcher.match_text(snapshot)

    matches: list[Commit] = []
    scanned = 0
    window = max(1, workers) * _IN_FLIGHT_PER_WORKER
    pending: deque[tuple[Commit, Future[bool]]] = deque()
    remaining = iter(commits)

    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="gitgraph-search") as pool:
        try:
            while True:
                while len(pending) < window:
                    commit = next(remaining, None)
                    if commit is None:
                        break
                    pending.append((commit, pool.submit(scan, commit)))
                if not pending:
                    break
                commit, future = pending.popleft()
                matched = future.result()
                scanned += 1
                if matched:
                    matches.append(commit)
                    if wanted is not None and len(matches) >= wanted:
                        break
        finally:
            stop.set()
            for _, future in pending:
                future.cancel()

    logger.debug("Content search over %s scanned %d of %d commits", path, scanned, len(commits))
    return matches, scanned
