"""Core gitgraph engine exposing the front-end facing operations."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Protocol

from . import branches as branch_resolver
from . import graph as graph_builder
from . import search as search_engine
from .actions import ActionCatalog, load_user_actions
from .blame import BlameResolver
from .constants import DEFAULT_REMOTE, DEFAULT_SEARCH_WORKERS
from .errors import ErrorCode, GitGraphError
from .git_runner import GitRecordSource, ProcessExecutor, RecordSource
from .log_parser import mark_stashes, normalize_numstat_path, parse_numstat, parse_records
from .models import (
    ActionContext,
    ActionDef,
    ActionScope,
    BlameResult,
    Branch,
    CommitGraph,
    ExecutionResult,
    ExpandedPlan,
    FileChange,
    GraphQuery,
    SearchQuery,
    SearchResult,
)
from .state import AppState

logger = logging.getLogger(__name__)


class PlanExecutor(Protocol):
    def execute(self, plan: ExpandedPlan) -> ExecutionResult: ...


class GitGraphEngine:
    """Main service wiring the record source, graph builder, search and actions."""

    def __init__(
        self,
        source: RecordSource,
        catalog: ActionCatalog | None = None,
        executor: PlanExecutor | None = None,
        default_remote: str = DEFAULT_REMOTE,
        search_workers: int = DEFAULT_SEARCH_WORKERS,
        query_defaults: GraphQuery | None = None,
    ) -> None:
        self.source = source
        self.catalog = catalog or ActionCatalog.load_defaults()
        if executor is None and isinstance(source, GitRecordSource):
            executor = ProcessExecutor(source)
        self.executor = executor
        self.default_remote = default_remote
        self.search_workers = search_workers
        self.query_defaults = query_defaults or GraphQuery()
        self._blame = BlameResolver(source)

    @classmethod
    def from_state(
        cls,
        state: AppState,
        repo_path: Path | str | None = None,
        actions_file: Path | None = None,
        git_binary: str | None = None,
        search_workers: int = DEFAULT_SEARCH_WORKERS,
    ) -> GitGraphEngine:
        """Create an engine for the repository selected in ``state`` unless overridden."""
        repo = repo_path or state.selected_repo
        if repo is None:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                "No repository selected",
                "Pass a repository path or select one with 'gitgraph state set-repo'.",
            )
        catalog = catalog_for_state(state, actions_file)
        source = GitRecordSource(repo, git_binary=git_binary or state.git_binary)
        return cls(
            source,
            catalog=catalog,
            default_remote=state.default_remote,
            search_workers=search_workers,
            query_defaults=state.query_defaults,
        )

    def validate_repo(self) -> str:
        return self.source.validate_repo()

    def build_graph(self, query: GraphQuery | None = None) -> CommitGraph:
        """Read history and lay it out as a commit graph."""
        query = query or self.query_defaults
        started = time.perf_counter()
        stashes = self.source.stash_entries() if query.include_stashes else {}
        stdout = self.source.history(query, stash_hashes=list(stashes))
        records = parse_records(stdout)
        mark_stashes(records, stashes)
        graph = graph_builder.build(records, include_stashes=query.fold_stashes)
        branch_resolver.attach_refs(graph, self.list_branches())
        logger.info(
            "build_graph finished in %.1f ms (commits=%d)",
            (time.perf_counter() - started) * 1000,
            len(graph.commits),
        )
        return graph

    def search(
        self,
        search_query: SearchQuery,
        graph_query: GraphQuery | None = None,
        graph: CommitGraph | None = None,
    ) -> SearchResult:
        if graph is None:
            graph = self.build_graph(graph_query)
        return search_engine.search(graph, search_query, source=self.source, workers=self.search_workers)

    def blame(self, file: str, line: int) -> BlameResult:
        return self._blame.blame(file, line)

    def list_branches(self) -> list[Branch]:
        return branch_resolver.resolve(self.source.branch_records())

    def commit_file_changes(self, commit_hash: str) -> list[FileChange]:
        """Files touched by ``commit_hash`` with their added/removed line counts."""
        commit_hash = _require_commit(commit_hash)
        return parse_numstat(self.source.file_changes(commit_hash))

    def commit_file_patch(self, commit_hash: str, file_path: str, context_lines: int = 3) -> str:
        """Patch of one file in ``commit_hash``, or an empty string when it has none.

        ``file_path`` may be a raw numstat path such as ``src/{old => new}/a.py``;
        the destination path is tried after it. Merge commits fall back to a
        per-parent patch when the combined diff is empty.
        """
        commit_hash = _require_commit(commit_hash)
        if context_lines < 0:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"context_lines must be >= 0, got {context_lines}",
                "Pass a non-negative number of context lines.",
                {"context_lines": context_lines},
            )
        candidates = [file_path.strip()]
        normalized = normalize_numstat_path(file_path)
        if normalized != candidates[0]:
            candidates.append(normalized)

        for candidate in candidates:
            if not candidate:
                continue
            for split_merge_parents in (False, True):
                patch = self.source.file_patch(
                    commit_hash, candidate, context_lines, split_merge_parents=split_merge_parents
                )
                if patch.strip():
                    return patch
        logger.debug("No patch for %s in %s", file_path, commit_hash)
        return ""

    def list_actions(self, scope: ActionScope | str | None = None) -> list[ActionDef]:
        return self.catalog.for_scope(scope)

    def preview_action(self, action_id: str, context: ActionContext) -> ExpandedPlan:
        """Expand an action without running it, keeping failed dynamic markers."""
        context = self._with_defaults(context)
        action = self.catalog.resolve_id(action_id, context)
        return self.catalog.expand(action, context, source=self.source, strict=False)

    def run_action(self, action_id: str, context: ActionContext) -> ExecutionResult:
        context = self._with_defaults(context)
        action = self.catalog.resolve_id(action_id, context)
        plan = self.catalog.ensure_runnable(
            self.catalog.expand(action, context, source=self.source, strict=True)
        )
        if self.executor is None:
            raise GitGraphError(
                ErrorCode.INTERNAL_ERROR,
                "No executor configured for running actions",
                "Create the engine with an executor.",
                {"action_id": action.id},
            )
        result = self.executor.execute(plan)
        logger.info("Action %s finished (succeeded=%s)", action.id, result.succeeded)
        return result

    def _with_defaults(self, context: ActionContext) -> ActionContext:
        if context.default_remote_name:
            return context
        return context.model_copy(update={"default_remote_name": self.default_remote})


def catalog_for_state(state: AppState, actions_file: Path | None = None) -> ActionCatalog:
    """Catalog from the state snapshot with user definitions from ``actions_file`` on top."""
    catalog = ActionCatalog(state.actions) if state.actions else ActionCatalog.load_defaults()
    if actions_file is not None:
        catalog = catalog.merged_with(load_user_actions(actions_file))
    return catalog


def _require_commit(commit_hash: str) -> str:
    cleaned = commit_hash.strip()
    if not cleaned or cleaned.startswith("-"):
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            f"Invalid commit reference: {commit_hash!r}",
            "Pass a commit hash or revision.",
            {"commit": commit_hash},
        )
    return cleaned
