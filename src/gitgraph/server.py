"""MCP server entrypoint and tool definitions for gitgraph."""

from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from typing import Annotated, Any, Callable

from mcp.server.fastmcp import FastMCP
from pydantic import Field, ValidationError

from .constants import VERSION
from .engine import GitGraphEngine, catalog_for_state
from .errors import ErrorCode, GitGraphError
from .models import ActionContext, GraphQuery, SearchQuery
from .runtime import (
    configure_logging,
    get_runtime_defaults,
    get_runtime_settings,
    validate_streamable_http_binding,
)
from .state import StateStore

logger = logging.getLogger(__name__)


def _build_fastmcp() -> FastMCP:
    """Instantiate FastMCP, dropping constructor options older SDKs reject."""
    kwargs: dict[str, Any] = {
        "name": "gitgraph",
        "instructions": (
            "Inspect git history as a laned commit graph and act on it. "
            "Use gitgraph_graph, gitgraph_search, gitgraph_blame, gitgraph_branches, "
            "gitgraph_commit_changes and gitgraph_commit_patch to read "
            "history, gitgraph_actions and gitgraph_preview_action to discover and expand "
            "command templates, and gitgraph_run_action to execute them."
        ),
        "version": VERSION,
        "json_response": True,
    }
    optional_keys = ("version", "json_response")

    while True:
        try:
            return FastMCP(**kwargs)
        except TypeError as exc:
            message = str(exc).lower()
            if "unexpected keyword argument" not in message:
                raise

            removed_key = next((key for key in optional_keys if key in message and key in kwargs), None)
            if removed_key is None:
                raise
            kwargs.pop(removed_key, None)
            logger.debug(
                "FastMCP constructor does not support '%s'; using compatibility fallback.",
                removed_key,
            )


mcp = _build_fastmcp()

READ_ONLY_TOOL_ANNOTATIONS = {
    "readOnlyHint": True,
    "idempotentHint": True,
    "destructiveHint": False,
    "openWorldHint": False,
}

# Actions run arbitrary git commands, including pushes to remotes.
DESTRUCTIVE_TOOL_ANNOTATIONS = {
    "readOnlyHint": False,
    "idempotentHint": False,
    "destructiveHint": True,
    "openWorldHint": True,
}


def _register_tool(annotations: dict[str, bool]):
    """Register a tool with annotations, falling back when the SDK lacks support."""

    def decorator(func):
        try:
            return mcp.tool(annotations=annotations)(func)
        except TypeError as exc:
            message = str(exc).lower()
            if "annotations" not in message and "unexpected keyword argument" not in message:
                raise
            logger.debug("FastMCP tool annotations not supported in this SDK version; using fallback.")
            return mcp.tool()(func)

    return decorator


def _error_payload_from_exception(exc: Exception) -> dict[str, Any]:
    """Convert internal exceptions into stable MCP error payloads."""
    if isinstance(exc, GitGraphError):
        return exc.to_payload()
    if isinstance(exc, ValidationError):
        return {
            "status": "error",
            "error_code": ErrorCode.INVALID_INPUT.value,
            "message": "Input validation failed",
            "suggestion": "Check field constraints and request schema.",
            "details": {"errors": exc.errors(include_context=False, include_input=False, include_url=False)},
        }
    logger.exception("Unhandled server exception", exc_info=exc)
    return {
        "status": "error",
        "error_code": ErrorCode.INTERNAL_ERROR.value,
        "message": str(exc),
        "suggestion": "Check server logs and retry the operation.",
        "details": {},
    }


def _build_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def _log_tool_phase(
    *,
    correlation_id: str,
    tool_name: str,
    phase: str,
    status: str,
    elapsed_seconds: float,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit structured phase-level diagnostics for tool execution."""
    payload: dict[str, Any] = {
        "event_type": "mcp_tool_phase",
        "correlation_id": correlation_id,
        "tool_name": tool_name,
        "phase": phase,
        "status": status,
        "elapsed_ms": round(elapsed_seconds * 1000, 3),
    }
    if details:
        payload["details"] = details
    logger.info("mcp_tool_phase %s", json.dumps(payload, ensure_ascii=True, sort_keys=True))


def _run_tool(tool_name: str, operation: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Execute a tool operation, tagging the response with a correlation id."""
    total_start = time.perf_counter()
    correlation_id = _build_correlation_id()
    operation_start = time.perf_counter()
    try:
        response_payload = dict(operation())
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="operation_execution",
            status="ok",
            elapsed_seconds=time.perf_counter() - operation_start,
        )
        response_payload["correlation_id"] = correlation_id
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="total",
            status="ok",
            elapsed_seconds=time.perf_counter() - total_start,
        )
        return response_payload
    except Exception as exc:  # noqa: BLE001
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="operation_execution",
            status="error",
            elapsed_seconds=time.perf_counter() - operation_start,
            details={"exception": exc.__class__.__name__},
        )
        error_payload = _error_payload_from_exception(exc)
        error_payload["correlation_id"] = correlation_id
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="total",
            status="error",
            elapsed_seconds=time.perf_counter() - total_start,
            details={"error_code": error_payload.get("error_code")},
        )
        return error_payload


def _engine_for(repo: str | None, git_binary: str | None = None) -> GitGraphEngine:
    settings = get_runtime_settings()
    state = StateStore(settings.state_file).load().state
    return GitGraphEngine.from_state(
        state,
        repo_path=repo or None,
        actions_file=settings.actions_file,
        git_binary=git_binary or settings.git_binary,
        search_workers=settings.search_workers,
    )


def _graph_query(
    engine: GitGraphEngine,
    limit: int | None,
    skip: int | None = None,
    all_refs: bool | None = None,
    include_stashes: bool | None = None,
    fold_stashes: bool | None = None,
) -> GraphQuery:
    overrides = {
        "limit": limit,
        "skip": skip,
        "all_refs": all_refs,
        "include_stashes": include_stashes,
        "fold_stashes": fold_stashes,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    return GraphQuery.model_validate({**engine.query_defaults.model_dump(), **updates})


RepoArg = Annotated[
    str | None,
    Field(description="Repository path. Defaults to the repository selected in gitgraph state."),
]
GitBinaryArg = Annotated[str | None, Field(description="Git binary to invoke instead of the configured one")]
ContextValuesArg = Annotated[
    dict[str, str] | None,
    Field(
        description=(
            "Placeholder values keyed by name, e.g. {'BRANCH_NAME': 'main'}. "
            "Unknown keys are available as custom placeholders."
        )
    ),
]
CommitsArg = Annotated[list[str] | None, Field(description="Selected commit hashes for multi-commit actions")]
ArgsArg = Annotated[list[str] | None, Field(description="Positional arguments for $1, $2, ...")]
OptionsArg = Annotated[list[str] | None, Field(description="Option ids to enable")]
ConfirmedArg = Annotated[bool, Field(description="Confirm destructive branch-drop actions")]


def _action_context(
    context: dict[str, str] | None,
    commits: list[str] | None,
    args: list[str] | None,
    options: list[str] | None,
    confirmed: bool,
) -> ActionContext:
    return ActionContext.from_values(
        context,
        commit_hashes=commits or [],
        args=args or [],
        enabled_options=options or [],
        confirmed=confirmed,
    )


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_validate_repo(repo: RepoArg = None, git_binary: GitBinaryArg = None) -> dict[str, Any]:
    """Check that a path is inside a git work tree and return its root."""

    def _operation() -> dict[str, Any]:
        root = _engine_for(repo, git_binary).validate_repo()
        return {"status": "success", "message": "Repository is valid", "repo_root": root}

    return _run_tool("gitgraph_validate_repo", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_graph(
    repo: RepoArg = None,
    limit: Annotated[int | None, Field(description="Maximum commits to read (0 = unbounded)", ge=0)] = None,
    skip: Annotated[int | None, Field(description="Commits to skip", ge=0)] = None,
    all_refs: Annotated[bool | None, Field(description="Follow all refs instead of HEAD only")] = None,
    include_stashes: Annotated[bool | None, Field(description="Include stash entries")] = None,
    fold_stashes: Annotated[bool | None, Field(description="Lay stashes out in branch lanes")] = None,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Build the laned commit graph for a repository."""

    def _operation() -> dict[str, Any]:
        engine = _engine_for(repo, git_binary)
        graph = engine.build_graph(
            _graph_query(engine, limit, skip, all_refs, include_stashes, fold_stashes)
        )
        return {
            "status": "success",
            "message": f"Graph built with {len(graph.commits)} commits",
            "count": len(graph.commits),
            **graph.model_dump(mode="json"),
        }

    return _run_tool("gitgraph_graph", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_search(
    text: Annotated[str, Field(description="Search text or regular expression")] = "",
    repo: RepoArg = None,
    regex: Annotated[bool, Field(description="Treat text as a regular expression")] = False,
    case_sensitive: Annotated[bool, Field(description="Match case exactly")] = False,
    file: Annotated[
        str | None,
        Field(description="Search the contents of this file at every commit instead of metadata"),
    ] = None,
    limit: Annotated[int, Field(description="Maximum matches (0 = unbounded)", ge=0)] = 0,
    skip: Annotated[int, Field(description="Matches to skip", ge=0)] = 0,
    max_commits: Annotated[int | None, Field(description="Maximum commits to read", ge=0)] = None,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Search commit metadata, or one file's contents across history."""

    def _operation() -> dict[str, Any]:
        engine = _engine_for(repo, git_binary)
        query = SearchQuery(
            text=text,
            regex=regex,
            case_sensitive=case_sensitive,
            file=file,
            limit=limit,
            skip=skip,
        )
        result = engine.search(query, _graph_query(engine, max_commits))
        return {
            "status": "success",
            "message": f"{len(result.matches)} matching commits",
            "count": len(result.matches),
            **result.model_dump(mode="json"),
        }

    return _run_tool("gitgraph_search", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_blame(
    file: Annotated[str, Field(description="File path relative to the repository root")],
    line: Annotated[int, Field(description="1-based line number")],
    repo: RepoArg = None,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Find the commit that last changed one line of a file."""

    def _operation() -> dict[str, Any]:
        blame = _engine_for(repo, git_binary).blame(file, line)
        return {"status": "success", "message": f"{blame.file}:{blame.line}", **blame.model_dump(mode="json")}

    return _run_tool("gitgraph_blame", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_branches(repo: RepoArg = None, git_binary: GitBinaryArg = None) -> dict[str, Any]:
    """List local and remote branches with their heads and upstreams."""

    def _operation() -> dict[str, Any]:
        branches = _engine_for(repo, git_binary).list_branches()
        return {
            "status": "success",
            "message": f"{len(branches)} branches",
            "count": len(branches),
            "branches": [branch.model_dump(mode="json") for branch in branches],
        }

    return _run_tool("gitgraph_branches", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_commit_changes(
    commit: Annotated[str, Field(description="Commit hash or revision")],
    repo: RepoArg = None,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """List the files a commit changed with added/removed line counts."""

    def _operation() -> dict[str, Any]:
        files = _engine_for(repo, git_binary).commit_file_changes(commit)
        return {
            "status": "success",
            "message": f"{len(files)} files changed",
            "count": len(files),
            "files": [change.model_dump(mode="json") for change in files],
        }

    return _run_tool("gitgraph_commit_changes", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_commit_patch(
    commit: Annotated[str, Field(description="Commit hash or revision")],
    file: Annotated[str, Field(description="File path as listed by gitgraph_commit_changes")],
    context_lines: Annotated[int, Field(description="Context lines around each hunk", ge=0)] = 3,
    repo: RepoArg = None,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Return the patch of one file in a commit, empty when the file is unchanged."""

    def _operation() -> dict[str, Any]:
        patch = _engine_for(repo, git_binary).commit_file_patch(commit, file, context_lines=context_lines)
        return {
            "status": "success",
            "message": "Patch loaded" if patch else "No changes for this file",
            "patch": patch,
        }

    return _run_tool("gitgraph_commit_patch", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_actions(
    scope: Annotated[
        str | None,
        Field(description="Action scope: global, commit, commits, stash, tag, branch or branch-drop"),
    ] = None,
) -> dict[str, Any]:
    """List the available action definitions."""

    def _operation() -> dict[str, Any]:
        settings = get_runtime_settings()
        state = StateStore(settings.state_file).load().state
        try:
            actions = catalog_for_state(state, settings.actions_file).for_scope(scope)
        except ValueError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Unknown action scope: {scope}",
                "Use global, commit, commits, stash, tag, branch or branch-drop.",
                {"scope": scope},
            ) from exc
        return {
            "status": "success",
            "message": f"{len(actions)} actions",
            "count": len(actions),
            "actions": [action.model_dump(mode="json") for action in actions],
        }

    return _run_tool("gitgraph_actions", _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def gitgraph_preview_action(
    action_id: Annotated[str, Field(description="Canonical action id, alias or short id")],
    repo: RepoArg = None,
    context: ContextValuesArg = None,
    commits: CommitsArg = None,
    args: ArgsArg = None,
    options: OptionsArg = None,
    confirmed: ConfirmedArg = False,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Expand an action into its command plan without running it."""

    def _operation() -> dict[str, Any]:
        engine = _engine_for(repo, git_binary)
        plan = engine.preview_action(action_id, _action_context(context, commits, args, options, confirmed))
        return {
            "status": "success",
            "message": "Action expanded" if plan.complete else "Action expanded with unresolved placeholders",
            "command_line": plan.command_line,
            "complete": plan.complete,
            **plan.model_dump(mode="json"),
        }

    return _run_tool("gitgraph_preview_action", _operation)


@_register_tool(DESTRUCTIVE_TOOL_ANNOTATIONS)
def gitgraph_run_action(
    action_id: Annotated[str, Field(description="Canonical action id, alias or short id")],
    repo: RepoArg = None,
    context: ContextValuesArg = None,
    commits: CommitsArg = None,
    args: ArgsArg = None,
    options: OptionsArg = None,
    confirmed: ConfirmedArg = False,
    git_binary: GitBinaryArg = None,
) -> dict[str, Any]:
    """Expand and run an action in the repository."""

    def _operation() -> dict[str, Any]:
        engine = _engine_for(repo, git_binary)
        execution = engine.run_action(action_id, _action_context(context, commits, args, options, confirmed))
        return {
            "status": "success" if execution.succeeded else "error",
            "message": "Action finished" if execution.succeeded else "Action failed",
            **execution.model_dump(mode="json"),
        }

    return _run_tool("gitgraph_run_action", _operation)


def main() -> None:
    """Run the gitgraph MCP server in stdio or streamable HTTP mode."""
    parser = argparse.ArgumentParser(description="gitgraph MCP server")
    try:
        transport_default, host_default, port_default = get_runtime_defaults()
        settings = get_runtime_settings()
    except ValueError as exc:
        parser.error(str(exc))
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable-http"],
        default=transport_default,
        help="Server transport mode (default: stdio).",
    )
    parser.add_argument("--host", default=host_default, help="Host for streamable HTTP transport.")
    parser.add_argument("--port", type=int, default=port_default, help="Port for streamable HTTP transport.")
    parser.add_argument(
        "--allow-public-http",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Allow non-loopback streamable-http host binding.",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level.")
    args = parser.parse_args()

    try:
        validate_streamable_http_binding(
            transport=args.transport,
            host=str(args.host),
            allow_public_http=bool(args.allow_public_http),
        )
        configure_logging(args.log_level)
    except ValueError as exc:
        parser.error(str(exc))
    if not (1 <= args.port <= 65535):
        parser.error("--port must be between 1 and 65535.")

    if args.transport == "stdio":
        mcp.run()
        return

    mcp.settings.host = args.host
    mcp.settings.port = args.port
    mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
