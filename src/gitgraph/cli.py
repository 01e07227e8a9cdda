"""Command line interface for gitgraph with parity to the MCP tools."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from pydantic import ValidationError

from .engine import GitGraphEngine, catalog_for_state
from .errors import ErrorCode, GitGraphError
from .models import ActionContext, ActionScope, GraphQuery, SearchQuery
from .runtime import RuntimeSettings, configure_logging, get_runtime_settings
from .state import AppState, StateStore, encode

SEARCH_FIELDS = ("hash", "subject", "body", "author", "email", "refs")


def _csv_list(value: str) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _print_payload(payload: dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2))
        return

    status = payload.get("status", "unknown").upper()
    message = payload.get("message", "")
    print(f"[{status}] {message}")

    if payload.get("status") == "error":
        error_code = payload.get("error_code", "")
        suggestion = payload.get("suggestion", "")
        if error_code:
            print(f"error_code: {error_code}")
        if suggestion:
            print(f"suggestion: {suggestion}")
        for cause in payload.get("details", {}).get("causes", []):
            print(f"caused by: {cause}")
        return

    for key in (
        "repo_root",
        "count",
        "lane_count",
        "scanned",
        "commit_hash",
        "author_name",
        "author_email",
        "summary",
        "action_id",
        "command_line",
        "succeeded",
    ):
        if key in payload and payload[key] not in ("", None):
            print(f"{key}: {payload[key]}")

    for key in ("commits", "matches"):
        for commit in payload.get(key, []):
            indent = "| " * int(commit.get("lane", 0))
            marker = "s" if commit.get("is_stash") else "*"
            print(f"{indent}{marker} {commit.get('short_hash', '')} {commit.get('subject', '')}")

    for branch in payload.get("branches", []):
        upstream = f" -> {branch['upstream']}" if branch.get("upstream") else ""
        print(f"- {branch.get('name')} {branch.get('head', '')[:10]}{upstream}")

    for change in payload.get("files", []):
        added = "-" if change.get("added") is None else change["added"]
        removed = "-" if change.get("removed") is None else change["removed"]
        print(f"+{added} -{removed} {change.get('path')}")

    if payload.get("patch"):
        print(str(payload["patch"]).rstrip())

    for action in payload.get("actions", []):
        aliases = ", ".join(action.get("aliases", []))
        suffix = f" (aliases: {aliases})" if aliases else ""
        print(f"- {action.get('id')} [{action.get('scope')}] {action.get('title', '')}{suffix}")

    for entry in payload.get("entries", []):
        print(f"- {entry.get('command')} [{entry.get('policy')}]")

    for item in payload.get("unresolved", []):
        print(f"unresolved: {item.get('marker')}")

    for output in payload.get("outputs", []):
        if output.get("skipped"):
            print(f"- skipped: {output.get('command')}")
            continue
        print(f"- {output.get('command')} (exit {output.get('exit_code')})")
        for stream in ("stdout", "stderr"):
            text = str(output.get(stream, "")).rstrip()
            if text:
                print(text)

    if isinstance(payload.get("state"), dict):
        print("state:")
        for state_key, state_value in payload["state"].items():
            if state_key == "actions":
                print(f"  actions: {len(state_value)} definitions")
                continue
            print(f"  {state_key}: {state_value}")

    notice = payload.get("notice")
    if isinstance(notice, dict):
        fields = ", ".join(notice.get("details", {}).get("fields", []))
        print(f"notice: defaulted fields: {fields}")


def _error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, GitGraphError):
        return exc.to_payload()
    if isinstance(exc, ValidationError):
        return {
            "status": "error",
            "error_code": ErrorCode.INVALID_INPUT.value,
            "message": "Input validation failed",
            "suggestion": "Check command arguments and constraints.",
            "details": {"errors": exc.errors(include_context=False, include_input=False, include_url=False)},
        }
    if isinstance(exc, ValueError):
        return {
            "status": "error",
            "error_code": ErrorCode.INVALID_INPUT.value,
            "message": str(exc),
            "suggestion": "Check command arguments and environment variables.",
            "details": {},
        }
    return {
        "status": "error",
        "error_code": ErrorCode.INTERNAL_ERROR.value,
        "message": str(exc),
        "suggestion": "Retry with --json for diagnostics and inspect logs.",
        "details": {},
    }


def _add_common(parser: argparse.ArgumentParser, repo: bool = True) -> None:
    if repo:
        parser.add_argument("-r", "--repo", default="", help="Repository path (default: selected repo)")
        parser.add_argument("--git-binary", default="", help="Git binary to invoke")
    parser.add_argument("--json", action="store_true", help="Output machine-readable JSON")


def _add_context_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("action_id", help="Canonical action id, alias or short id")
    parser.add_argument(
        "--set",
        dest="values",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Context value, e.g. BRANCH_NAME=main (repeatable)",
    )
    parser.add_argument("--commit", action="append", default=[], help="Selected commit hash (repeatable)")
    parser.add_argument("--arg", dest="positional", action="append", default=[], help="Positional argument $N")
    parser.add_argument("--option", action="append", default=[], help="Enable an action option by id")
    parser.add_argument("--confirm", action="store_true", help="Confirm destructive branch-drop actions")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gitgraph", description="Git history graph, search and actions")
    parser.add_argument("--log-level", default="", help="Logging level (default: GITGRAPH_LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    graph = subparsers.add_parser("graph", help="Build the commit graph")
    _add_common(graph)
    graph.add_argument("--limit", type=int, default=None, help="Maximum commits to read")
    graph.add_argument("--skip", type=int, default=None, help="Commits to skip")
    graph.add_argument("--no-all", action="store_true", help="Only follow HEAD instead of all refs")
    graph.add_argument("--no-stashes", action="store_true", help="Leave stash entries out")
    graph.add_argument("--fold-stashes", action="store_true", help="Lay stashes out in branch lanes")
    graph.add_argument("--git-arg", action="append", default=[], help="Extra argument for the history query")

    search = subparsers.add_parser("search", help="Search commit metadata or file contents")
    _add_common(search)
    search.add_argument("text", nargs="?", default="", help="Search text or pattern")
    search.add_argument("--regex", action="store_true", help="Treat text as a regular expression")
    search.add_argument("--case-sensitive", action="store_true", help="Match case exactly")
    search.add_argument("--file", default="", help="Search the contents of this file at every commit")
    search.add_argument("--limit", type=int, default=0, help="Maximum matches (0 = unbounded)")
    search.add_argument("--skip", type=int, default=0, help="Matches to skip")
    search.add_argument(
        "--fields",
        default="",
        help=f"Comma-separated metadata fields to match ({','.join(SEARCH_FIELDS)})",
    )
    search.add_argument("--max-commits", type=int, default=None, help="Maximum commits to read")

    blame = subparsers.add_parser("blame", help="Show the commit that last changed a line")
    _add_common(blame)
    blame.add_argument("file", help="File path relative to the repository root")
    blame.add_argument("line", type=int, help="1-based line number")

    changes = subparsers.add_parser("changes", help="List the files changed by a commit")
    _add_common(changes)
    changes.add_argument("commit", help="Commit hash or revision")

    patch = subparsers.add_parser("patch", help="Show the patch of one file in a commit")
    _add_common(patch)
    patch.add_argument("commit", help="Commit hash or revision")
    patch.add_argument("file", help="File path, as listed by 'gitgraph changes'")
    patch.add_argument("--context", type=int, default=3, help="Context lines around each hunk")

    branches = subparsers.add_parser("branches", help="List local and remote branches")
    _add_common(branches)

    validate = subparsers.add_parser("validate-repo", help="Check that the path is a git work tree")
    _add_common(validate)

    actions = subparsers.add_parser("actions", help="List, preview or run actions")
    action_commands = actions.add_subparsers(dest="action_command", required=True)
    action_list = action_commands.add_parser("list", help="List actions")
    _add_common(action_list, repo=False)
    action_list.add_argument("--scope", choices=[scope.value for scope in ActionScope], default=None)
    action_preview = action_commands.add_parser("preview", help="Expand an action without running it")
    _add_common(action_preview)
    _add_context_arguments(action_preview)
    action_run = action_commands.add_parser("run", help="Expand and run an action")
    _add_common(action_run)
    _add_context_arguments(action_run)

    state = subparsers.add_parser("state", help="Show or change persisted preferences")
    state_commands = state.add_subparsers(dest="state_command", required=True)
    state_show = state_commands.add_parser("show", help="Show the current state")
    _add_common(state_show, repo=False)
    set_repo = state_commands.add_parser("set-repo", help="Select the repository")
    set_repo.add_argument("path", help="Repository path")
    _add_common(set_repo, repo=False)
    set_binary = state_commands.add_parser("set-git-binary", help="Set the preferred git binary")
    set_binary.add_argument("binary", help="Binary name or path")
    _add_common(set_binary, repo=False)
    set_remote = state_commands.add_parser("set-remote", help="Set the default remote")
    set_remote.add_argument("remote", help="Remote name")
    _add_common(set_remote, repo=False)
    select = state_commands.add_parser("select", help="Select commits for multi-commit actions")
    select.add_argument("hashes", nargs="*", help="Commit hashes (none clears the selection)")
    _add_common(select, repo=False)

    return parser


def _context_from_args(args: argparse.Namespace, state: AppState) -> ActionContext:
    values: dict[str, str] = {}
    for item in args.values:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Invalid context value {item!r}",
                "Use KEY=VALUE, e.g. --set BRANCH_NAME=main.",
            )
        values[key.strip()] = value
    return ActionContext.from_values(
        values,
        commit_hashes=args.commit or state.selected_commits,
        args=args.positional,
        enabled_options=args.option,
        confirmed=args.confirm,
    )


def _engine(args: argparse.Namespace, settings: RuntimeSettings, state: AppState) -> GitGraphEngine:
    return GitGraphEngine.from_state(
        state,
        repo_path=args.repo or None,
        actions_file=settings.actions_file,
        git_binary=args.git_binary or settings.git_binary,
        search_workers=settings.search_workers,
    )


def _graph_query(args: argparse.Namespace, defaults: GraphQuery) -> GraphQuery:
    updates: dict[str, Any] = {}
    if args.limit is not None:
        updates["limit"] = args.limit
    if args.skip is not None:
        updates["skip"] = args.skip
    if args.no_all:
        updates["all_refs"] = False
    if args.no_stashes:
        updates["include_stashes"] = False
    if args.fold_stashes:
        updates["fold_stashes"] = True
    if args.git_arg:
        updates["additional_args"] = list(args.git_arg)
    return GraphQuery.model_validate({**defaults.model_dump(), **updates})


def _search_query(args: argparse.Namespace) -> SearchQuery:
    fields = _csv_list(args.fields)
    unknown = [field for field in fields if field not in SEARCH_FIELDS]
    if unknown:
        raise GitGraphError(
            ErrorCode.INVALID_INPUT,
            f"Unknown search fields: {', '.join(unknown)}",
            f"Use any of: {', '.join(SEARCH_FIELDS)}.",
        )
    toggles = {f"include_{field}": (not fields or field in fields) for field in SEARCH_FIELDS}
    return SearchQuery(
        text=args.text,
        regex=args.regex,
        case_sensitive=args.case_sensitive,
        file=args.file or None,
        limit=args.limit,
        skip=args.skip,
        **toggles,
    )


def _state_command(args: argparse.Namespace, store: StateStore) -> dict[str, Any]:
    loaded = store.load()
    state = loaded.state
    if args.state_command == "show":
        response: dict[str, Any] = {
            "status": "success",
            "message": f"State loaded from {store.path}",
            "state": encode(state),
        }
        notice = loaded.notice()
        if notice is not None:
            response["notice"] = notice
        return response

    if args.state_command == "set-repo":
        state.select_repo(args.path)
        message = f"Selected repository {args.path}"
    elif args.state_command == "set-git-binary":
        state.set_git_binary(args.binary)
        message = f"Git binary set to {state.git_binary}"
    elif args.state_command == "set-remote":
        state.set_default_remote(args.remote)
        message = f"Default remote set to {state.default_remote}"
    else:
        state.select_commits(args.hashes)
        message = f"Selected {len(state.selected_commits)} commits"
    store.save(state)
    return {"status": "success", "message": message, "state": encode(state)}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    as_json = bool(getattr(args, "json", False))

    try:
        settings = get_runtime_settings()
        configure_logging(args.log_level or settings.log_level)
        store = StateStore(settings.state_file)

        if args.command == "state":
            _print_payload(_state_command(args, store), as_json=as_json)
            return 0

        state = store.load().state
        exit_code = 0
        if args.command == "actions" and args.action_command == "list":
            engine_actions = catalog_for_state(state, settings.actions_file).for_scope(args.scope)
            response: dict[str, Any] = {
                "status": "success",
                "message": f"{len(engine_actions)} actions",
                "count": len(engine_actions),
                "actions": [action.model_dump(mode="json") for action in engine_actions],
            }
        else:
            engine = _engine(args, settings, state)
            if args.command == "graph":
                graph = engine.build_graph(_graph_query(args, state.query_defaults))
                response = {
                    "status": "success",
                    "message": f"Graph built with {len(graph.commits)} commits",
                    "count": len(graph.commits),
                    **graph.model_dump(mode="json"),
                }
            elif args.command == "search":
                graph_query = state.query_defaults
                if args.max_commits is not None:
                    graph_query = graph_query.model_copy(update={"limit": args.max_commits})
                result = engine.search(_search_query(args), graph_query)
                response = {
                    "status": "success",
                    "message": f"{len(result.matches)} matching commits",
                    "count": len(result.matches),
                    **result.model_dump(mode="json"),
                }
            elif args.command == "blame":
                blame = engine.blame(args.file, args.line)
                response = {
                    "status": "success",
                    "message": f"{blame.file}:{blame.line}",
                    **blame.model_dump(mode="json"),
                }
            elif args.command == "branches":
                branches = engine.list_branches()
                response = {
                    "status": "success",
                    "message": f"{len(branches)} branches",
                    "count": len(branches),
                    "branches": [branch.model_dump(mode="json") for branch in branches],
                }
            elif args.command == "changes":
                files = engine.commit_file_changes(args.commit)
                response = {
                    "status": "success",
                    "message": f"{len(files)} files changed",
                    "count": len(files),
                    "files": [change.model_dump(mode="json") for change in files],
                }
            elif args.command == "patch":
                patch = engine.commit_file_patch(args.commit, args.file, context_lines=args.context)
                response = {
                    "status": "success",
                    "message": "Patch loaded" if patch else "No changes for this file",
                    "patch": patch,
                }
            elif args.command == "validate-repo":
                root = engine.validate_repo()
                response = {"status": "success", "message": "Repository is valid", "repo_root": root}
            elif args.action_command == "preview":
                plan = engine.preview_action(args.action_id, _context_from_args(args, state))
                response = {
                    "status": "success",
                    "message": "Action expanded" if plan.complete else "Action expanded with unresolved placeholders",
                    "command_line": plan.command_line,
                    "complete": plan.complete,
                    **plan.model_dump(mode="json"),
                }
            else:
                execution = engine.run_action(args.action_id, _context_from_args(args, state))
                response = {
                    "status": "success",
                    "message": "Action finished" if execution.succeeded else "Action failed",
                    **execution.model_dump(mode="json"),
                }
                exit_code = 0 if execution.succeeded else 1

        _print_payload(response, as_json=as_json)
        return exit_code
    except Exception as exc:  # noqa: BLE001
        payload = _error_payload(exc)
        _print_payload(payload, as_json=as_json)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
