from __future__ import annotations

import subprocess
from collections.abc import Sequence

from gitgraph.constants import FIELD_SEP, RECORD_SEP
from gitgraph.errors import ErrorCode, GitGraphError
from gitgraph.models import (
    BlameResult,
    CommandOutput,
    ExecutionResult,
    ExpandedPlan,
    GraphQuery,
    RawCommit,
)


def record_line(
    commit_hash: str,
    parents: Sequence[str] = (),
    subject: str = "",
    refs: str = "",
    author: str = "Ada Lovelace",
    email: str = "ada@example.com",
    body: str = "",
    timestamp: int = 1_700_000_000,
) -> str:
    fields = [
        commit_hash,
        commit_hash[:7],
        " ".join(parents),
        author,
        email,
        str(timestamp),
        str(timestamp),
        refs,
        subject or f"commit {commit_hash}",
        body,
    ]
    return FIELD_SEP.join(fields) + RECORD_SEP


def history_output(*lines: str) -> str:
    return "\n".join(lines)


def raw(commit_hash: str, *parents: str, subject: str = "", is_stash: bool = False) -> RawCommit:
    return RawCommit(
        hash=commit_hash,
        short_hash=commit_hash[:7],
        parents=list(parents),
        subject=subject or f"commit {commit_hash}",
        is_stash=is_stash,
    )


class FakeRecordSource:
    """In-memory record source answering from canned data."""

    def __init__(
        self,
        history: str = "",
        stashes: dict[str, str] | None = None,
        files: dict[tuple[str, str], str] | None = None,
        worktree: dict[str, str] | None = None,
        config: dict[str, str] | None = None,
        exec_outputs: dict[str, str] | None = None,
        branch_lines: list[str] | None = None,
        blame_hash: str = "a" * 40,
        repo_root: str = "/repo",
        numstat: dict[str, str] | None = None,
        patches: dict[tuple[str, str, bool], str] | None = None,
    ) -> None:
        self.history_output = history
        self.stashes = stashes or {}
        self.files = files or {}
        self.worktree = worktree or {}
        self.config = config or {}
        self.exec_outputs = exec_outputs or {}
        self.branch_lines = branch_lines or []
        self.blame_hash = blame_hash
        self.repo_root = repo_root
        self.history_calls: list[tuple[GraphQuery, list[str]]] = []
        self.stash_calls = 0
        self.snapshot_calls: list[str] = []
        self.numstat = numstat or {}
        self.patches = patches or {}
        self.patch_calls: list[tuple[str, str, int, bool]] = []

    def history(self, query: GraphQuery, stash_hashes: Sequence[str] = ()) -> str:
        self.history_calls.append((query, list(stash_hashes)))
        return self.history_output

    def stash_entries(self) -> dict[str, str]:
        self.stash_calls += 1
        return dict(self.stashes)

    def file_snapshot(self, commit_hash: str, path: str) -> str | None:
        self.snapshot_calls.append(commit_hash)
        return self.files.get((commit_hash, path))

    def line_count(self, path: str) -> int | None:
        text = self.worktree.get(path)
        if text is None:
            return None
        return len(text.splitlines())

    def blame_line(self, path: str, line: int) -> BlameResult:
        return BlameResult(file=path, line=line, commit_hash=self.blame_hash, summary="blamed")

    def config_value(self, key: str) -> str | None:
        return self.config.get(key)

    def exec_helper(self, args: Sequence[str]) -> str:
        key = " ".join(args)
        if key not in self.exec_outputs:
            raise GitGraphError(
                ErrorCode.GIT_INVOCATION_FAILED,
                f"git {key} exited with 128",
                "Inspect stderr for the git error message.",
                {"exit_code": 128, "args": list(args)},
            )
        return self.exec_outputs[key]

    def branch_records(self) -> list[str]:
        return list(self.branch_lines)

    def validate_repo(self) -> str:
        return self.repo_root

    def file_changes(self, commit_hash: str) -> str:
        return self.numstat.get(commit_hash, "")

    def file_patch(
        self,
        commit_hash: str,
        path: str,
        context_lines: int = 3,
        split_merge_parents: bool = False,
    ) -> str:
        self.patch_calls.append((commit_hash, path, context_lines, split_merge_parents))
        return self.patches.get((commit_hash, path, split_merge_parents), "")


class RecordingExecutor:
    def __init__(self, succeeded: bool = True) -> None:
        self.succeeded = succeeded
        self.plans: list[ExpandedPlan] = []

    def execute(self, plan: ExpandedPlan) -> ExecutionResult:
        self.plans.append(plan)
        return ExecutionResult(
            action_id=plan.action_id,
            command_line=plan.command_line,
            outputs=[CommandOutput(command=entry.command, exit_code=0) for entry in plan.entries],
            succeeded=self.succeeded,
        )


class ScriptedGit:
    """Stands in for ``GitRecordSource.run`` with exit codes keyed by subcommand."""

    def __init__(self, exit_codes: dict[str, int] | None = None, git_binary: str = "git") -> None:
        self.exit_codes = exit_codes or {}
        self.git_binary = git_binary
        self.calls: list[list[str]] = []

    def run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        code = self.exit_codes.get(" ".join(args), 0)
        return subprocess.CompletedProcess(list(args), code, stdout=f"ran {' '.join(args)}\n", stderr="")
