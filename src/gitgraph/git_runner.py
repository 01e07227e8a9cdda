"""Record source and command executor backed by the ``git`` binary."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

from .constants import (
    BRANCH_REF_FORMAT,
    DEFAULT_GIT_BINARY,
    FIELD_SEP,
    LOG_PRETTY_FORMAT,
    STASH_LIST_FORMAT,
)
from .errors import ErrorCode, GitGraphError
from .models import (
    BlameResult,
    CommandOutput,
    ContinuationPolicy,
    ExecutionResult,
    ExpandedPlan,
    GraphQuery,
)

logger = logging.getLogger(__name__)

_NOT_A_REPO_MARKERS = ("not a git repository", "cannot change to")
# stderr of ``git show <commit>:<path>`` when the commit simply lacks the path.
_MISSING_PATH_MARKERS = ("does not exist in", "exists on disk, but not in")
_SHOW_PREFIX = ("-c", "color.ui=never", "-c", "core.quotePath=false", "show")
_SHOW_DIFF_OPTIONS = ("--no-color", "--no-ext-diff", "--format=", "--find-renames", "--find-copies")


class RecordSource(Protocol):
    """Everything the engine needs from the version-control system."""

    def history(self, query: GraphQuery, stash_hashes: Sequence[str] = ()) -> str: ...

    def stash_entries(self) -> dict[str, str]: ...

    def file_snapshot(self, commit_hash: str, path: str) -> str | None: ...

    def line_count(self, path: str) -> int | None: ...

    def blame_line(self, path: str, line: int) -> BlameResult: ...

    def config_value(self, key: str) -> str | None: ...

    def exec_helper(self, args: Sequence[str]) -> str: ...

    def branch_records(self) -> list[str]: ...

    def validate_repo(self) -> str: ...

    def file_changes(self, commit_hash: str) -> str: ...

    def file_patch(
        self,
        commit_hash: str,
        path: str,
        context_lines: int = 3,
        split_merge_parents: bool = False,
    ) -> str: ...


class GitRecordSource:
    """``RecordSource`` implementation that shells out to git."""

    def __init__(
        self,
        repo_path: Path | str,
        git_binary: str = DEFAULT_GIT_BINARY,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser()
        self.git_binary = git_binary
        self.env = dict(env) if env is not None else None

    def run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.git_binary, *args]
        logger.debug("Running %s in %s", shlex.join(command), self.repo_path)
        try:
            completed = subprocess.run(
                command,
                cwd=self.repo_path,
                env=self.env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as exc:
            if not self.repo_path.is_dir():
                raise _not_a_repository(self.repo_path) from exc
            raise GitGraphError(
                ErrorCode.GIT_INVOCATION_FAILED,
                f"Git binary not found: {self.git_binary}",
                "Install git or configure the binary with GITGRAPH_GIT_BINARY.",
                {"binary": self.git_binary, "args": list(args)},
            ) from exc
        except OSError as exc:
            raise GitGraphError(
                ErrorCode.GIT_INVOCATION_FAILED,
                f"Unable to run {self.git_binary}",
                "Check the configured git binary and repository path.",
                {"binary": self.git_binary, "args": list(args)},
            ) from exc

        if check and completed.returncode != 0:
            stderr = completed.stderr.strip()
            if any(marker in stderr.lower() for marker in _NOT_A_REPO_MARKERS):
                raise _not_a_repository(self.repo_path, stderr)
            raise GitGraphError(
                ErrorCode.GIT_INVOCATION_FAILED,
                f"git {' '.join(args[:3])} exited with {completed.returncode}",
                "Inspect stderr for the git error message.",
                {"exit_code": completed.returncode, "stderr": stderr, "args": list(args)},
            )
        return completed

    def validate_repo(self) -> str:
        if not self.repo_path.is_dir():
            raise _not_a_repository(self.repo_path)
        try:
            completed = self.run(["rev-parse", "--show-toplevel"])
        except GitGraphError as exc:
            if exc.code == ErrorCode.NOT_A_GIT_REPOSITORY:
                raise
            raise _not_a_repository(self.repo_path, exc.details.get("stderr", "")) from exc
        root = completed.stdout.strip()
        if not root:
            raise _not_a_repository(self.repo_path)
        return root

    def history(self, query: GraphQuery, stash_hashes: Sequence[str] = ()) -> str:
        args = [
            "-c",
            "color.ui=never",
            "log",
            "--date-order",
            "--topo-order",
            "--decorate=full",
            "--color=never",
            LOG_PRETTY_FORMAT,
            "--no-show-signature",
            "--no-notes",
        ]
        if query.limit:
            args.extend(["-n", str(query.limit)])
        if query.skip:
            args.extend(["--skip", str(query.skip)])
        if query.all_refs:
            args.append("--all")
        if query.include_stashes:
            args.extend(stash_hashes)
        args.extend(query.additional_args)
        return self.run(args).stdout

    def stash_entries(self) -> dict[str, str]:
        """Map stash commit hashes to their ``stash@{n}`` selectors."""
        completed = self.run(["stash", "list", STASH_LIST_FORMAT], check=False)
        if completed.returncode != 0:
            logger.debug("Stash listing failed: %s", completed.stderr.strip())
            return {}
        entries: dict[str, str] = {}
        for line in completed.stdout.splitlines():
            commit_hash, _, selector = line.partition(FIELD_SEP)
            if commit_hash.strip() and selector.strip():
                entries.setdefault(commit_hash.strip(), selector.strip())
        return entries

    def file_snapshot(self, commit_hash: str, path: str) -> str | None:
        """Contents of ``path`` at ``commit_hash``; ``None`` when the commit lacks the path."""
        args = ["show", f"{commit_hash}:{path}"]
        completed = self.run(args, check=False)
        if completed.returncode == 0:
            return completed.stdout
        stderr = completed.stderr.strip()
        if any(marker in stderr for marker in _MISSING_PATH_MARKERS):
            return None
        if any(marker in stderr.lower() for marker in _NOT_A_REPO_MARKERS):
            raise _not_a_repository(self.repo_path, stderr)
        raise GitGraphError(
            ErrorCode.GIT_INVOCATION_FAILED,
            f"git show {commit_hash}:{path} exited with {completed.returncode}",
            "Inspect stderr for the git error message.",
            {"exit_code": completed.returncode, "stderr": stderr, "args": args},
        )

    def line_count(self, path: str) -> int | None:
        target = self.repo_path / path
        if not target.is_file():
            return None
        with target.open("r", encoding="utf-8", errors="replace") as handle:
            return sum(1 for _ in handle)

    def blame_line(self, path: str, line: int) -> BlameResult:
        completed = self.run(["blame", f"-L{line},{line}", "--porcelain", "--", path])
        return parse_blame_porcelain(completed.stdout, path, line)

    def config_value(self, key: str) -> str | None:
        completed = self.run(["config", "--get", key], check=False)
        if completed.returncode == 1:
            return None
        if completed.returncode != 0:
            raise GitGraphError(
                ErrorCode.GIT_INVOCATION_FAILED,
                f"git config --get {key} exited with {completed.returncode}",
                "Check the repository configuration.",
                {"exit_code": completed.returncode, "stderr": completed.stderr.strip(), "key": key},
            )
        return completed.stdout.strip()

    def exec_helper(self, args: Sequence[str]) -> str:
        if not args:
            return ""
        return self.run(list(args)).stdout

    def branch_records(self) -> list[str]:
        completed = self.run(["for-each-ref", BRANCH_REF_FORMAT, "refs/heads", "refs/remotes"])
        return [line for line in completed.stdout.splitlines() if line.strip()]

    def file_changes(self, commit_hash: str) -> str:
        """Raw ``--numstat`` output for the files touched by ``commit_hash``."""
        return self.run([*_SHOW_PREFIX, "--numstat", *_SHOW_DIFF_OPTIONS, commit_hash]).stdout

    def file_patch(
        self,
        commit_hash: str,
        path: str,
        context_lines: int = 3,
        split_merge_parents: bool = False,
    ) -> str:
        args = [*_SHOW_PREFIX, "--patch", *_SHOW_DIFF_OPTIONS, f"--unified={context_lines}"]
        if split_merge_parents:
            args.append("-m")
        args.extend([commit_hash, "--", path])
        return self.run(args).stdout


def parse_blame_porcelain(stdout: str, path: str, line: int) -> BlameResult:
    lines = stdout.splitlines()
    if not lines or not lines[0].split():
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Empty blame output for {path}:{line}",
            "Check that the file is tracked.",
            {"file": path, "line": line},
        )
    result = BlameResult(file=path, line=line, commit_hash=lines[0].split()[0])
    for entry in lines[1:]:
        if entry.startswith("author "):
            result.author_name = entry[len("author ") :]
        elif entry.startswith("author-mail "):
            result.author_email = entry[len("author-mail ") :].strip("<>")
        elif entry.startswith("author-time "):
            try:
                result.timestamp = int(entry[len("author-time ") :])
            except ValueError:
                logger.debug("Ignoring invalid author-time in blame output: %r", entry)
        elif entry.startswith("summary "):
            result.summary = entry[len("summary ") :]
    return result


class ProcessExecutor:
    """Runs expanded plans entry by entry, honouring continuation policies."""

    def __init__(self, source: GitRecordSource) -> None:
        self.source = source

    def execute(self, plan: ExpandedPlan) -> ExecutionResult:
        outputs: list[CommandOutput] = []
        status = 0
        previous_policy: ContinuationPolicy | None = None
        for entry in plan.entries:
            args = self._argv(entry.command)
            if not _should_run(previous_policy, status):
                outputs.append(CommandOutput(command=entry.command, args=args, skipped=True))
                logger.debug("Skipping %s after status %d", entry.command, status)
            else:
                completed = self.source.run(args, check=False)
                status = completed.returncode
                outputs.append(
                    CommandOutput(
                        command=entry.command,
                        args=args,
                        exit_code=completed.returncode,
                        stdout=completed.stdout,
                        stderr=completed.stderr,
                    )
                )
                logger.info("Action %s ran %r with exit code %d", plan.action_id, entry.command, status)
            previous_policy = entry.policy

        return ExecutionResult(
            action_id=plan.action_id,
            command_line=plan.command_line,
            outputs=outputs,
            succeeded=status == 0 or plan.ignore_errors,
        )

    def _argv(self, command: str) -> list[str]:
        try:
            words = shlex.split(command)
        except ValueError as exc:
            raise GitGraphError(
                ErrorCode.INVALID_INPUT,
                f"Cannot split command: {command}",
                "Check quoting in the action template.",
                {"command": command},
            ) from exc
        if words and words[0] in {"git", self.source.git_binary}:
            words = words[1:]
        return words


def _should_run(previous_policy: ContinuationPolicy | None, status: int) -> bool:
    if previous_policy == ContinuationPolicy.RUN_NEXT_ON_SUCCESS:
        return status == 0
    if previous_policy == ContinuationPolicy.RUN_NEXT_ON_FAILURE:
        return status != 0
    return True


def _not_a_repository(path: Path, stderr: str = "") -> GitGraphError:
    return GitGraphError(
        ErrorCode.NOT_A_GIT_REPOSITORY,
        f"Not a git repository: {path}",
        "Point gitgraph at a directory inside a git work tree.",
        {"path": str(path), "stderr": stderr},
    )
