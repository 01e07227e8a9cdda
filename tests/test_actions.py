from __future__ import annotations

from pathlib import Path

import pytest
from support import FakeRecordSource

from gitgraph.actions import ActionCatalog, load_user_actions, parse_catalog, slugify
from gitgraph.errors import ErrorCode, GitGraphError
from gitgraph.models import ActionContext, ActionDef, ActionScope, ContinuationPolicy


@pytest.fixture(scope="module")
def catalog() -> ActionCatalog:
    return ActionCatalog.load_defaults()


def _commands(plan) -> list[str]:
    return [entry.command for entry in plan.entries]


def test_builtin_catalog_covers_every_scope(catalog: ActionCatalog) -> None:
    assert {action.scope for action in catalog.for_scope()} == set(ActionScope)
    assert all(action.scope == ActionScope.STASH for action in catalog.for_scope("stash"))
    assert "branch:checkout" in catalog


def test_checkout_branch(catalog: ActionCatalog) -> None:
    plan = catalog.expand("branch:checkout", ActionContext(branch_name="main"))

    assert _commands(plan) == ["git checkout main"]
    assert plan.entries[0].policy == ContinuationPolicy.RUN_NEXT
    assert plan.complete


def test_alias_resolves_to_canonical_action(catalog: ActionCatalog) -> None:
    assert catalog.resolve_id("checkout").id == "branch:checkout"
    assert catalog.resolve_id("cherry-pick").id == "commit:cherry-pick"


def test_missing_context_value(catalog: ActionCatalog) -> None:
    context = ActionContext(branch_name="main", default_remote_name="origin")
    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("branch:push", context)
    assert exc_info.value.code == ErrorCode.MISSING_CONTEXT_PARAM
    assert exc_info.value.details["key"] == "LOCAL_BRANCH_NAME"


def test_composite_template_runs_next_on_success(catalog: ActionCatalog) -> None:
    plan = catalog.expand("global:commit-all", ActionContext(args=["Ship it"]))

    assert _commands(plan) == ["git add -A", 'git commit -m "Ship it"']
    assert [entry.policy for entry in plan.entries] == [
        ContinuationPolicy.RUN_NEXT_ON_SUCCESS,
        ContinuationPolicy.RUN_NEXT,
    ]
    assert plan.command_line == 'git add -A && git commit -m "Ship it"'


def test_sequence_and_fallback_operators() -> None:
    catalog = ActionCatalog(
        [
            ActionDef(id="sync", template="git fetch; git status || git log -1"),
        ]
    )

    plan = catalog.expand("sync", ActionContext())

    assert _commands(plan) == ["git fetch", "git status", "git log -1"]
    assert [entry.policy for entry in plan.entries] == [
        ContinuationPolicy.UNCONDITIONAL,
        ContinuationPolicy.RUN_NEXT_ON_FAILURE,
        ContinuationPolicy.RUN_NEXT,
    ]


def test_positional_falls_back_to_param_default(catalog: ActionCatalog) -> None:
    context = ActionContext(commit_hash="abc1234")
    assert _commands(catalog.expand("commit:reset", context)) == ["git reset --mixed abc1234"]

    hard = context.model_copy(update={"args": ["--hard"]})
    assert _commands(catalog.expand("commit:reset", hard)) == ["git reset --hard abc1234"]


def test_param_default_can_use_context(catalog: ActionCatalog) -> None:
    context = ActionContext(commit_hash="abc1234", commit_body="Better message")
    assert _commands(catalog.expand("commit:amend-message", context)) == [
        'git commit --amend -m "Better message"'
    ]


def test_missing_positional_without_default() -> None:
    catalog = ActionCatalog([ActionDef(id="show", template="git show $2")])
    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("show", ActionContext(args=["one"]))
    assert exc_info.value.code == ErrorCode.MISSING_CONTEXT_PARAM
    assert exc_info.value.details["key"] == "$2"


def test_options_append_flags(catalog: ActionCatalog) -> None:
    assert _commands(catalog.expand("global:stash", ActionContext())) == [
        'git stash push -m "WIP" --include-untracked'
    ]
    plan = catalog.expand("global:pull", ActionContext(enabled_options=["rebase"]))
    assert _commands(plan) == ["git pull --rebase"]


def test_unknown_option_is_rejected(catalog: ActionCatalog) -> None:
    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("global:pull", ActionContext(enabled_options=["octopus"]))
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
    assert exc_info.value.details["options"] == ["octopus"]


def test_scope_requires_context(catalog: ActionCatalog) -> None:
    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("commit:checkout", ActionContext())
    assert exc_info.value.code == ErrorCode.SCOPE_VIOLATION
    assert exc_info.value.details["missing_keys"] == ["COMMIT_HASH"]

    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("commits:diff", ActionContext(commit_hash="abc"))
    assert exc_info.value.details["missing_keys"] == ["COMMIT_HASHES"]


def test_branch_drop_needs_confirmation(catalog: ActionCatalog) -> None:
    context = ActionContext(branch_name="feature")
    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("branch-drop:delete", context)
    assert exc_info.value.code == ErrorCode.SCOPE_VIOLATION
    assert exc_info.value.details["missing_keys"] == ["confirmed"]

    confirmed = context.model_copy(update={"confirmed": True, "enabled_options": ["force"]})
    assert _commands(catalog.expand("branch-drop:delete", confirmed)) == ["git branch -d feature -D"]


def test_multi_commit_scope_joins_hashes(catalog: ActionCatalog) -> None:
    plan = catalog.expand("commits:cherry-pick", ActionContext(commit_hashes=["a1", "b2"]))
    assert _commands(plan) == ["git cherry-pick a1 b2"]


def test_config_placeholder_is_resolved(catalog: ActionCatalog) -> None:
    source = FakeRecordSource(config={"init.defaultBranch": "trunk"})
    context = ActionContext(branch_name="feature", default_remote_name="origin")

    plan = catalog.expand("branch:pull-default", context, source=source)

    assert _commands(plan) == ["git pull origin trunk"]


def test_unset_config_fails_strict_and_is_kept_in_preview(catalog: ActionCatalog) -> None:
    source = FakeRecordSource()
    context = ActionContext(branch_name="feature", default_remote_name="origin")

    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("branch:pull-default", context, source=source)
    assert exc_info.value.code == ErrorCode.DYNAMIC_PLACEHOLDER_FAILED
    assert exc_info.value.details["key"] == "init.defaultBranch"

    plan = catalog.expand("branch:pull-default", context, source=source, strict=False)
    assert not plan.complete
    assert _commands(plan) == ["git pull origin {GIT_CONFIG:init.defaultBranch}"]
    assert plan.unresolved[0].kind == "config"
    assert plan.entries[0].unresolved == ["{GIT_CONFIG:init.defaultBranch}"]

    with pytest.raises(GitGraphError) as exc_info:
        catalog.ensure_runnable(plan)
    assert exc_info.value.code == ErrorCode.DYNAMIC_PLACEHOLDER_FAILED


def test_exec_failure_keeps_its_cause() -> None:
    catalog = ActionCatalog([ActionDef(id="log-head", template="git log -1 {GIT_EXEC:rev-parse HEAD}")])
    source = FakeRecordSource()

    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("log-head", ActionContext(), source=source)
    error = exc_info.value
    assert error.code == ErrorCode.DYNAMIC_PLACEHOLDER_FAILED
    assert isinstance(error.__cause__, GitGraphError)
    assert error.__cause__.code == ErrorCode.GIT_INVOCATION_FAILED
    assert error.to_payload()["details"]["causes"][0].startswith("GIT_INVOCATION_FAILED")

    plan = catalog.expand("log-head", ActionContext(), source=source, strict=False)
    assert plan.unresolved[0].error["details"]["causes"]


def test_exec_placeholder_output_is_stripped() -> None:
    catalog = ActionCatalog([ActionDef(id="log-head", template="git log -1 {GIT_EXEC:rev-parse HEAD}")])
    source = FakeRecordSource(exec_outputs={"rev-parse HEAD": "abc123\n"})
    assert _commands(catalog.expand("log-head", ActionContext(), source=source)) == ["git log -1 abc123"]


def test_dynamic_placeholder_without_source_in_preview() -> None:
    catalog = ActionCatalog([ActionDef(id="who", template="git log --author={GIT_CONFIG:user.email}")])
    plan = catalog.expand("who", ActionContext(), strict=False)
    assert plan.unresolved[0].marker == "{GIT_CONFIG:user.email}"


@pytest.mark.parametrize(
    ("key", "context", "expected"),
    [
        ("push", ActionContext(), "global:push"),
        ("delete", ActionContext(), "tag:delete"),
        ("delete", ActionContext(branch_name="feature"), "branch-drop:delete"),
        ("create-tag", ActionContext(), "commit:tag"),
        ("add", ActionContext(), "global:commit-all"),
        ("FETCH", ActionContext(), "global:fetch"),
    ],
)
def test_short_ids(catalog: ActionCatalog, key: str, context: ActionContext, expected: str) -> None:
    assert catalog.resolve_id(key, context).id == expected


def test_unknown_action_id(catalog: ActionCatalog) -> None:
    with pytest.raises(GitGraphError) as exc_info:
        catalog.resolve_id("teleport")
    assert exc_info.value.code == ErrorCode.UNKNOWN_ACTION_ID


def test_user_definitions_win(catalog: ActionCatalog) -> None:
    merged = catalog.merged_with(
        [
            ActionDef(id="branch:checkout", scope="branch", template="git switch {BRANCH_NAME}", aliases=["co"]),
            ActionDef(id="user:quick-fetch", template="git fetch origin", aliases=["fetch"]),
        ]
    )

    assert _commands(merged.expand("co", ActionContext(branch_name="main"))) == ["git switch main"]
    assert merged.resolve_id("fetch").id == "user:quick-fetch"
    assert len(merged) == len(catalog) + 1
    assert catalog.resolve_id("fetch").id == "global:fetch"


def test_duplicate_definitions_are_rejected() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        ActionCatalog(
            [
                ActionDef(id="a", template="git status"),
                ActionDef(id="b", template="git log", aliases=["a"]),
            ]
        )
    assert exc_info.value.code == ErrorCode.INVALID_INPUT


def test_invalid_template_in_catalog() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        ActionCatalog([ActionDef(id="broken", template="git checkout {BRANCH")])
    assert exc_info.value.code == ErrorCode.TEMPLATE_SYNTAX_ERROR


def test_load_user_actions_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "actions.yaml"
    path.write_text(
        "- id: user:wip\n"
        "  scope: global\n"
        "  title: Work in progress\n"
        "  template: git commit -am wip\n",
        encoding="utf-8",
    )

    catalog = ActionCatalog.load(path)

    assert catalog.resolve_id("user:wip").title == "Work in progress"
    assert catalog.resolve_id("work-in-progress").id == "user:wip"
    assert load_user_actions(tmp_path / "missing.yaml") == []


def test_parse_catalog_reports_invalid_entries() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        parse_catalog({"actions": [{"id": "x"}]}, origin="user.yaml")
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
    assert exc_info.value.details["index"] == 0

    with pytest.raises(GitGraphError):
        parse_catalog({"actions": "git status"})


def test_slugify() -> None:
    assert slugify("Push tag") == "push-tag"
    assert slugify("  Reword HEAD!  ") == "reword-head"


def test_expand_is_deterministic_for_equal_contexts() -> None:
    catalog = ActionCatalog(
        [
            ActionDef(
                id="release",
                template=(
                    "git tag {TAG} {GIT_CONFIG:release.base} && "
                    "git push {REMOTE} {TAG} {GIT_CONFIG:release.missing} || git status"
                ),
                options=[
                    {"id": "force", "flag": "--force"},
                    {"id": "verbose", "flag": "--verbose"},
                    {"id": "sign", "flag": "--sign={SIGNER}"},
                ],
            )
        ]
    )
    source = FakeRecordSource(config={"release.base": "main"})
    first = ActionContext(
        extra={"TAG": "v1.2", "REMOTE": "upstream", "SIGNER": "ada"},
        enabled_options=["sign", "force"],
    )
    second = ActionContext(
        extra={"SIGNER": "ada", "REMOTE": "upstream", "TAG": "v1.2"},
        enabled_options=["force", "sign"],
    )

    plan_a = catalog.expand("release", first, source=source, strict=False)
    plan_b = catalog.expand("release", second, source=source, strict=False)
    plan_c = catalog.expand("release", first, source=source, strict=False)

    assert plan_a == plan_b == plan_c
    assert plan_a.model_dump() == plan_b.model_dump()
    assert plan_a.command_line == (
        "git tag v1.2 main && git push upstream v1.2 {GIT_CONFIG:release.missing} || "
        "git status --force --sign=ada"
    )
    assert [item.marker for item in plan_a.unresolved] == ["{GIT_CONFIG:release.missing}"]


def test_revision_selectors_come_from_context_values() -> None:
    catalog = ActionCatalog(
        [
            ActionDef(id="reflog-literal", template="git show HEAD@{1}"),
            ActionDef(id="show-stash", template="git stash show {STASH_NAME}"),
        ]
    )

    with pytest.raises(GitGraphError) as exc_info:
        catalog.expand("reflog-literal", ActionContext())
    assert exc_info.value.code == ErrorCode.MISSING_CONTEXT_PARAM
    assert exc_info.value.details["key"] == "1"

    plan = catalog.expand("show-stash", ActionContext(stash_name="stash@{2}"))
    assert plan.command_line == "git stash show stash@{2}"
