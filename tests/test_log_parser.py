from __future__ import annotations

import pytest
from support import history_output, record_line

from gitgraph.constants import FIELD_SEP
from gitgraph.errors import ErrorCode, GitGraphError
from gitgraph.log_parser import (
    mark_stashes,
    normalize_numstat_path,
    parse_numstat,
    parse_record,
    parse_records,
    parse_refs,
)
from gitgraph.models import RefKind


def test_parse_records_reads_all_fields() -> None:
    output = history_output(
        record_line(
            "b" * 40,
            parents=["a" * 40, "c" * 40],
            subject="Merge branch 'feature', with commas",
            refs="HEAD -> refs/heads/main, refs/remotes/origin/main, tag: refs/tags/v1.0",
            body="First line\n\nSecond paragraph\n",
            timestamp=1_700_000_123,
        ),
        record_line("a" * 40, subject="initial"),
    )

    commits = parse_records(output)

    assert [commit.hash for commit in commits] == ["b" * 40, "a" * 40]
    merge = commits[0]
    assert merge.short_hash == "bbbbbbb"
    assert merge.parents == ["a" * 40, "c" * 40]
    assert merge.subject == "Merge branch 'feature', with commas"
    assert merge.body == "First line\n\nSecond paragraph"
    assert merge.authored_at == 1_700_000_123
    assert merge.author_email == "ada@example.com"
    assert [(ref.kind, ref.name, ref.target) for ref in merge.refs] == [
        (RefKind.HEAD, "HEAD", "main"),
        (RefKind.REMOTE_BRANCH, "origin/main", None),
        (RefKind.TAG, "v1.0", None),
    ]
    assert commits[1].parents == []
    assert commits[1].refs == []


def test_parse_records_ignores_blank_output() -> None:
    assert parse_records("") == []
    assert parse_records("\n\n") == []


def test_parse_record_rejects_missing_fields() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        parse_record(FIELD_SEP.join(["abc", "abc", ""]), index=3)
    assert exc_info.value.code == ErrorCode.MALFORMED_RECORD
    assert exc_info.value.details["record_index"] == 3


def test_parse_record_rejects_invalid_timestamp() -> None:
    line = record_line("d" * 40).rstrip("\x1e").replace("1700000000", "yesterday", 1)
    with pytest.raises(GitGraphError) as exc_info:
        parse_record(line)
    assert exc_info.value.code == ErrorCode.MALFORMED_RECORD
    assert exc_info.value.details["field"] == "authored_at"


def test_stash_ref_marks_commit_as_stash() -> None:
    commits = parse_records(record_line("e" * 40, parents=["a" * 40], refs="refs/stash"))
    assert commits[0].is_stash is True
    assert commits[0].refs[0].kind == RefKind.STASH


def test_mark_stashes_adds_selector_refs() -> None:
    commits = parse_records(
        history_output(
            record_line("1" * 40, parents=["a" * 40]),
            record_line("2" * 40, parents=["a" * 40]),
        )
    )

    mark_stashes(commits, {"2" * 40: "stash@{1}"})

    assert commits[0].is_stash is False
    assert commits[1].is_stash is True
    assert [(ref.kind, ref.name) for ref in commits[1].refs] == [(RefKind.STASH, "stash@{1}")]


def test_parse_refs_classifies_unknown_refs_as_other() -> None:
    refs = parse_refs("refs/notes/commits, HEAD")
    assert [(ref.kind, ref.name) for ref in refs] == [
        (RefKind.OTHER, "refs/notes/commits"),
        (RefKind.HEAD, "HEAD"),
    ]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"subject": f"fix{FIELD_SEP}parser"},
        {"subject": "fix parser", "body": f"details{FIELD_SEP}more"},
    ],
)
def test_parse_record_rejects_separator_in_message(kwargs: dict[str, str]) -> None:
    line = record_line("f" * 40, **kwargs).rstrip("\x1e")

    with pytest.raises(GitGraphError) as exc_info:
        parse_record(line, index=7)

    assert exc_info.value.code == ErrorCode.MALFORMED_RECORD
    assert exc_info.value.details["record_index"] == 7


def test_parse_numstat() -> None:
    stdout = (
        "3\t1\tsrc/app.py\n"
        "-\t-\tassets/logo.png\n"
        "\n"
        "0\t0\tsrc/{old => new}/util.py\n"
        "5\t2\tdocs/readme.md => README.md\n"
    )

    changes = parse_numstat(stdout)

    assert [(change.added, change.removed) for change in changes] == [(3, 1), (None, None), (0, 0), (5, 2)]
    assert [change.path for change in changes][2] == "src/{old => new}/util.py"
    assert [change.normalized_path for change in changes] == [
        "src/app.py",
        "assets/logo.png",
        "src/new/util.py",
        "README.md",
    ]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("src/{ => lib}/a.py", "src/lib/a.py"),
        ("src/{lib => }/a.py", "src/a.py"),
        ("{old => new}/a.py", "new/a.py"),
        ('"quoted name.txt"', "quoted name.txt"),
        ("  plain.txt ", "plain.txt"),
    ],
)
def test_normalize_numstat_path(raw: str, expected: str) -> None:
    assert normalize_numstat_path(raw) == expected
