from __future__ import annotations

import random
from collections import defaultdict

import pytest
from support import raw, record_line

from gitgraph.errors import ErrorCode, GitGraphError
from gitgraph.graph import build
from gitgraph.models import CommitGraph, EdgeKind, LaneNamespace


def _spans(graph: CommitGraph) -> list[tuple[str, int, int, int]]:
    return [(span.namespace.value, span.lane, span.start_row, span.end_row) for span in graph.lane_spans]


def _assert_lanes_consistent(graph: CommitGraph) -> None:
    by_lane: dict[tuple[LaneNamespace, int], list[tuple[int, int]]] = defaultdict(list)
    for span in graph.lane_spans:
        assert span.start_row <= span.end_row
        by_lane[(span.namespace, span.lane)].append((span.start_row, span.end_row))
    for ranges in by_lane.values():
        ranges.sort()
        for previous, current in zip(ranges, ranges[1:]):
            assert previous[1] < current[0]
    for row, commit in enumerate(graph.commits):
        ranges = by_lane[(commit.lane_namespace, commit.lane)]
        assert any(start <= row <= end for start, end in ranges)


def test_linear_history_uses_one_lane() -> None:
    graph = build([raw("c", "b"), raw("b", "a"), raw("a")])

    assert [commit.lane for commit in graph.commits] == [0, 0, 0]
    assert [commit.row_width for commit in graph.commits] == [1, 1, 1]
    assert graph.lane_count == 1
    assert _spans(graph) == [("branch", 0, 0, 2)]
    assert [edge.kind for edge in graph.commits[0].edges] == [EdgeKind.PARENT]
    assert graph.boundary_parents == []


def test_merge_opens_and_closes_second_lane() -> None:
    graph = build([raw("m", "b", "c"), raw("c", "a"), raw("b", "a"), raw("a")])

    assert [commit.lane for commit in graph.commits] == [0, 1, 0, 0]
    assert [commit.row_width for commit in graph.commits] == [2, 2, 2, 1]
    assert graph.lane_count == 2
    assert _spans(graph) == [("branch", 0, 0, 3), ("branch", 1, 1, 2)]
    merge = graph.commits[0]
    assert merge.is_merge
    assert [(edge.to_hash, edge.lane, edge.kind) for edge in merge.edges] == [
        ("b", 0, EdgeKind.PARENT),
        ("c", 1, EdgeKind.MERGE),
    ]


def test_sibling_heads_share_the_lowest_lane_at_fork_point() -> None:
    graph = build([raw("x", "b"), raw("y", "b"), raw("b", "a"), raw("a")])

    assert [commit.lane for commit in graph.commits] == [0, 1, 0, 0]
    assert [commit.row_width for commit in graph.commits] == [1, 2, 1, 1]
    assert graph.lane_count == 2
    assert _spans(graph) == [("branch", 0, 0, 3), ("branch", 1, 1, 1)]


def test_freed_lane_is_reused() -> None:
    graph = build(
        [
            raw("m2", "d", "e"),
            raw("e", "d"),
            raw("d", "m1"),
            raw("m1", "b", "c"),
            raw("c", "a"),
            raw("b", "a"),
            raw("a"),
        ]
    )

    assert graph.lane_count == 2
    assert graph.get("e").lane == 1
    assert graph.get("c").lane == 1
    _assert_lanes_consistent(graph)


def test_stash_commits_use_their_own_lane_namespace() -> None:
    records = [raw("w", "b", "i", is_stash=True), raw("i", "b"), raw("b", "a"), raw("a")]

    graph = build(records)

    stash, index, head = graph.commits[0], graph.commits[1], graph.commits[2]
    assert stash.lane_namespace == LaneNamespace.STASH
    assert index.lane_namespace == LaneNamespace.STASH
    assert head.lane_namespace == LaneNamespace.BRANCH
    assert head.lane == 0
    assert graph.lane_count == 1
    assert graph.stash_lane_count == 2
    assert {edge.kind for edge in stash.edges} == {EdgeKind.STASH}
    assert [commit.row_width for commit in graph.commits] == [2, 2, 1, 1]
    assert _spans(graph) == [
        ("branch", 0, 2, 3),
        ("stash", 0, 0, 1),
        ("stash", 1, 1, 1),
    ]


def test_folded_stashes_share_branch_lanes() -> None:
    records = [raw("w", "b", "i", is_stash=True), raw("i", "b"), raw("b", "a"), raw("a")]

    graph = build(records, include_stashes=True)

    assert {commit.lane_namespace for commit in graph.commits} == {LaneNamespace.BRANCH}
    assert graph.lane_count == 2
    assert graph.stash_lane_count == 0
    assert {edge.kind for edge in graph.commits[0].edges} == {EdgeKind.STASH}
    assert [edge.kind for edge in graph.commits[1].edges] == [EdgeKind.PARENT]


def test_truncated_history_reports_boundary_parents() -> None:
    graph = build([raw("c", "b"), raw("b", "a")])

    assert graph.boundary_parents == ["a"]
    assert _spans(graph) == [("branch", 0, 0, 1)]


def test_unseen_merge_parents_drop_empty_spans() -> None:
    graph = build([raw("m", "x", "y")])

    assert graph.boundary_parents == ["x", "y"]
    assert graph.lane_count == 2
    assert _spans(graph) == [("branch", 0, 0, 0)]


def test_duplicate_hash_is_malformed() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        build([raw("b", "a"), raw("b", "a")])
    assert exc_info.value.code == ErrorCode.MALFORMED_RECORD
    assert exc_info.value.details["hash"] == "b"


def test_build_accepts_mappings_and_record_strings() -> None:
    graph = build(
        [
            {"hash": "b" * 40, "parents": ["a" * 40], "subject": "second"},
            record_line("a" * 40, subject="first").rstrip("\x1e"),
        ]
    )
    assert [commit.subject for commit in graph.commits] == ["second", "first"]
    assert graph.row_of("a" * 40) == 1
    assert graph.get("missing") is None


def test_invalid_mapping_is_malformed() -> None:
    with pytest.raises(GitGraphError) as exc_info:
        build([{"parents": ["a"]}])
    assert exc_info.value.code == ErrorCode.MALFORMED_RECORD


@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
def test_random_histories_keep_lanes_disjoint(seed: int) -> None:
    rng = random.Random(seed)
    size = 300
    records = []
    for index in range(size):
        if index == 0 or rng.random() < 0.02:
            parents: list[str] = []
        else:
            count = 1 if rng.random() < 0.8 else rng.randint(2, 3)
            window = range(max(0, index - 25), index)
            parents = [f"c{parent}" for parent in rng.sample(window, min(count, len(window)))]
        records.append(raw(f"c{index}", *parents))
    records.reverse()

    graph = build(records)

    _assert_lanes_consistent(graph)
    assert graph.lane_count == max(commit.row_width for commit in graph.commits)
    assert graph.boundary_parents == []
