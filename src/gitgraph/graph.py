"""Commit graph construction and lane layout."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from .errors import ErrorCode, GitGraphError
from .log_parser import parse_record
from .models import (
    Commit,
    CommitGraph,
    Edge,
    EdgeKind,
    LaneNamespace,
    LaneSpan,
    RawCommit,
)

logger = logging.getLogger(__name__)


class _LaneTable:
    """Active lanes of one namespace, indexed by the hash each lane expects next."""

    def __init__(self, namespace: LaneNamespace) -> None:
        self.namespace = namespace
        self.expected: list[str | None] = []
        self.waiting: dict[str, list[int]] = {}
        self.starts: dict[int, int] = {}
        self.open_count = 0
        self._free: list[int] = []

    @property
    def width(self) -> int:
        return len(self.expected)

    def lane_for(self, commit_hash: str) -> int | None:
        lanes = self.waiting.get(commit_hash)
        if not lanes:
            return None
        return min(lanes)

    def allocate(self, commit_hash: str, start_row: int) -> int:
        if self._free:
            lane = heapq.heappop(self._free)
        else:
            lane = len(self.expected)
            self.expected.append(None)
        self.expected[lane] = commit_hash
        self.waiting.setdefault(commit_hash, []).append(lane)
        self.starts[lane] = start_row
        self.open_count += 1
        return lane

    def retarget(self, lane: int, commit_hash: str) -> None:
        self._unlink(lane)
        self.expected[lane] = commit_hash
        self.waiting.setdefault(commit_hash, []).append(lane)

    def close(self, lane: int, end_row: int, spans: list[LaneSpan]) -> None:
        self._unlink(lane)
        self.expected[lane] = None
        heapq.heappush(self._free, lane)
        self.open_count -= 1
        start_row = self.starts.pop(lane)
        if start_row <= end_row:
            spans.append(
                LaneSpan(lane=lane, namespace=self.namespace, start_row=start_row, end_row=end_row)
            )

    def open_lanes(self) -> list[tuple[int, str]]:
        return [(lane, expected) for lane, expected in enumerate(self.expected) if expected is not None]

    def _unlink(self, lane: int) -> None:
        current = self.expected[lane]
        if current is None:
            return
        lanes = self.waiting.get(current)
        if lanes is None:
            return
        lanes.remove(lane)
        if not lanes:
            del self.waiting[current]


def build(
    records: Iterable[RawCommit | Mapping[str, Any] | str],
    include_stashes: bool = False,
) -> CommitGraph:
    """Build a commit graph from records ordered newest first.

    Each commit occupies the lane that expects its hash, or the lowest free
    lane when none does. The first parent continues the lane, further parents
    join a lane already expecting them or open a new one. Lanes expecting a
    hash that another lane has just consumed close at that row.

    Stash commits and the helper commits they reference beyond their first
    parent live in a separate lane namespace unless ``include_stashes`` folds
    them into the branch lanes.
    """
    branch_lanes = _LaneTable(LaneNamespace.BRANCH)
    stash_lanes = _LaneTable(LaneNamespace.STASH)
    tables = (branch_lanes, stash_lanes)
    spans: list[LaneSpan] = []
    commits: list[Commit] = []
    seen: set[str] = set()
    stash_helpers: set[str] = set()

    for row, record in enumerate(records):
        raw = _coerce_record(record, row)
        if raw.hash in seen:
            raise GitGraphError(
                ErrorCode.MALFORMED_RECORD,
                f"Duplicate commit hash {raw.hash} at record {row}",
                "Each history record must describe a distinct commit.",
                {"record_index": row, "hash": raw.hash},
            )
        seen.add(raw.hash)

        in_stash_namespace = not include_stashes and (raw.is_stash or raw.hash in stash_helpers)
        table = stash_lanes if in_stash_namespace else branch_lanes

        lane = table.lane_for(raw.hash)
        if lane is None:
            lane = table.allocate(raw.hash, start_row=row)

        for other_table in tables:
            for other_lane in list(other_table.waiting.get(raw.hash, ())):
                if other_table is table and other_lane == lane:
                    continue
                other_table.close(other_lane, end_row=row - 1, spans=spans)

        parents = list(dict.fromkeys(raw.parents))
        stash_edges = in_stash_namespace or raw.is_stash
        edges: list[Edge] = []
        root_closed = False
        if parents:
            first_parent = parents[0]
            table.retarget(lane, first_parent)
            edges.append(
                Edge(
                    from_hash=raw.hash,
                    to_hash=first_parent,
                    lane=lane,
                    kind=EdgeKind.STASH if stash_edges else EdgeKind.PARENT,
                )
            )
            for parent in parents[1:]:
                if in_stash_namespace:
                    stash_helpers.add(parent)
                target = table.lane_for(parent)
                if target is None:
                    target = table.allocate(parent, start_row=row + 1)
                edges.append(
                    Edge(
                        from_hash=raw.hash,
                        to_hash=parent,
                        lane=target,
                        kind=EdgeKind.STASH if stash_edges else EdgeKind.MERGE,
                    )
                )
        else:
            table.close(lane, end_row=row, spans=spans)
            root_closed = True

        fields = dict(raw)
        fields.update(
            parents=parents,
            lane=lane,
            lane_namespace=table.namespace,
            row_width=branch_lanes.open_count + stash_lanes.open_count + (1 if root_closed else 0),
            edges=edges,
        )
        commits.append(Commit.model_construct(**fields))

    last_row = len(commits) - 1
    boundary: list[str] = []
    for table in tables:
        for lane, expected in table.open_lanes():
            if expected not in seen and expected not in boundary:
                boundary.append(expected)
            table.close(lane, end_row=last_row, spans=spans)

    spans.sort(key=lambda span: (span.namespace.value, span.lane, span.start_row))
    graph = CommitGraph(
        commits=commits,
        lane_spans=spans,
        lane_count=branch_lanes.width,
        stash_lane_count=stash_lanes.width,
        boundary_parents=boundary,
    )
    logger.info(
        "Built commit graph: commits=%d lanes=%d stash_lanes=%d boundary_parents=%d",
        len(commits),
        graph.lane_count,
        graph.stash_lane_count,
        len(boundary),
    )
    return graph


def _coerce_record(record: RawCommit | Mapping[str, Any] | str, row: int) -> RawCommit:
    if isinstance(record, RawCommit):
        return record
    if isinstance(record, str):
        return parse_record(record, index=row)
    try:
        return RawCommit.model_validate(record)
    except ValidationError as exc:
        raise GitGraphError(
            ErrorCode.MALFORMED_RECORD,
            f"Record {row} cannot be parsed into a commit",
            "Provide hash, parents and metadata fields for every record.",
            {"record_index": row, "errors": exc.errors(include_url=False)},
        ) from exc
