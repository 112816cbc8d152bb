# src/ontrack/tasks/snapshot.py

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .intervals import IntervalCodec

logger = logging.getLogger(__name__)

UNNAMED_TASK = "Unnamed Task"


@dataclass(frozen=True, slots=True)
class RemoteSnapshot:
    """
    What a RemoteSolutionSource returns, still loosely typed.

    solutions: rows shaped like {"task_id": ..., "solution_json": {"start", "end", "status"}}
    names:     task metadata lookup joined by task_id
    """

    model_id: str | None
    solutions: list[Mapping[str, Any]] = field(default_factory=list)
    names: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RemotePlacement:
    task_id: str
    name: str
    start_time: datetime
    end_time: datetime
    solver_status: str | None = None


def _parse_interval(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an interval")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip(), 10)
    raise ValueError(f"interval must be an integer, got {type(value).__name__}")


def parse_placement(
    row: Mapping[str, Any],
    names: Mapping[str, str],
    codec: IntervalCodec,
) -> RemotePlacement:
    """Validate one solution row. Raises ValueError describing what is wrong."""
    if not isinstance(row, Mapping):
        raise ValueError("row is not an object")

    task_id = str(row.get("task_id") or "").strip()
    if not task_id:
        raise ValueError("missing task_id")

    solution = row.get("solution_json")
    if isinstance(solution, str):
        try:
            solution = json.loads(solution)
        except ValueError as e:
            raise ValueError(f"solution_json is not valid JSON: {e}") from e
    if not isinstance(solution, Mapping):
        raise ValueError("solution_json is not an object")
    if solution.get("start") is None or solution.get("end") is None:
        raise ValueError("solution_json missing start/end")

    start = _parse_interval(solution["start"])
    end = _parse_interval(solution["end"])
    if end <= start:
        raise ValueError(f"end interval {end} is not after start interval {start}")

    # a row without a task record is orphaned; a record with a blank name is not
    if task_id not in names:
        raise ValueError("no task metadata for this task_id")

    try:
        start_time = codec.to_instant(start)
        end_time = codec.to_instant(end)
    except OverflowError as e:
        raise ValueError(f"interval out of range: {e}") from e

    status = solution.get("status")
    return RemotePlacement(
        task_id=task_id,
        name=(str(names[task_id] or "").strip() or UNNAMED_TASK),
        start_time=start_time,
        end_time=end_time,
        solver_status=None if status is None else str(status),
    )


def parse_snapshot(
    snapshot: RemoteSnapshot,
    codec: IntervalCodec,
) -> tuple[list[RemotePlacement], int]:
    """
    Validate every row individually.

    Malformed rows are logged and skipped instead of failing the batch.
    Returns (placements in snapshot order, number of rejected rows).
    """
    placements: list[RemotePlacement] = []
    rejected = 0
    for row in snapshot.solutions:
        try:
            placements.append(parse_placement(row, snapshot.names, codec))
        except ValueError as e:
            rejected += 1
            task_id = row.get("task_id") if isinstance(row, Mapping) else None
            logger.warning("Skipping malformed solution row task_id=%s: %s", task_id, e)
    return placements, rejected
