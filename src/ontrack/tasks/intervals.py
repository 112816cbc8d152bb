# src/ontrack/tasks/intervals.py

"""
Interval-number codec for remote placements.

The solver encodes start/end as integer counts of fixed-size steps
(the granularity, 5 minutes by default) since a fixed epoch instant.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .task_models import parse_ts

DEFAULT_EPOCH = datetime(2020, 1, 1, tzinfo=UTC)
DEFAULT_GRANULARITY = timedelta(minutes=5)


@dataclass(frozen=True, slots=True)
class IntervalCodec:
    epoch: datetime = DEFAULT_EPOCH
    granularity: timedelta = DEFAULT_GRANULARITY

    def __post_init__(self) -> None:
        if self.granularity <= timedelta(0):
            raise ValueError("granularity must be positive")
        object.__setattr__(self, "epoch", parse_ts(self.epoch))

    def to_instant(self, interval: int) -> datetime:
        return self.epoch + interval * self.granularity

    def to_interval(self, instant: datetime) -> int:
        """Floor of the number of whole steps between epoch and instant."""
        return (parse_ts(instant) - self.epoch) // self.granularity

    def is_aligned(self, instant: datetime) -> bool:
        return (parse_ts(instant) - self.epoch) % self.granularity == timedelta(0)


def interval_to_instant(interval: int, codec: IntervalCodec | None = None) -> datetime:
    return (codec or IntervalCodec()).to_instant(interval)


def instant_to_interval(instant: datetime, codec: IntervalCodec | None = None) -> int:
    return (codec or IntervalCodec()).to_interval(instant)
