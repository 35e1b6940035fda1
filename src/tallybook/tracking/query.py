"""Query and aggregation over frames (and task listing).

Everything here is a pure function of a collection of frames and a
reference "now", so it can run against any snapshot the store hands out.
Running frames are measured up to ``now`` at query time; no derived
duration is ever persisted.
"""

import logging
import operator
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Literal

from pydantic import AwareDatetime, ConfigDict, Field

from tallybook.errors import ValidationError
from tallybook.tracking.timeutil import now as local_now
from tallybook.tracking.timeutil import parse_duration
from tallybook.tracking.types import Frame, Task, TrackingModel

logger = logging.getLogger(__name__)

_COMPARATORS: dict[str, Callable[[timedelta, timedelta], bool]] = {
    "<=": operator.le,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
    "==": operator.eq,
    "=": operator.eq,
}

GroupKey = str | tuple[str, str | None] | date | None


class DurationFilter(TrackingModel):
    """Compare a frame's duration against a threshold, e.g. ``>=1h``."""

    model_config = ConfigDict(frozen=True)

    op: Literal["<", "<=", ">", ">=", "="] = "="
    duration: timedelta

    @classmethod
    def parse(cls, text: str) -> "DurationFilter":
        stripped = text.strip()
        digit_at = next((i for i, c in enumerate(stripped) if c.isdigit()), None)
        if digit_at is None:
            raise ValidationError(f"invalid duration filter: {text!r}")
        op = stripped[:digit_at].strip() or "="
        if op not in _COMPARATORS:
            raise ValidationError(f"invalid duration filter operator {op!r} in {text!r}")
        if op == "==":
            op = "="
        return cls(op=op, duration=parse_duration(stripped[digit_at:]))

    def matches(self, duration: timedelta) -> bool:
        return _COMPARATORS[self.op](duration, self.duration)


class FrameFilter(TrackingModel):
    """A conjunction of frame predicates. Unset criteria match everything.

    Attributes:
        project: Frame project equals this.
        task: Frame task equals this.
        tags: Frame carries at least one of these tags.
        start_from: Frame starts at or after this moment.
        start_to: Frame starts strictly before this moment.
        running: Only open (True) or only closed (False) frames.
        duration: Frame duration satisfies this comparison.
    """

    model_config = ConfigDict(frozen=True)

    project: str | None = None
    task: str | None = None
    tags: frozenset[str] = Field(default_factory=frozenset)
    start_from: AwareDatetime | None = None
    start_to: AwareDatetime | None = None
    running: bool | None = None
    duration: DurationFilter | None = None

    def matches(self, frame: Frame, now: datetime | None = None) -> bool:
        if self.project is not None and frame.project != self.project:
            return False
        if self.task is not None and frame.task != self.task:
            return False
        if self.tags and not (self.tags & frame.tags):
            return False
        if self.start_from is not None and frame.start < self.start_from:
            return False
        if self.start_to is not None and frame.start >= self.start_to:
            return False
        if self.running is not None and frame.is_running != self.running:
            return False
        if self.duration is not None and not self.duration.matches(frame.duration(now)):
            return False
        return True


class TaskFilter(TrackingModel):
    """A conjunction of task predicates. Unset criteria match everything.

    Attributes:
        project: Task belongs to this project.
        states: Task is in one of these states.
        tags: Task carries at least one of these tags.
        max_priority: Task priority is this or more urgent (numerically lower).
        due_before: Task has a deadline strictly before this moment.
    """

    model_config = ConfigDict(frozen=True)

    project: str | None = None
    states: frozenset[str] = Field(default_factory=frozenset)
    tags: frozenset[str] = Field(default_factory=frozenset)
    max_priority: int | None = None
    due_before: AwareDatetime | None = None

    def matches(self, task: Task) -> bool:
        if self.project is not None and task.project != self.project:
            return False
        if self.states and task.state not in self.states:
            return False
        if self.tags and not (self.tags & task.tags):
            return False
        if self.max_priority is not None and task.priority > self.max_priority:
            return False
        if self.due_before is not None and (task.deadline is None or task.deadline >= self.due_before):
            return False
        return True


def _task_sort_key(task: Task) -> tuple:
    # Most urgent first, tasks without a deadline after those with one.
    if task.deadline is None:
        return (task.priority, 1, 0.0, task.project, task.name)
    return (task.priority, 0, task.deadline.timestamp(), task.project, task.name)


def select_tasks(tasks: Iterable[Task], predicate: TaskFilter | None = None) -> list[Task]:
    """Tasks matching ``predicate``, ordered by priority, then deadline, then name."""
    matched = [t for t in tasks if predicate is None or predicate.matches(t)]
    matched.sort(key=_task_sort_key)
    return matched


class Grouping(str, Enum):
    """Dimension used to bucket frames in a report."""

    NONE = "none"
    PROJECT = "project"
    TASK = "task"
    DAY = "day"

    def key_for(self, frame: Frame) -> GroupKey:
        if self is Grouping.PROJECT:
            return frame.project
        if self is Grouping.TASK:
            return (frame.project, frame.task)
        if self is Grouping.DAY:
            # Calendar day in the offset the frame was recorded with.
            return frame.start.date()
        return None


@dataclass
class GroupSummary:
    """Aggregate for one report group."""

    total: timedelta = field(default_factory=timedelta)
    count: int = 0


@dataclass
class Report:
    """Result of :func:`build_report`.

    Attributes:
        grouping: How frames were bucketed.
        groups: Group key to summary, in order of each group's first frame.
        total: Sum of all matched durations.
        count: Number of matched frames.
        generated_at: The "now" running frames were measured against.
        frames: Matched frames ordered by (start, id), when requested.
    """

    grouping: Grouping
    groups: dict[GroupKey, GroupSummary]
    total: timedelta
    count: int
    generated_at: datetime
    frames: list[Frame] | None = None


def select(
    frames: Iterable[Frame],
    predicate: FrameFilter | None = None,
    now: datetime | None = None,
) -> list[Frame]:
    """Frames matching ``predicate``, ordered by start then id."""
    now = now or local_now()
    matched = [f for f in frames if predicate is None or predicate.matches(f, now)]
    matched.sort(key=Frame.sort_key)
    return matched


def build_report(
    frames: Iterable[Frame],
    predicate: FrameFilter | None = None,
    grouping: Grouping = Grouping.NONE,
    now: datetime | None = None,
    include_frames: bool = False,
) -> Report:
    """Sum durations and count frames per group.

    Args:
        frames: Frames to report on.
        predicate: Filter applied before grouping.
        grouping: Bucketing dimension.
        now: Reference time for running frames (defaults to the clock).
        include_frames: Attach the matched frames to the report.

    Returns:
        The aggregated report. Group totals always add up to ``total``.
    """
    now = now or local_now()
    matched = select(frames, predicate, now)

    groups: dict[GroupKey, GroupSummary] = {}
    total = timedelta()
    for frame in matched:
        duration = frame.duration(now)
        summary = groups.setdefault(grouping.key_for(frame), GroupSummary())
        summary.total += duration
        summary.count += 1
        total += duration

    logger.debug(f"Report over {len(matched)} frames grouped by {grouping.value}")
    return Report(
        grouping=grouping,
        groups=groups,
        total=total,
        count=len(matched),
        generated_at=now,
        frames=matched if include_frames else None,
    )


def find_overlaps(
    frames: Iterable[Frame],
    now: datetime | None = None,
) -> list[tuple[Frame, Frame]]:
    """Pairs of same-project frames whose ``[start, end)`` intervals intersect.

    Each pair is reported once as ``(earlier, later)`` and pairs are ordered
    by the earlier frame's start. Frames that merely touch, and zero-length
    frames, never overlap anything.
    """
    now = now or local_now()
    by_project: dict[str, list[Frame]] = {}
    for frame in frames:
        by_project.setdefault(frame.project, []).append(frame)

    pairs: list[tuple[Frame, Frame]] = []
    for project_frames in by_project.values():
        ordered = sorted(project_frames, key=Frame.sort_key)
        for i, first in enumerate(ordered):
            first_end = first.effective_end(now)
            for second in ordered[i + 1:]:
                if second.start >= first_end:
                    break
                if second.effective_end(now) > second.start:
                    pairs.append((first, second))

    pairs.sort(key=lambda pair: (pair[0].sort_key(), pair[1].sort_key()))
    return pairs


@dataclass
class Gap:
    """Untracked time between two consecutive frames."""

    start: datetime
    end: datetime
    before: Frame
    after: Frame

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def find_gaps(
    frames: Iterable[Frame],
    min_gap: timedelta = timedelta(0),
    now: datetime | None = None,
) -> list[Gap]:
    """Periods longer than ``min_gap`` covered by no frame at all.

    Only the time between the first frame's start and the last frame's end
    is considered.
    """
    now = now or local_now()
    ordered = sorted(frames, key=Frame.sort_key)
    gaps: list[Gap] = []
    if not ordered:
        return gaps

    covering = ordered[0]
    covered_until = covering.effective_end(now)
    for frame in ordered[1:]:
        if frame.start > covered_until and frame.start - covered_until > min_gap:
            gaps.append(Gap(start=covered_until, end=frame.start, before=covering, after=frame))
        end = frame.effective_end(now)
        if end >= covered_until:
            covering, covered_until = frame, end
    return gaps


def find_degenerate(frames: Iterable[Frame]) -> list[Frame]:
    """Closed frames with zero duration, ordered by start."""
    return sorted((f for f in frames if f.is_degenerate), key=Frame.sort_key)
