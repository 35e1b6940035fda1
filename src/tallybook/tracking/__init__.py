"""Time tracking core.

Provides the entity model, the JSON Lines codec, the locked text-file
store, the running-timer state machine and the query engine.

Example:
    from tallybook.tracking import FrameFilter, Grouping, Timer, TrackingStore

    store = TrackingStore("~/.tallybook")
    store.create_project("acme")
    timer = Timer(store)
    timer.start("acme", tags={"deep-work"})
    timer.stop()

    report = store.report(FrameFilter(project="acme"), Grouping.DAY)
"""

from tallybook.tracking.codec import decode, encode, read_records
from tallybook.tracking.query import (
    DurationFilter,
    FrameFilter,
    Gap,
    GroupSummary,
    Grouping,
    Report,
    TaskFilter,
    build_report,
    find_degenerate,
    find_gaps,
    find_overlaps,
    select,
    select_tasks,
)
from tallybook.tracking.storage import FrameView, TrackingStore
from tallybook.tracking.timer import Timer, TimerState, TimerStatus
from tallybook.tracking.timeutil import (
    format_duration,
    now,
    parse_duration,
    parse_range,
    parse_timestamp,
)
from tallybook.tracking.types import (
    Frame,
    FramePatch,
    Project,
    StoreMeta,
    Task,
    TaskPatch,
    TaskStates,
    split_tags,
)

__all__ = [
    # Entities
    "Project",
    "Task",
    "Frame",
    "FramePatch",
    "TaskPatch",
    "TaskStates",
    "StoreMeta",
    "split_tags",
    # Codec
    "encode",
    "decode",
    "read_records",
    # Store
    "TrackingStore",
    "FrameView",
    # Timer
    "Timer",
    "TimerState",
    "TimerStatus",
    # Queries
    "FrameFilter",
    "DurationFilter",
    "Grouping",
    "GroupSummary",
    "Report",
    "TaskFilter",
    "Gap",
    "build_report",
    "select",
    "select_tasks",
    "find_overlaps",
    "find_gaps",
    "find_degenerate",
    # Time helpers
    "now",
    "parse_timestamp",
    "parse_duration",
    "parse_range",
    "format_duration",
]
