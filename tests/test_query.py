"""Tests for frame filtering, reporting and consistency checks."""

from datetime import date, datetime, timedelta, timezone

import pytest

from tallybook.errors import ValidationError
from tallybook.tracking.query import (
    DurationFilter,
    FrameFilter,
    Grouping,
    TaskFilter,
    build_report,
    find_degenerate,
    find_gaps,
    find_overlaps,
    select,
    select_tasks,
)
from tallybook.tracking.types import Frame, Task

TZ = timezone(timedelta(hours=1))
NOW = datetime(2024, 3, 2, 12, 0, tzinfo=TZ)


def _at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=TZ)


def _frame(frame_id: int, start: datetime, end: datetime | None, **fields) -> Frame:
    fields.setdefault("project", "acme")
    return Frame(id=frame_id, start=start, end=end, **fields)


@pytest.fixture
def frames() -> list[Frame]:
    return [
        _frame(1, _at(9), _at(10), task="design", tags=["ux"]),
        _frame(2, _at(10), _at(10, 30), task="review"),
        _frame(3, _at(23), _at(1, day=2), project="globex", tags=["ops", "night"]),
        _frame(4, _at(14, day=2), _at(15, day=2), project="globex"),
        _frame(5, _at(11, day=2), None, tags=["ux"]),
    ]


# ----------------------------------------------------------------------------
# Filters
# ----------------------------------------------------------------------------


class TestDurationFilter:
    @pytest.mark.parametrize(
        "text,op,duration",
        [
            (">=1h", ">=", timedelta(hours=1)),
            ("< 15m", "<", timedelta(minutes=15)),
            ("=1h30m", "=", timedelta(hours=1, minutes=30)),
            ("==2h", "=", timedelta(hours=2)),
            ("45m", "=", timedelta(minutes=45)),
        ],
    )
    def test_parse(self, text: str, op: str, duration: timedelta) -> None:
        parsed = DurationFilter.parse(text)
        assert parsed.op == op
        assert parsed.duration == duration

    @pytest.mark.parametrize("text", ["", ">=", "~1h", ">=1y", "!1h"])
    def test_parse_invalid(self, text: str) -> None:
        with pytest.raises(ValidationError):
            DurationFilter.parse(text)

    def test_matches(self) -> None:
        at_least_an_hour = DurationFilter.parse(">=1h")
        assert at_least_an_hour.matches(timedelta(hours=1))
        assert not at_least_an_hour.matches(timedelta(minutes=59))


class TestFrameFilter:
    def test_empty_filter_matches_everything(self, frames: list[Frame]) -> None:
        assert len(select(frames, FrameFilter(), NOW)) == len(frames)

    def test_project_and_task(self, frames: list[Frame]) -> None:
        selected = select(frames, FrameFilter(project="acme", task="design"), NOW)
        assert [f.id for f in selected] == [1]

    def test_tags_match_any(self, frames: list[Frame]) -> None:
        selected = select(frames, FrameFilter(tags={"ux", "ops"}), NOW)
        assert [f.id for f in selected] == [1, 3, 5]

    def test_start_range_is_half_open(self, frames: list[Frame]) -> None:
        predicate = FrameFilter(start_from=_at(10), start_to=_at(23))
        assert [f.id for f in select(frames, predicate, NOW)] == [2]

    def test_running_flag(self, frames: list[Frame]) -> None:
        assert [f.id for f in select(frames, FrameFilter(running=True), NOW)] == [5]
        assert len(select(frames, FrameFilter(running=False), NOW)) == 4

    def test_duration_uses_now_for_running_frames(self, frames: list[Frame]) -> None:
        predicate = FrameFilter(duration=DurationFilter.parse(">=1h"))
        assert [f.id for f in select(frames, predicate, NOW)] == [1, 3, 5, 4]
        early = _at(11, 10, day=2)
        assert [f.id for f in select(frames, predicate, early)] == [1, 3, 4]

    def test_ties_ordered_by_id(self) -> None:
        frames = [_frame(7, _at(9), _at(10)), _frame(3, _at(9), _at(9, 30))]
        assert [f.id for f in select(frames)] == [3, 7]


# ----------------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------------


class TestReport:
    def test_ungrouped(self, frames: list[Frame]) -> None:
        report = build_report(frames, now=NOW)
        assert report.count == 5
        assert report.total == timedelta(hours=1, minutes=30) + timedelta(hours=3) + timedelta(hours=1)
        assert list(report.groups) == [None]
        assert report.frames is None
        assert report.generated_at == NOW

    def test_by_project(self, frames: list[Frame]) -> None:
        report = build_report(frames, grouping=Grouping.PROJECT, now=NOW)
        assert report.groups["acme"].total == timedelta(hours=2, minutes=30)
        assert report.groups["acme"].count == 3
        assert report.groups["globex"].total == timedelta(hours=3)

    def test_by_task(self, frames: list[Frame]) -> None:
        report = build_report(frames, grouping=Grouping.TASK, now=NOW)
        assert set(report.groups) == {
            ("acme", "design"),
            ("acme", "review"),
            ("acme", None),
            ("globex", None),
        }

    def test_by_day_uses_start_date(self, frames: list[Frame]) -> None:
        report = build_report(frames, grouping=Grouping.DAY, now=NOW)
        assert report.groups[date(2024, 3, 1)].total == timedelta(hours=3, minutes=30)
        assert report.groups[date(2024, 3, 2)].count == 2

    @pytest.mark.parametrize("grouping", list(Grouping))
    def test_group_totals_add_up(self, frames: list[Frame], grouping: Grouping) -> None:
        ungrouped = build_report(frames, now=NOW)
        grouped = build_report(frames, grouping=grouping, now=NOW)
        assert sum((g.total for g in grouped.groups.values()), timedelta()) == ungrouped.total
        assert sum(g.count for g in grouped.groups.values()) == ungrouped.count

    def test_filter_and_frames(self, frames: list[Frame]) -> None:
        report = build_report(
            frames, FrameFilter(project="globex"), Grouping.PROJECT, NOW, include_frames=True
        )
        assert [f.id for f in report.frames] == [3, 4]
        assert list(report.groups) == ["globex"]

    def test_empty(self) -> None:
        report = build_report([], grouping=Grouping.PROJECT, now=NOW)
        assert report.count == 0
        assert report.total == timedelta(0)
        assert report.groups == {}


# ----------------------------------------------------------------------------
# Consistency checks
# ----------------------------------------------------------------------------


class TestOverlaps:
    def test_partial_overlap(self) -> None:
        a = _frame(1, _at(9), _at(10))
        b = _frame(2, _at(9, 30), _at(10, 30))
        assert find_overlaps([b, a], NOW) == [(a, b)]

    def test_touching_frames_do_not_overlap(self) -> None:
        frames = [_frame(1, _at(9), _at(10)), _frame(2, _at(10), _at(11))]
        assert find_overlaps(frames, NOW) == []

    def test_other_projects_ignored(self) -> None:
        frames = [_frame(1, _at(9), _at(10)), _frame(2, _at(9, 30), _at(10), project="globex")]
        assert find_overlaps(frames, NOW) == []

    def test_zero_length_frame_never_overlaps(self) -> None:
        frames = [_frame(1, _at(9), _at(10)), _frame(2, _at(9, 30), _at(9, 30))]
        assert find_overlaps(frames, NOW) == []

    def test_contained_and_running(self) -> None:
        outer = _frame(1, _at(9), _at(12))
        inner = _frame(2, _at(10), _at(11))
        running = _frame(3, _at(11, 30), None)
        pairs = find_overlaps([running, inner, outer], NOW)
        assert [(a.id, b.id) for a, b in pairs] == [(1, 2), (1, 3)]


class TestGapsAndDegenerate:
    def test_gaps(self) -> None:
        frames = [
            _frame(1, _at(9), _at(10)),
            _frame(2, _at(9, 30), _at(11)),
            _frame(3, _at(11, 10), _at(12)),
            _frame(4, _at(13), _at(14)),
        ]
        gaps = find_gaps(frames, now=NOW)
        assert [(g.start, g.end) for g in gaps] == [(_at(11), _at(11, 10)), (_at(12), _at(13))]
        assert gaps[0].before.id == 2
        assert gaps[0].after.id == 3

    def test_min_gap(self) -> None:
        frames = [_frame(1, _at(9), _at(10)), _frame(2, _at(10, 5), _at(11))]
        assert find_gaps(frames, timedelta(minutes=10), NOW) == []
        assert find_gaps(frames, timedelta(minutes=1), NOW)[0].duration == timedelta(minutes=5)

    def test_no_frames(self) -> None:
        assert find_gaps([], now=NOW) == []

    def test_degenerate(self) -> None:
        frames = [
            _frame(2, _at(11), _at(11)),
            _frame(1, _at(9), _at(9)),
            _frame(3, _at(12), None),
            _frame(4, _at(13), _at(14)),
        ]
        assert [f.id for f in find_degenerate(frames)] == [1, 2]


# ----------------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------------


@pytest.fixture
def tasks() -> list[Task]:
    return [
        Task(project="acme", name="design", state="todo", priority=5, tags={"ux"}),
        Task(project="acme", name="invoice", state="todo", priority=1, deadline=_at(17)),
        Task(project="acme", name="backup", state="done", priority=1),
        Task(project="globex", name="audit", state="doing", priority=1, deadline=_at(9)),
    ]


class TestTasks:
    def test_ordering(self, tasks: list[Task]) -> None:
        # Priority first, then earliest deadline, undated tasks last.
        assert [t.name for t in select_tasks(tasks)] == ["audit", "invoice", "backup", "design"]

    def test_state_filter(self, tasks: list[Task]) -> None:
        predicate = TaskFilter(states=frozenset({"todo", "doing"}))
        assert [t.name for t in select_tasks(tasks, predicate)] == ["audit", "invoice", "design"]

    def test_project_and_tags(self, tasks: list[Task]) -> None:
        assert [t.name for t in select_tasks(tasks, TaskFilter(project="globex"))] == ["audit"]
        assert [t.name for t in select_tasks(tasks, TaskFilter(tags=frozenset({"ux"})))] == ["design"]

    def test_priority_and_deadline(self, tasks: list[Task]) -> None:
        urgent = select_tasks(tasks, TaskFilter(max_priority=1))
        assert {t.name for t in urgent} == {"audit", "invoice", "backup"}

        due = select_tasks(tasks, TaskFilter(due_before=_at(12)))
        assert [t.name for t in due] == ["audit"]
