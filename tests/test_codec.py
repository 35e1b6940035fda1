"""Tests for the JSON Lines record codec."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from tallybook.errors import MalformedRecord
from tallybook.tracking.codec import decode, encode, read_records
from tallybook.tracking.types import Frame, Project, Task

TZ = timezone(timedelta(hours=-4))


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2021, 11, 4, hour, minute, tzinfo=TZ)


class TestRoundTrip:
    """decode(encode(x)) == x for valid entities."""

    def test_project(self) -> None:
        project = Project(name="Client Work", description="Café ☕", tags=["billable", "ux"])
        assert decode(encode(project), Project) == project

    def test_task(self) -> None:
        task = Task(project="acme", name="design", description=None)
        assert decode(encode(task), Task) == task

    def test_closed_frame_with_awkward_note(self) -> None:
        frame = Frame(
            id=7,
            project="acme",
            task="design",
            start=_at(9),
            end=_at(10, 30),
            tags=["deep-work", "ux"],
            note='said "hi"\nthen left, twice',
        )
        line = encode(frame)
        assert "\n" not in line
        assert decode(line, Frame) == frame

    def test_running_frame(self) -> None:
        frame = Frame(id=1, project="acme", start=_at(9))
        decoded = decode(encode(frame), Frame)
        assert decoded == frame
        assert decoded.end is None

    def test_offset_preserved(self) -> None:
        frame = Frame(id=1, project="acme", start=_at(9), end=_at(10))
        decoded = decode(encode(frame), Frame)
        assert decoded.start.utcoffset() == timedelta(hours=-4)
        assert "-04:00" in encode(frame)


class TestFormat:
    def test_field_order_is_stable(self) -> None:
        frame = Frame(id=3, project="acme", start=_at(9), tags=["b", "a"])
        data = json.loads(encode(frame))
        assert list(data) == ["id", "project", "task", "start", "end", "tags", "note"]
        assert data["tags"] == ["a", "b"]
        assert data["task"] is None
        assert data["end"] is None

    def test_unknown_fields_are_carried_through(self) -> None:
        line = (
            '{"id": 1, "project": "acme", "task": null, "start": "2021-11-04T09:00:00-04:00", '
            '"end": null, "tags": [], "note": null, "billing_code": "X-1", "meta": {"v": 2}}'
        )
        frame = decode(line, Frame)
        assert frame.unknown_fields == {"billing_code": "X-1", "meta": {"v": 2}}

        reencoded = json.loads(encode(frame))
        assert list(reencoded)[-2:] == ["billing_code", "meta"]
        assert reencoded["meta"] == {"v": 2}
        assert decode(encode(frame), Frame) == frame

    def test_trailing_whitespace_tolerated(self) -> None:
        project = Project(name="acme")
        assert decode(encode(project) + "   \r\n", Project) == project


class TestMalformed:
    @pytest.mark.parametrize(
        "line",
        [
            "not json at all",
            "[1, 2, 3]",
            '"just a string"',
            '{"id": 1, "project": "acme"}',
            '{"id": 1, "project": "acme", "start": "yesterday-ish"}',
            '{"id": 1, "project": "acme", "start": "2021-11-04T09:00:00"}',
            '{"id": 1, "project": "acme", "project": "other", "start": "2021-11-04T09:00:00-04:00"}',
            '{"id": 1, "project": "acme", "start": "2021-11-04T10:00:00-04:00", "end": "2021-11-04T09:00:00-04:00"}',
            '{"id": 1, "project": "acme", "start": "2021-11-04T09:00:00-04:00", "tags": ["no spaces"]}',
        ],
    )
    def test_frame_lines(self, line: str) -> None:
        with pytest.raises(MalformedRecord):
            decode(line, Frame)

    def test_duplicate_field_reason(self) -> None:
        with pytest.raises(MalformedRecord, match="duplicate field 'name'"):
            decode('{"name": "a", "name": "b"}', Project)

    def test_blank_line(self) -> None:
        with pytest.raises(MalformedRecord):
            decode("   ", Project)


class TestReadRecords:
    def test_missing_file_yields_nothing(self, tmp_path) -> None:
        assert list(read_records(tmp_path / "missing.jsonl", Project)) == []

    def test_blank_lines_skipped_and_numbered(self, tmp_path) -> None:
        path = tmp_path / "projects.jsonl"
        path.write_text(
            f"{encode(Project(name='a'))}\n\n{encode(Project(name='b'))}\n\n",
            encoding="utf-8",
        )
        records = list(read_records(path, Project))
        assert [(lineno, p.name) for lineno, p in records] == [(1, "a"), (3, "b")]

    def test_malformed_line_reports_file_and_line(self, tmp_path) -> None:
        path = tmp_path / "projects.jsonl"
        path.write_text(f"{encode(Project(name='a'))}\n\n{{broken\n", encoding="utf-8")

        with pytest.raises(MalformedRecord) as info:
            list(read_records(path, Project))

        assert info.value.lineno == 3
        assert info.value.path == path
        assert str(info.value).startswith(f"{path}:3:")
