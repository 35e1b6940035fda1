"""Entity types for time tracking.

Projects, tasks and frames are immutable pydantic models validated at
construction. Fields found on disk that this version does not know about
are kept as model extras, so a record written by a newer release survives
a round trip through an older one.
"""

import re
from datetime import datetime, timedelta
from typing import Any, NoReturn, TypeVar

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from tallybook.errors import InvalidInterval, ValidationError
from tallybook.tracking.timeutil import now as local_now

TAG_PATTERN = re.compile(r"[\w-]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# Lower numbers mean higher priority.
MIN_TASK_PRIORITY = 1
MAX_TASK_PRIORITY = 10
DEFAULT_TASK_PRIORITY = MAX_TASK_PRIORITY

MIN_TASK_STATES = 3
DEFAULT_TASK_STATES = ("inbox", "todo", "blocked", "doing", "done")


def validate_name(value: str, what: str = "name") -> str:
    """Check a project or task name.

    Names are used as keys and end up on a single line of a data file, so
    they cannot be blank, padded with whitespace, or contain control
    characters such as newlines.
    """
    if not value or not value.strip():
        raise ValueError(f"{what} must not be empty")
    if value != value.strip():
        raise ValueError(f"{what} must not start or end with whitespace: {value!r}")
    if _CONTROL_CHARS.search(value):
        raise ValueError(f"{what} must not contain control characters: {value!r}")
    return value


def validate_tag(value: str) -> str:
    if not TAG_PATTERN.fullmatch(value):
        raise ValueError(f"tag can only contain letters, digits, '-' or '_': {value!r}")
    return value


def split_tags(text: str | None) -> frozenset[str]:
    """Parse a comma-separated tag list such as ``"work, ux,coding"``."""
    if not text:
        return frozenset()
    tags = [part.strip() for part in text.split(",") if part.strip()]
    for tag in tags:
        try:
            validate_tag(tag)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return frozenset(tags)


def _raise_validation_error(exc: PydanticValidationError) -> NoReturn:
    problems = []
    for error in exc.errors():
        original = error.get("ctx", {}).get("error")
        if isinstance(original, InvalidInterval):
            raise InvalidInterval(str(original)) from exc
        location = ".".join(str(part) for part in error["loc"])
        message = str(original) if isinstance(original, Exception) else error["msg"]
        problems.append(f"{location}: {message}" if location else message)
    raise ValidationError("; ".join(problems)) from exc


class TrackingModel(BaseModel):
    """Base model whose constructor raises ``tallybook.errors.ValidationError``."""

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            _raise_validation_error(exc)


E = TypeVar("E", bound="Entity")


class Entity(TrackingModel):
    """A persisted record. Unknown fields are allowed and preserved."""

    model_config = ConfigDict(frozen=True, extra="allow")

    @property
    def unknown_fields(self) -> dict[str, Any]:
        """Fields read from disk that this version does not understand."""
        return dict(self.model_extra or {})

    def with_changes(self: E, **changes: Any) -> E:
        """Return a fully re-validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return type(self)(**data)


def _check_tags(value: frozenset[str]) -> frozenset[str]:
    for tag in value:
        validate_tag(tag)
    return value


class Project(Entity):
    """A project that tasks and frames are recorded against.

    Attributes:
        name: Unique project name.
        description: Optional free-text description.
        tags: Default tags applied to frames started on this project.
        deadline: Optional due date.
    """

    name: str
    description: str | None = None
    tags: frozenset[str] = Field(default_factory=frozenset)
    deadline: AwareDatetime | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_name(value, "project name")

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: frozenset[str]) -> frozenset[str]:
        return _check_tags(value)

    @field_serializer("tags")
    def _serialize_tags(self, tags: frozenset[str]) -> list[str]:
        return sorted(tags)


class Task(Entity):
    """A task within a project. ``(project, name)`` is unique.

    Attributes:
        project: Owning project name.
        name: Task name, unique within the project.
        description: Optional free-text description.
        state: Workflow state, one of the store's configured task states.
        priority: 1 (highest) to 10 (lowest).
        deadline: Optional due date.
        tags: Labels attached to the task.
    """

    project: str
    name: str
    description: str | None = None
    state: str | None = None
    priority: int = Field(default=DEFAULT_TASK_PRIORITY, ge=MIN_TASK_PRIORITY, le=MAX_TASK_PRIORITY)
    deadline: AwareDatetime | None = None
    tags: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("project")
    @classmethod
    def _check_project(cls, value: str) -> str:
        return validate_name(value, "project name")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_name(value, "task name")

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: frozenset[str]) -> frozenset[str]:
        return _check_tags(value)

    @field_serializer("tags")
    def _serialize_tags(self, tags: frozenset[str]) -> list[str]:
        return sorted(tags)

    @property
    def key(self) -> tuple[str, str]:
        return (self.project, self.name)

    def is_overdue(self, now: datetime | None = None) -> bool:
        return self.deadline is not None and self.deadline < (now or local_now())


class Frame(Entity):
    """A recorded (or running) interval of work.

    Attributes:
        id: Unique, monotonically assigned identifier.
        project: Owning project name.
        task: Optional task name within ``project``.
        start: When the work started (timezone-aware).
        end: When it stopped, or None while the frame is running.
        tags: Labels attached to this frame.
        note: Optional free-text note.
    """

    id: int = Field(ge=1)
    project: str
    task: str | None = None
    start: AwareDatetime
    end: AwareDatetime | None = None
    tags: frozenset[str] = Field(default_factory=frozenset)
    note: str | None = None

    @field_validator("project")
    @classmethod
    def _check_project(cls, value: str) -> str:
        return validate_name(value, "project name")

    @field_validator("task")
    @classmethod
    def _check_task(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return validate_name(value, "task name")

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: frozenset[str]) -> frozenset[str]:
        return _check_tags(value)

    @model_validator(mode="after")
    def _check_interval(self) -> "Frame":
        if self.end is not None and self.end < self.start:
            raise InvalidInterval(
                f"frame {self.id} cannot end ({self.end.isoformat()}) "
                f"before it starts ({self.start.isoformat()})"
            )
        return self

    @field_serializer("tags")
    def _serialize_tags(self, tags: frozenset[str]) -> list[str]:
        return sorted(tags)

    @property
    def is_running(self) -> bool:
        return self.end is None

    @property
    def is_degenerate(self) -> bool:
        """True for a closed frame with zero duration."""
        return self.end is not None and self.end == self.start

    def effective_end(self, now: datetime | None = None) -> datetime:
        """End of the frame, measuring a running frame up to ``now``."""
        if self.end is not None:
            return self.end
        current = now or local_now()
        return max(current, self.start)

    def duration(self, now: datetime | None = None) -> timedelta:
        return self.effective_end(now) - self.start

    def sort_key(self) -> tuple[datetime, int]:
        return (self.start, self.id)


class StoreMeta(Entity):
    """Bookkeeping for a data directory.

    Attributes:
        next_frame_id: Id handed to the next frame. Never decreases, so ids
            of deleted frames are not given out again.
    """

    next_frame_id: int = Field(default=1, ge=1)


class Patch(TrackingModel):
    """A partial update to an entity.

    Only fields that were explicitly passed are applied, so
    ``FramePatch(task=None)`` clears the task while ``FramePatch()``
    leaves it alone.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    def changes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in sorted(self.model_fields_set)}

    def is_empty(self) -> bool:
        return not self.model_fields_set

    def apply(self, entity: E) -> E:
        """Return a new, fully re-validated entity with this patch applied."""
        return entity.with_changes(**self.changes())


class FramePatch(Patch):
    project: str | None = None
    task: str | None = None
    start: AwareDatetime | None = None
    end: AwareDatetime | None = None
    tags: frozenset[str] | None = None
    note: str | None = None


class TaskPatch(Patch):
    """Changes to a task. Setting ``name`` renames it within its project."""

    name: str | None = None
    description: str | None = None
    state: str | None = None
    priority: int | None = None
    deadline: AwareDatetime | None = None
    tags: frozenset[str] | None = None


class TaskStates(TrackingModel):
    """The workflow states a task can be in.

    The first state is given to new tasks and the last one means done.
    """

    model_config = ConfigDict(frozen=True)

    states: tuple[str, ...] = DEFAULT_TASK_STATES

    @field_validator("states")
    @classmethod
    def _check_states(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if len(value) < MIN_TASK_STATES:
            raise ValueError(f"at least {MIN_TASK_STATES} task states are needed, got {len(value)}")
        if len(set(value)) != len(value):
            raise ValueError(f"task states must be unique: {', '.join(value)}")
        for state in value:
            if not TAG_PATTERN.fullmatch(state):
                raise ValueError(f"invalid task state {state!r}")
        return value

    @property
    def initial(self) -> str:
        return self.states[0]

    @property
    def done(self) -> str:
        return self.states[-1]

    def validate_state(self, state: str | None) -> str:
        if state not in self.states:
            raise ValidationError(
                f"invalid task state {state!r}, expected one of: {', '.join(self.states)}"
            )
        return state
