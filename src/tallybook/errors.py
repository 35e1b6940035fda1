"""Exceptions raised by the tallybook core.

Every failure the core can report is a subclass of ``TallyError`` so the
command line (or any other caller) can catch the whole family at its
boundary. Nothing in the core exits the process.
"""

from pathlib import Path


class TallyError(Exception):
    """Base class for all tallybook errors."""


class ValidationError(TallyError, ValueError):
    """A name, tag, timestamp or other field is invalid."""


class InvalidInterval(ValidationError):
    """A frame would end before it starts."""


class CodecError(TallyError):
    """A record could not be encoded or decoded."""


class MalformedRecord(CodecError):
    """A line in a data file is structurally invalid.

    Attributes:
        path: File the line came from, when known.
        lineno: 1-based line number, when known.
        reason: What was wrong with the line.
    """

    def __init__(self, reason: str, path: Path | None = None, lineno: int | None = None) -> None:
        self.reason = reason
        self.path = path
        self.lineno = lineno
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.path is not None and self.lineno is not None:
            return f"{self.path}:{self.lineno}: malformed record: {self.reason}"
        return f"malformed record: {self.reason}"


class DuplicateProject(TallyError):
    def __init__(self, name: str) -> None:
        super().__init__(f'project "{name}" already exists')
        self.name = name


class DuplicateTask(TallyError):
    def __init__(self, project: str, name: str) -> None:
        super().__init__(f'task "{name}" already exists in project "{project}"')
        self.project = project
        self.name = name


class UnknownProject(TallyError):
    def __init__(self, name: str) -> None:
        super().__init__(f'project "{name}" not found')
        self.name = name


class UnknownTask(TallyError):
    def __init__(self, project: str, name: str) -> None:
        super().__init__(f'task "{name}" not found in project "{project}"')
        self.project = project
        self.name = name


class UnknownFrame(TallyError):
    def __init__(self, frame_id: int) -> None:
        super().__init__(f"frame {frame_id} not found")
        self.frame_id = frame_id


class AlreadyRunning(TallyError):
    def __init__(self, frame_id: int) -> None:
        super().__init__(f"a timer is already running (frame {frame_id})")
        self.frame_id = frame_id


class NotRunning(TallyError):
    def __init__(self) -> None:
        super().__init__("there is currently no running timer")


class OverlappingRunningFrame(TallyError):
    def __init__(self, frame_id: int) -> None:
        super().__init__(f"frame would overlap the running frame {frame_id}")
        self.frame_id = frame_id


class ProjectInUse(TallyError):
    def __init__(self, name: str, tasks: int, frames: int) -> None:
        super().__init__(
            f'project "{name}" is still referenced by {tasks} task(s) and {frames} frame(s)'
        )
        self.name = name
        self.tasks = tasks
        self.frames = frames


class TaskInUse(TallyError):
    def __init__(self, project: str, name: str, frames: int) -> None:
        super().__init__(
            f'task "{name}" in project "{project}" is still referenced by {frames} frame(s)'
        )
        self.project = project
        self.name = name
        self.frames = frames


class CorruptStore(TallyError):
    """The data files violate an invariant and must be repaired by hand."""


class StoreLocked(TallyError):
    def __init__(self, lock_path: Path, timeout: float) -> None:
        super().__init__(f"data directory is locked by another process ({lock_path}, waited {timeout}s)")
        self.lock_path = lock_path
        self.timeout = timeout
