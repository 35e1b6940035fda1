"""Text-file storage for projects, tasks and frames.

The data directory holds one JSON Lines file per entity kind plus a small
meta record. The store keeps an in-memory index of all of them and routes
every mutation through a single discipline:

1. take an exclusive lock on the data directory (bounded wait),
2. re-read the files so validation runs against what is on disk now,
3. run every check before touching any file,
4. write the new file content to a temp file, fsync, rename into place,
5. only then update the in-memory index.

Readers never take the lock; thanks to the rename they see either the old
or the new file, never a partial one.
"""

import contextlib
import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from filelock import FileLock, Timeout

from tallybook.errors import (
    CorruptStore,
    DuplicateProject,
    DuplicateTask,
    NotRunning,
    OverlappingRunningFrame,
    ProjectInUse,
    StoreLocked,
    TaskInUse,
    UnknownFrame,
    UnknownProject,
    UnknownTask,
)
from tallybook.tracking.codec import encode, read_records, render_lines
from tallybook.tracking.query import (
    FrameFilter,
    Grouping,
    Report,
    TaskFilter,
    build_report,
    select_tasks,
)
from tallybook.tracking.timeutil import now as local_now
from tallybook.tracking.types import (
    DEFAULT_TASK_PRIORITY,
    Entity,
    Frame,
    FramePatch,
    Project,
    StoreMeta,
    Task,
    TaskPatch,
    TaskStates,
)

logger = logging.getLogger(__name__)

PROJECTS_FILE = "projects.jsonl"
TASKS_FILE = "tasks.jsonl"
FRAMES_FILE = "frames.jsonl"
META_FILE = "meta.jsonl"
LOCK_FILE = ".tallybook.lock"

DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass
class _Snapshot:
    """In-memory index of one consistent read of the data files."""

    projects: dict[str, Project] = field(default_factory=dict)
    tasks: dict[tuple[str, str], Task] = field(default_factory=dict)
    frames: dict[int, Frame] = field(default_factory=dict)
    meta: StoreMeta = field(default_factory=StoreMeta)

    def running(self) -> Frame | None:
        return next((f for f in self.frames.values() if f.is_running), None)

    def next_frame_id(self) -> int:
        return max(self.meta.next_frame_id, max(self.frames, default=0) + 1)


class FrameView:
    """A lazy, restartable sequence of frames.

    Each iteration re-evaluates the predicate against the store's current
    in-memory snapshot and yields matches ordered by start, then id.
    """

    def __init__(self, store: "TrackingStore", predicate: FrameFilter | None = None) -> None:
        self._store = store
        self._predicate = predicate

    @property
    def predicate(self) -> FrameFilter | None:
        return self._predicate

    def __iter__(self) -> Iterator[Frame]:
        now = local_now()
        frames = sorted(self._store.frames(), key=Frame.sort_key)
        for frame in frames:
            if self._predicate is None or self._predicate.matches(frame, now):
                yield frame

    def __len__(self) -> int:
        """Number of matching frames.

        Nothing is cached: every call filters and sorts all frames again
        (O(n log n)). Materialize the view with ``list()`` when both the
        length and the frames are needed.
        """
        return sum(1 for _ in self)


class TrackingStore:
    """JSON Lines storage for time tracking data.

    Example:
        store = TrackingStore("~/.tallybook")
        store.create_project("acme")
        frame = store.create_frame("acme", start=now(), tags={"meeting"})
        for frame in store.list(FrameFilter(project="acme")):
            ...
    """

    def __init__(
        self,
        data_dir: str | Path,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        auto_create_projects: bool = False,
        create_if_missing: bool = True,
        task_states: TaskStates | None = None,
    ) -> None:
        """Open (and load) a data directory.

        Args:
            data_dir: Directory holding the data files.
            lock_timeout: Seconds to wait for the directory lock before
                raising ``StoreLocked``.
            auto_create_projects: Create unknown projects on first reference
                instead of raising ``UnknownProject``.
            create_if_missing: Create the directory if it doesn't exist.
            task_states: Allowed task states (defaults to
                inbox, todo, blocked, doing, done).

        Raises:
            FileNotFoundError: If the directory is missing and
                ``create_if_missing`` is False.
            MalformedRecord: If a data file has an unparsable line.
            CorruptStore: If the files violate a store invariant.
        """
        self._dir = Path(data_dir).expanduser()
        if not self._dir.exists():
            if not create_if_missing:
                raise FileNotFoundError(f"Data directory not found: {self._dir}")
            self._dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self._dir}")

        self._lock_path = self._dir / LOCK_FILE
        self._lock_timeout = lock_timeout
        self._lock = FileLock(str(self._lock_path), timeout=lock_timeout)
        self._auto_create_projects = auto_create_projects
        self._task_states = task_states or TaskStates()
        self._snapshot = self._read_snapshot()

    # -- paths ----------------------------------------------------------

    @property
    def data_dir(self) -> Path:
        return self._dir

    @property
    def projects_path(self) -> Path:
        return self._dir / PROJECTS_FILE

    @property
    def tasks_path(self) -> Path:
        return self._dir / TASKS_FILE

    @property
    def frames_path(self) -> Path:
        return self._dir / FRAMES_FILE

    @property
    def meta_path(self) -> Path:
        return self._dir / META_FILE

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def task_states(self) -> TaskStates:
        return self._task_states

    # -- loading --------------------------------------------------------

    def reload(self) -> None:
        """Re-read the data files, replacing the in-memory index."""
        self._snapshot = self._read_snapshot()

    def _read_snapshot(self) -> _Snapshot:
        snapshot = _Snapshot()

        for lineno, project in read_records(self.projects_path, Project):
            if project.name in snapshot.projects:
                raise CorruptStore(
                    f"{self.projects_path}:{lineno}: duplicate project \"{project.name}\""
                )
            snapshot.projects[project.name] = project

        for lineno, task in read_records(self.tasks_path, Task):
            if task.project not in snapshot.projects:
                raise CorruptStore(
                    f"{self.tasks_path}:{lineno}: task \"{task.name}\" refers to "
                    f"unknown project \"{task.project}\""
                )
            if task.key in snapshot.tasks:
                raise CorruptStore(
                    f"{self.tasks_path}:{lineno}: duplicate task \"{task.name}\" "
                    f"in project \"{task.project}\""
                )
            snapshot.tasks[task.key] = task

        open_frames: list[int] = []
        for lineno, frame in read_records(self.frames_path, Frame):
            if frame.id in snapshot.frames:
                raise CorruptStore(f"{self.frames_path}:{lineno}: duplicate frame id {frame.id}")
            if frame.project not in snapshot.projects:
                raise CorruptStore(
                    f"{self.frames_path}:{lineno}: frame {frame.id} refers to "
                    f"unknown project \"{frame.project}\""
                )
            if frame.task is not None and (frame.project, frame.task) not in snapshot.tasks:
                raise CorruptStore(
                    f"{self.frames_path}:{lineno}: frame {frame.id} refers to "
                    f"unknown task \"{frame.task}\" in project \"{frame.project}\""
                )
            if frame.is_running:
                open_frames.append(frame.id)
            snapshot.frames[frame.id] = frame

        if len(open_frames) > 1:
            ids = ", ".join(str(i) for i in open_frames)
            raise CorruptStore(
                f"{self.frames_path}: more than one running frame (ids {ids}); "
                "stop or remove all but one by hand"
            )

        metas = list(read_records(self.meta_path, StoreMeta))
        if len(metas) > 1:
            raise CorruptStore(f"{self.meta_path}:{metas[1][0]}: more than one meta record")
        if metas:
            snapshot.meta = metas[0][1]

        logger.debug(
            f"Loaded {len(snapshot.projects)} projects, {len(snapshot.tasks)} tasks "
            f"and {len(snapshot.frames)} frames from {self._dir}"
        )
        return snapshot

    # -- writing --------------------------------------------------------

    @contextlib.contextmanager
    def _mutation(self) -> Iterator[_Snapshot]:
        """Hold the directory lock around a fresh snapshot."""
        try:
            self._lock.acquire()
        except Timeout as exc:
            raise StoreLocked(self._lock_path, self._lock_timeout) from exc
        try:
            self._snapshot = self._read_snapshot()
            yield self._snapshot
        finally:
            self._lock.release()

    def _replace_file(self, path: Path, content: str) -> None:
        """Atomically replace ``path`` with ``content``.

        The previous file stays intact if anything fails before the rename.
        """
        tmp = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            newline="\n",
            prefix=f".{path.name}.",
            suffix=".tmp",
            dir=str(self._dir),
            delete=False,
        )
        try:
            with tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp.name, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp.name)
            raise
        logger.debug(f"Wrote {path}")

    def _append_record(self, path: Path, entity: Entity) -> None:
        """Add one line at the end of a file, leaving existing bytes as they are."""
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        self._replace_file(path, f"{existing}{encode(entity)}\n")

    def _rewrite(self, path: Path, entities: Iterable[Entity]) -> None:
        self._replace_file(path, render_lines(list(entities)))

    def _write_projects(self, snapshot: _Snapshot, projects: dict[str, Project]) -> None:
        self._rewrite(self.projects_path, projects.values())
        snapshot.projects = projects

    def _write_tasks(self, snapshot: _Snapshot, tasks: dict[tuple[str, str], Task]) -> None:
        self._rewrite(self.tasks_path, tasks.values())
        snapshot.tasks = tasks

    def _write_frames(self, snapshot: _Snapshot, frames: dict[int, Frame]) -> None:
        self._rewrite(self.frames_path, frames.values())
        snapshot.frames = frames

    # -- projects -------------------------------------------------------

    def projects(self) -> tuple[Project, ...]:
        return tuple(self._snapshot.projects.values())

    def project(self, name: str) -> Project:
        try:
            return self._snapshot.projects[name]
        except KeyError:
            raise UnknownProject(name) from None

    def create_project(
        self,
        name: str,
        description: str | None = None,
        tags: Iterable[str] = (),
        deadline: datetime | None = None,
    ) -> Project:
        """Create a new project.

        Raises:
            ValidationError: If the name, a tag or the deadline is invalid.
            DuplicateProject: If a project with this name exists.
        """
        project = Project(name=name, description=description, tags=frozenset(tags), deadline=deadline)
        with self._mutation() as snapshot:
            if project.name in snapshot.projects:
                raise DuplicateProject(project.name)
            self._append_record(self.projects_path, project)
            snapshot.projects[project.name] = project
        logger.info(f"Created project: {project.name}")
        return project

    def rename_project(self, name: str, new_name: str) -> Project:
        """Rename a project, moving its tasks and frames along.

        Every intermediate file state is loadable: the renamed project is
        added first, tasks and frames are moved over, and the old project
        is dropped last.

        Raises:
            ValidationError: If the new name is invalid.
            UnknownProject: If there is no such project.
            DuplicateProject: If ``new_name`` is already taken.
        """
        with self._mutation() as snapshot:
            current = snapshot.projects.get(name)
            if current is None:
                raise UnknownProject(name)
            if new_name == name:
                return current
            if new_name in snapshot.projects:
                raise DuplicateProject(new_name)
            renamed = current.with_changes(name=new_name)

            self._append_record(self.projects_path, renamed)
            snapshot.projects[new_name] = renamed

            tasks = {}
            for task in snapshot.tasks.values():
                if task.project == name:
                    task = task.with_changes(project=new_name)
                tasks[task.key] = task
            self._write_tasks(snapshot, tasks)

            frames = {
                frame_id: (frame.with_changes(project=new_name) if frame.project == name else frame)
                for frame_id, frame in snapshot.frames.items()
            }
            self._write_frames(snapshot, frames)

            projects = {
                (new_name if key == name else key): (renamed if key == name else project)
                for key, project in snapshot.projects.items()
                if key != new_name
            }
            self._write_projects(snapshot, projects)
        logger.info(f"Renamed project: {name} -> {new_name}")
        return renamed

    def delete_project(self, name: str) -> None:
        """Delete a project that no task or frame refers to.

        Raises:
            UnknownProject: If there is no such project.
            ProjectInUse: If tasks or frames still refer to it.
        """
        with self._mutation() as snapshot:
            if name not in snapshot.projects:
                raise UnknownProject(name)
            tasks = sum(1 for t in snapshot.tasks.values() if t.project == name)
            frames = sum(1 for f in snapshot.frames.values() if f.project == name)
            if tasks or frames:
                raise ProjectInUse(name, tasks, frames)
            self._write_projects(
                snapshot, {k: v for k, v in snapshot.projects.items() if k != name}
            )
        logger.info(f"Removed project: {name}")

    def _pending_project(self, snapshot: _Snapshot, name: str) -> Project | None:
        """The project to create on first use, or None if ``name`` exists.

        Nothing is written here; see ``_create_pending_project``.
        """
        if name in snapshot.projects:
            return None
        if not self._auto_create_projects:
            raise UnknownProject(name)
        return Project(name=name)

    def _create_pending_project(self, snapshot: _Snapshot, project: Project | None) -> None:
        if project is None:
            return
        self._append_record(self.projects_path, project)
        snapshot.projects[project.name] = project
        logger.info(f"Created project on first use: {project.name}")

    # -- tasks ----------------------------------------------------------

    def tasks(self, project: str | None = None) -> tuple[Task, ...]:
        return tuple(
            t for t in self._snapshot.tasks.values() if project is None or t.project == project
        )

    def find_tasks(self, predicate: TaskFilter | None = None) -> list[Task]:
        """Tasks matching ``predicate``, most urgent first."""
        return select_tasks(self._snapshot.tasks.values(), predicate)

    def task(self, project: str, name: str) -> Task:
        try:
            return self._snapshot.tasks[(project, name)]
        except KeyError:
            raise UnknownTask(project, name) from None

    def create_task(
        self,
        project: str,
        name: str,
        description: str | None = None,
        state: str | None = None,
        priority: int = DEFAULT_TASK_PRIORITY,
        deadline: datetime | None = None,
        tags: Iterable[str] = (),
    ) -> Task:
        """Create a task within an existing project.

        Args:
            project: Owning project.
            name: Task name, unique within the project.
            description: Optional description.
            state: Initial state (defaults to the first configured state).
            priority: 1 (highest) to 10 (lowest).
            deadline: Optional due date.
            tags: Tags for the task.

        Raises:
            ValidationError: If a name, the state or the priority is invalid.
            UnknownProject: If the project doesn't exist.
            DuplicateTask: If the project already has a task with this name.
        """
        task = Task(
            project=project,
            name=name,
            description=description,
            state=self._task_states.initial if state is None else self._task_states.validate_state(state),
            priority=priority,
            deadline=deadline,
            tags=frozenset(tags),
        )
        with self._mutation() as snapshot:
            pending = self._pending_project(snapshot, project)
            if task.key in snapshot.tasks:
                raise DuplicateTask(project, name)
            self._create_pending_project(snapshot, pending)
            self._append_record(self.tasks_path, task)
            snapshot.tasks[task.key] = task
        logger.info(f"Created task: {project}/{name}")
        return task

    def amend_task(self, project: str, name: str, patch: TaskPatch) -> Task:
        """Apply ``patch`` to a task. A new ``name`` renames it and its frames.

        Raises:
            UnknownTask: If there is no such task.
            ValidationError: If the amended task or its state is invalid.
            DuplicateTask: If the new name is taken in the project.
        """
        with self._mutation() as snapshot:
            current = snapshot.tasks.get((project, name))
            if current is None:
                raise UnknownTask(project, name)
            updated = patch.apply(current)
            if "state" in patch.model_fields_set:
                self._task_states.validate_state(updated.state)

            if updated.key == current.key:
                self._write_tasks(
                    snapshot,
                    {k: (updated if k == current.key else v) for k, v in snapshot.tasks.items()},
                )
            else:
                if updated.key in snapshot.tasks:
                    raise DuplicateTask(project, updated.name)
                # Both names exist while frames move over, so a crash in
                # between still leaves a loadable store.
                self._write_tasks(snapshot, {**snapshot.tasks, updated.key: updated})
                frames = {
                    frame_id: (
                        frame.with_changes(task=updated.name)
                        if frame.project == project and frame.task == name
                        else frame
                    )
                    for frame_id, frame in snapshot.frames.items()
                }
                self._write_frames(snapshot, frames)
                tasks = {
                    (updated.key if k == current.key else k): (updated if k == current.key else v)
                    for k, v in snapshot.tasks.items()
                    if k != updated.key
                }
                self._write_tasks(snapshot, tasks)
        logger.info(f"Amended task {project}/{name}: {', '.join(patch.changes()) or 'no changes'}")
        return updated

    def delete_task(self, project: str, name: str) -> None:
        """Delete a task that no frame refers to.

        Raises:
            UnknownTask: If there is no such task.
            TaskInUse: If frames still refer to it.
        """
        with self._mutation() as snapshot:
            if (project, name) not in snapshot.tasks:
                raise UnknownTask(project, name)
            frames = sum(
                1 for f in snapshot.frames.values() if f.project == project and f.task == name
            )
            if frames:
                raise TaskInUse(project, name, frames)
            self._write_tasks(
                snapshot, {k: v for k, v in snapshot.tasks.items() if k != (project, name)}
            )
        logger.info(f"Removed task: {project}/{name}")

    # -- frames ---------------------------------------------------------

    def frames(self) -> tuple[Frame, ...]:
        """All frames in file (insertion) order."""
        return tuple(self._snapshot.frames.values())

    def frame(self, frame_id: int) -> Frame:
        try:
            return self._snapshot.frames[frame_id]
        except KeyError:
            raise UnknownFrame(frame_id) from None

    def running_frame(self) -> Frame | None:
        """The single frame without an end, if any."""
        return self._snapshot.running()

    def list(self, predicate: FrameFilter | None = None) -> FrameView:
        return FrameView(self, predicate)

    def report(
        self,
        predicate: FrameFilter | None = None,
        grouping: Grouping = Grouping.NONE,
        include_frames: bool = False,
        now: datetime | None = None,
    ) -> Report:
        return build_report(self.frames(), predicate, grouping, now, include_frames)

    def _check_frame_references(self, snapshot: _Snapshot, frame: Frame) -> Project | None:
        """Check the frame's project and task; return a project still to be created."""
        pending = self._pending_project(snapshot, frame.project)
        if frame.task is not None and (frame.project, frame.task) not in snapshot.tasks:
            raise UnknownTask(frame.project, frame.task)
        return pending

    @staticmethod
    def _check_running_conflict(snapshot: _Snapshot, frame: Frame) -> None:
        running = snapshot.running()
        if running is None or running.id == frame.id:
            return
        if frame.end is None or frame.end > running.start:
            raise OverlappingRunningFrame(running.id)

    def create_frame(
        self,
        project: str,
        task: str | None = None,
        start: datetime | None = None,
        tags: Iterable[str] = (),
        note: str | None = None,
        end: datetime | None = None,
    ) -> Frame:
        """Record a new frame; without ``end`` the frame is left running.

        Args:
            project: Owning project.
            task: Optional task within the project.
            start: Start time (defaults to now).
            tags: Tags for the frame.
            note: Optional free-text note.
            end: End time, or None for a running frame.

        Raises:
            ValidationError: If a field is invalid (``InvalidInterval`` when
                ``end`` precedes ``start``).
            UnknownProject: If the project doesn't exist.
            UnknownTask: If the task doesn't exist in the project.
            OverlappingRunningFrame: If a frame is running and the new one
                would be open too, or would reach past the running frame's
                start.
        """
        start = start or local_now()
        with self._mutation() as snapshot:
            frame = Frame(
                id=snapshot.next_frame_id(),
                project=project,
                task=task,
                start=start,
                end=end,
                tags=frozenset(tags),
                note=note,
            )
            self._check_running_conflict(snapshot, frame)
            pending = self._check_frame_references(snapshot, frame)

            # The id is reserved before the frame is written; a failed write
            # skips an id rather than handing it out twice.
            meta = snapshot.meta.with_changes(next_frame_id=frame.id + 1)
            self._replace_file(self.meta_path, f"{encode(meta)}\n")
            snapshot.meta = meta

            self._create_pending_project(snapshot, pending)
            self._append_record(self.frames_path, frame)
            snapshot.frames[frame.id] = frame
        logger.info(f"Created frame {frame.id} for {frame.project}")
        return frame

    def amend_frame(self, frame_id: int, patch: FramePatch, require_running: bool = False) -> Frame:
        """Apply ``patch`` to a frame and persist the result.

        Args:
            frame_id: Frame to change.
            patch: Fields to change.
            require_running: Fail with ``NotRunning`` unless the frame is
                still open when the lock is held.

        Raises:
            UnknownFrame: If there is no such frame.
            ValidationError: If the amended frame is invalid.
            UnknownProject, UnknownTask: If the patch points at missing entities.
            OverlappingRunningFrame: If the amended frame collides with a
                different running frame.
        """
        with self._mutation() as snapshot:
            current = snapshot.frames.get(frame_id)
            if current is None:
                raise UnknownFrame(frame_id)
            if require_running and not current.is_running:
                raise NotRunning()
            updated = patch.apply(current)
            self._check_running_conflict(snapshot, updated)
            pending = self._check_frame_references(snapshot, updated)

            self._create_pending_project(snapshot, pending)
            self._write_frames(
                snapshot, {k: (updated if k == frame_id else v) for k, v in snapshot.frames.items()}
            )
        logger.info(f"Amended frame {frame_id}: {', '.join(patch.changes()) or 'no changes'}")
        return updated

    def delete_frame(self, frame_id: int, require_running: bool = False) -> Frame:
        """Remove a frame and return it. Its id is never reused.

        Raises:
            UnknownFrame: If there is no such frame.
            NotRunning: If ``require_running`` is set and the frame is closed.
        """
        with self._mutation() as snapshot:
            current = snapshot.frames.get(frame_id)
            if current is None:
                raise UnknownFrame(frame_id)
            if require_running and not current.is_running:
                raise NotRunning()
            self._write_frames(snapshot, {k: v for k, v in snapshot.frames.items() if k != frame_id})
        logger.info(f"Removed frame {frame_id}")
        return current
