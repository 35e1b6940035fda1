"""Running-timer state machine.

The timer has no state of its own: it is Running exactly when the store
holds a frame without an end, and Idle otherwise. Transitions are carried
out as store mutations, so the store's lock decides races between two
processes.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from tallybook.errors import (
    AlreadyRunning,
    InvalidInterval,
    NotRunning,
    OverlappingRunningFrame,
    UnknownFrame,
    UnknownProject,
    ValidationError,
)
from tallybook.tracking.storage import TrackingStore
from tallybook.tracking.timeutil import now as local_now
from tallybook.tracking.types import Frame, FramePatch

logger = logging.getLogger(__name__)


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class TimerStatus:
    """Snapshot of the timer.

    Attributes:
        state: Idle or Running.
        frame: The running frame, if any.
        elapsed: Time since the running frame started.
    """

    state: TimerState
    frame: Frame | None = None
    elapsed: timedelta = timedelta(0)


class Timer:
    """Start, stop, amend and cancel the running frame of a store."""

    def __init__(self, store: TrackingStore) -> None:
        self._store = store

    @property
    def state(self) -> TimerState:
        if self._store.running_frame() is None:
            return TimerState.IDLE
        return TimerState.RUNNING

    def status(self, now: datetime | None = None) -> TimerStatus:
        frame = self._store.running_frame()
        if frame is None:
            return TimerStatus(state=TimerState.IDLE)
        return TimerStatus(state=TimerState.RUNNING, frame=frame, elapsed=frame.duration(now))

    def _require_running(self) -> Frame:
        self._store.reload()
        frame = self._store.running_frame()
        if frame is None:
            raise NotRunning()
        return frame

    def start(
        self,
        project: str,
        task: str | None = None,
        tags: Iterable[str] = (),
        note: str | None = None,
        at: datetime | None = None,
    ) -> Frame:
        """Open a new frame. The project's default tags are added to ``tags``.

        Raises:
            AlreadyRunning: If a frame is already running.
            UnknownProject, UnknownTask, ValidationError: From the store.
        """
        self._store.reload()
        running = self._store.running_frame()
        if running is not None:
            raise AlreadyRunning(running.id)

        try:
            defaults = self._store.project(project).tags
        except UnknownProject:
            defaults = frozenset()

        try:
            frame = self._store.create_frame(
                project,
                task=task,
                start=at or local_now(),
                tags=frozenset(tags) | defaults,
                note=note,
            )
        except OverlappingRunningFrame as exc:
            # Another process started a timer after our reload.
            raise AlreadyRunning(exc.frame_id) from exc
        logger.info(f"Timer started: frame {frame.id} on {frame.project}")
        return frame

    def stop(self, end: datetime | None = None) -> Frame:
        """Close the running frame at ``end`` (defaults to now).

        Raises:
            NotRunning: If no frame is running.
            InvalidInterval: If ``end`` precedes the frame's start.
        """
        running = self._require_running()
        end = end or local_now()
        if end < running.start:
            raise InvalidInterval(
                f"cannot stop frame {running.id} at {end.isoformat()}, "
                f"before it started at {running.start.isoformat()}"
            )
        try:
            frame = self._store.amend_frame(running.id, FramePatch(end=end), require_running=True)
        except UnknownFrame as exc:
            raise NotRunning() from exc
        logger.info(f"Timer stopped: frame {frame.id}")
        return frame

    def amend_running(self, patch: FramePatch) -> Frame:
        """Change the running frame without closing it.

        Raises:
            NotRunning: If no frame is running.
            ValidationError: If the patch sets ``end`` or is otherwise invalid.
        """
        if "end" in patch.model_fields_set:
            raise ValidationError("use stop() to set the end of the running frame")
        running = self._require_running()
        try:
            return self._store.amend_frame(running.id, patch, require_running=True)
        except UnknownFrame as exc:
            raise NotRunning() from exc

    def cancel(self) -> Frame:
        """Discard the running frame entirely and return it.

        Raises:
            NotRunning: If no frame is running.
        """
        running = self._require_running()
        try:
            frame = self._store.delete_frame(running.id, require_running=True)
        except UnknownFrame as exc:
            raise NotRunning() from exc
        logger.info(f"Timer cancelled: frame {frame.id}")
        return frame
