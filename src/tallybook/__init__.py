"""tallybook - plain-text personal time tracking."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("tallybook")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from tallybook.errors import TallyError
from tallybook.tracking import Frame, Project, Task, Timer, TrackingStore

__all__ = ["TallyError", "TrackingStore", "Timer", "Project", "Task", "Frame"]
