"""Command-line interface for tallybook.

The CLI only turns arguments into typed values, calls the tracking core
and renders the results. All rules about projects, tasks and frames live
in ``tallybook.tracking``.

CONCEPTS:
---------
- PROJECT: Something you spend time on (e.g. a client or a side project).
- TASK:    A named piece of work inside a project.
- FRAME:   One recorded interval of work against a project (and task).
           A frame without an end is the running timer.
"""

import argparse
import logging
import sys
import time
from collections.abc import Callable
from datetime import datetime
from typing import NoReturn

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tallybook import __version__
from tallybook.config import settings
from tallybook.errors import StoreLocked, TallyError, ValidationError
from tallybook.tracking import (
    DurationFilter,
    Frame,
    FrameFilter,
    FramePatch,
    Grouping,
    TaskFilter,
    TaskPatch,
    TaskStates,
    Timer,
    TrackingStore,
    find_degenerate,
    find_gaps,
    find_overlaps,
    format_duration,
    now,
    parse_duration,
    parse_range,
    parse_timestamp,
    split_tags,
)
from tallybook.tracking.types import DEFAULT_TASK_PRIORITY

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def open_store(args: argparse.Namespace) -> TrackingStore:
    data_dir = args.data_dir or settings.get_data_dir()
    return TrackingStore(
        data_dir,
        lock_timeout=settings.lock_timeout,
        auto_create_projects=settings.auto_create_projects,
        task_states=TaskStates(states=tuple(settings.task_states)),
    )


def _format_ts(moment: datetime | None) -> str:
    if moment is None:
        return "-"
    return moment.strftime("%Y-%m-%d %H:%M %z")


def _format_tags(tags: frozenset[str]) -> str:
    return ", ".join(sorted(tags)) or "-"


def _frames_table(frames: list[Frame], title: str, reference: datetime) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Project", style="white")
    table.add_column("Task", style="white")
    table.add_column("Start", style="blue")
    table.add_column("End", style="blue")
    table.add_column("Duration", style="green", justify="right")
    table.add_column("Tags", style="magenta")
    table.add_column("Note", style="dim")

    for frame in frames:
        table.add_row(
            str(frame.id),
            frame.project,
            frame.task or "-",
            _format_ts(frame.start),
            _format_ts(frame.end) if frame.end else "[yellow]running[/yellow]",
            format_duration(frame.duration(reference)),
            _format_tags(frame.tags),
            frame.note or "",
        )
    return table


def _build_filter(args: argparse.Namespace, reference: datetime) -> FrameFilter:
    start_from = start_to = None
    if args.period:
        start_from, start_to = parse_range(args.period, reference)
    if args.since:
        start_from = parse_timestamp(args.since, reference)
    if args.until:
        start_to = parse_timestamp(args.until, reference)

    running = None
    if args.running:
        running = True
    elif args.closed:
        running = False

    return FrameFilter(
        project=args.project,
        task=args.task,
        tags=split_tags(args.tags),
        start_from=start_from,
        start_to=start_to,
        running=running,
        duration=DurationFilter.parse(args.duration) if args.duration else None,
    )


# =============================================================================
# Projects and tasks
# =============================================================================


def _parse_deadline(text: str | None) -> datetime | None:
    return parse_timestamp(text) if text else None


def cmd_project_add(args: argparse.Namespace) -> None:
    """Create a project."""
    store = open_store(args)
    project = store.create_project(
        args.name, args.description, split_tags(args.tags), _parse_deadline(args.deadline)
    )
    console.print(f"[green]Created project:[/green] {project.name}")


def cmd_project_list(args: argparse.Namespace) -> None:
    """List projects."""
    store = open_store(args)
    projects = store.projects()
    if not projects:
        console.print("[yellow]No projects.[/yellow]")
        return

    table = Table(title="Projects")
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Default Tags", style="magenta")
    table.add_column("Deadline", style="blue")
    table.add_column("Tasks", style="green", justify="right")
    for project in projects:
        table.add_row(
            project.name,
            project.description or "",
            _format_tags(project.tags),
            _format_ts(project.deadline),
            str(len(store.tasks(project.name))),
        )
    console.print(table)


def cmd_project_rename(args: argparse.Namespace) -> None:
    """Rename a project along with its tasks and frames."""
    project = open_store(args).rename_project(args.name, args.new_name)
    console.print(f"[green]Renamed project:[/green] {args.name} -> {project.name}")


def cmd_project_remove(args: argparse.Namespace) -> None:
    """Remove a project that nothing refers to."""
    store = open_store(args)
    store.delete_project(args.name)
    console.print(f"[green]Removed project:[/green] {args.name}")


def cmd_task_add(args: argparse.Namespace) -> None:
    """Create a task in a project."""
    store = open_store(args)
    task = store.create_task(
        args.project,
        args.name,
        args.description,
        state=args.state,
        priority=args.priority,
        deadline=_parse_deadline(args.deadline),
        tags=split_tags(args.tags),
    )
    console.print(f"[green]Created task:[/green] {task.project}/{task.name} ({task.state})")


def cmd_task_list(args: argparse.Namespace) -> None:
    """List tasks, most urgent first."""
    store = open_store(args)
    predicate = TaskFilter(
        project=args.project,
        states=frozenset(args.state or ()),
        tags=split_tags(args.tags),
        max_priority=args.max_priority,
        due_before=_parse_deadline(args.due_before),
    )
    tasks = store.find_tasks(predicate)
    if not args.all and not args.state:
        tasks = [t for t in tasks if t.state != store.task_states.done]
    if not tasks:
        console.print("[yellow]No tasks.[/yellow]")
        return

    reference = now()
    table = Table(title="Tasks")
    table.add_column("Project", style="cyan")
    table.add_column("Task", style="white")
    table.add_column("State", style="yellow")
    table.add_column("Priority", style="magenta", justify="right")
    table.add_column("Deadline", style="blue")
    table.add_column("Tags", style="magenta")
    table.add_column("Description", style="dim")
    for task in tasks:
        deadline = _format_ts(task.deadline)
        if task.is_overdue(reference):
            deadline = f"[red]{deadline}[/red]"
        table.add_row(
            task.project,
            task.name,
            task.state or "-",
            str(task.priority),
            deadline,
            _format_tags(task.tags),
            task.description or "",
        )
    console.print(table)


def cmd_task_edit(args: argparse.Namespace) -> None:
    """Change a task's name, state, priority, deadline, tags or description."""
    changes: dict[str, object] = {}
    if args.rename:
        changes["name"] = args.rename
    if args.state:
        changes["state"] = args.state
    if args.priority is not None:
        changes["priority"] = args.priority
    if args.deadline is not None:
        changes["deadline"] = _parse_deadline(args.deadline)
    if args.tags is not None:
        changes["tags"] = split_tags(args.tags)
    if args.description is not None:
        changes["description"] = args.description or None
    patch = TaskPatch(**changes)
    if patch.is_empty():
        raise ValidationError("nothing to change")
    task = open_store(args).amend_task(args.project, args.name, patch)
    console.print(f"[green]Amended task:[/green] {task.project}/{task.name}")


def cmd_task_states(args: argparse.Namespace) -> None:
    """Show the configured task states in workflow order."""
    states = open_store(args).task_states
    for state in states.states:
        marker = ""
        if state == states.initial:
            marker = " [dim](new tasks)[/dim]"
        elif state == states.done:
            marker = " [dim](done)[/dim]"
        console.print(f"{state}{marker}")


def cmd_task_remove(args: argparse.Namespace) -> None:
    """Remove a task that no frame refers to."""
    store = open_store(args)
    store.delete_task(args.project, args.name)
    console.print(f"[green]Removed task:[/green] {args.project}/{args.name}")


# =============================================================================
# Timer
# =============================================================================


def cmd_start(args: argparse.Namespace) -> None:
    """Start the timer."""
    project = args.project or settings.default_project
    if not project:
        raise ValidationError("no project given and TALLY_DEFAULT_PROJECT is not set")
    timer = Timer(open_store(args))
    at = parse_timestamp(args.at) if args.at else None
    frame = timer.start(project, args.task, split_tags(args.tags), args.note, at=at)
    target = f"{frame.project}/{frame.task}" if frame.task else frame.project
    console.print(f"[green]Started[/green] frame {frame.id} on {target} at {_format_ts(frame.start)}")


def cmd_stop(args: argparse.Namespace) -> None:
    """Stop the timer."""
    timer = Timer(open_store(args))
    end = parse_timestamp(args.at) if args.at else None
    frame = timer.stop(end)
    console.print(
        f"[green]Stopped[/green] frame {frame.id} on {frame.project} "
        f"({format_duration(frame.duration())})"
    )


def cmd_cancel(args: argparse.Namespace) -> None:
    """Discard the running frame."""
    frame = Timer(open_store(args)).cancel()
    console.print(f"[yellow]Cancelled[/yellow] frame {frame.id} on {frame.project}")


def cmd_status(args: argparse.Namespace) -> None:
    """Show the running frame, if any."""
    status = Timer(open_store(args)).status()
    if status.frame is None:
        console.print("No timer is running.")
        return
    frame = status.frame
    target = f"{frame.project}/{frame.task}" if frame.task else frame.project
    console.print(
        f"Tracking [cyan]{target}[/cyan] since {_format_ts(frame.start)} "
        f"([green]{format_duration(status.elapsed)}[/green])"
    )
    if frame.tags:
        console.print(f"  Tags: {_format_tags(frame.tags)}")
    if frame.note:
        console.print(f"  Note: {frame.note}")


def _patch_from_args(args: argparse.Namespace, allow_end: bool) -> FramePatch:
    changes: dict[str, object] = {}
    if args.project:
        changes["project"] = args.project
    if args.task:
        changes["task"] = args.task
    if args.no_task:
        changes["task"] = None
    if args.tags is not None:
        changes["tags"] = split_tags(args.tags)
    if args.note is not None:
        changes["note"] = args.note or None
    if args.start:
        changes["start"] = parse_timestamp(args.start)
    if allow_end and args.end:
        changes["end"] = parse_timestamp(args.end)
    return FramePatch(**changes)


def cmd_amend(args: argparse.Namespace) -> None:
    """Change the running frame without stopping it."""
    patch = _patch_from_args(args, allow_end=False)
    frame = Timer(open_store(args)).amend_running(patch)
    console.print(f"[green]Amended[/green] running frame {frame.id}")


# =============================================================================
# Frames
# =============================================================================


def cmd_log_add(args: argparse.Namespace) -> None:
    """Record a finished frame after the fact."""
    if args.end and args.duration:
        raise ValidationError("give either --end or --duration, not both")
    reference = now()
    start = parse_timestamp(args.start, reference)
    if args.duration:
        end = start + parse_duration(args.duration)
    else:
        end = parse_timestamp(args.end, reference) if args.end else reference

    store = open_store(args)
    frame = store.create_frame(
        args.project, args.task, start, split_tags(args.tags), args.note, end=end
    )
    console.print(
        f"[green]Logged[/green] frame {frame.id} on {frame.project} "
        f"({format_duration(frame.duration())})"
    )


def cmd_log_list(args: argparse.Namespace) -> None:
    """List frames matching the filters."""
    reference = now()
    predicate = _build_filter(args, reference)
    frames = list(open_store(args).list(predicate))
    if not frames:
        console.print("[yellow]No frames.[/yellow]")
        return
    console.print(_frames_table(frames, "Frames", reference))


def cmd_log_edit(args: argparse.Namespace) -> None:
    """Amend any frame by id."""
    patch = _patch_from_args(args, allow_end=True)
    if patch.is_empty():
        raise ValidationError("nothing to change")
    frame = open_store(args).amend_frame(args.frame_id, patch)
    console.print(f"[green]Amended[/green] frame {frame.id}")


def cmd_log_remove(args: argparse.Namespace) -> None:
    """Delete a frame by id."""
    frame = open_store(args).delete_frame(args.frame_id)
    console.print(f"[green]Removed[/green] frame {frame.id} on {frame.project}")


# =============================================================================
# Reports
# =============================================================================


def _group_label(key: object) -> str:
    if key is None:
        return "all"
    if isinstance(key, tuple):
        project, task = key
        return f"{project}/{task}" if task else f"{project} (no task)"
    return str(key)


def cmd_report(args: argparse.Namespace) -> None:
    """Show totals grouped by project, task or day."""
    reference = now()
    predicate = _build_filter(args, reference)
    report = open_store(args).report(
        predicate, Grouping(args.by), include_frames=args.frames, now=reference
    )
    if not report.count:
        console.print("[yellow]No frames match.[/yellow]")
        return

    table = Table(title=f"Time by {report.grouping.value}")
    table.add_column(report.grouping.value.capitalize(), style="cyan")
    table.add_column("Frames", style="magenta", justify="right")
    table.add_column("Total", style="green", justify="right")
    for key, summary in report.groups.items():
        table.add_row(_group_label(key), str(summary.count), format_duration(summary.total))
    table.add_section()
    table.add_row("[bold]Total[/bold]", str(report.count), f"[bold]{format_duration(report.total)}[/bold]")
    console.print(table)

    if report.frames:
        console.print(_frames_table(report.frames, "Frames", reference))


def cmd_check(args: argparse.Namespace) -> None:
    """Look for overlapping, zero-length and gap-separated frames."""
    reference = now()
    frames = open_store(args).frames()
    clean = True

    overlaps = find_overlaps(frames, reference)
    if overlaps:
        clean = False
        console.print(f"[red]{len(overlaps)} overlapping pair(s):[/red]")
        for first, second in overlaps:
            console.print(
                f"  {first.project}: frame {first.id} ({_format_ts(first.start)}) "
                f"overlaps frame {second.id} ({_format_ts(second.start)})"
            )

    degenerate = find_degenerate(frames)
    if degenerate:
        clean = False
        console.print(f"[yellow]{len(degenerate)} zero-length frame(s):[/yellow]")
        for frame in degenerate:
            console.print(f"  frame {frame.id} on {frame.project} at {_format_ts(frame.start)}")

    if args.gaps:
        for gap in find_gaps(frames, parse_duration(args.gaps), reference):
            clean = False
            console.print(
                f"[blue]Gap[/blue] {_format_ts(gap.start)} - {_format_ts(gap.end)} "
                f"({format_duration(gap.duration)})"
            )

    if clean:
        console.print("[green]No problems found.[/green]")


def cmd_version(args: argparse.Namespace) -> None:
    console.print(f"tallybook {__version__}")


# =============================================================================
# Entry point
# =============================================================================


def run_command(handler: Callable[[argparse.Namespace], None], args: argparse.Namespace) -> int:
    """Run a command, retrying a bounded number of times while the store is locked."""
    attempts = settings.lock_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            handler(args)
            return 0
        except StoreLocked as exc:
            if attempt == attempts:
                console.print(f"[red]Error:[/red] {exc}")
                return 1
            delay = 0.2 * 2 ** (attempt - 1)
            logger.debug(f"Store locked, retrying in {delay:.1f}s ({attempt}/{attempts - 1})")
            time.sleep(delay)
        except TallyError as exc:
            console.print(f"[red]Error:[/red] {exc}")
            return 1
    return 1


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--project", help="Only frames of this project")
    parser.add_argument("-t", "--task", help="Only frames of this task")
    parser.add_argument("--tags", help="Only frames with any of these tags (comma-separated)")
    parser.add_argument(
        "--period",
        help='Named period: today, yesterday, week, month, year, "7 days", "from 09:00"',
    )
    parser.add_argument("--since", help="Frames starting at or after this time")
    parser.add_argument("--until", help="Frames starting before this time")
    parser.add_argument("--duration", help='Duration comparison, e.g. ">=1h" or "<15m"')
    state = parser.add_mutually_exclusive_group()
    state.add_argument("--running", action="store_true", help="Only the running frame")
    state.add_argument("--closed", action="store_true", help="Only finished frames")


def _add_patch_arguments(parser: argparse.ArgumentParser, with_end: bool) -> None:
    parser.add_argument("--project", help="Move to this project")
    task = parser.add_mutually_exclusive_group()
    task.add_argument("--task", help="Set the task")
    task.add_argument("--no-task", action="store_true", help="Clear the task")
    parser.add_argument("--tags", help="Replace tags (comma-separated, empty to clear)")
    parser.add_argument("--note", help="Replace the note (empty to clear)")
    parser.add_argument("--start", help="New start time")
    if with_end:
        parser.add_argument("--end", help="New end time")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally",
        description="tallybook - plain-text personal time tracking",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    parser.add_argument("-d", "--data-dir", help="Data directory (default: $TALLY_DATA_DIR or ~/.tallybook)")

    subparsers = parser.add_subparsers(dest="command")

    # project
    project_parser = subparsers.add_parser("project", help="Manage projects")
    project_sub = project_parser.add_subparsers(dest="project_command")

    p = project_sub.add_parser("add", help="Create a project")
    p.add_argument("name")
    p.add_argument("--description", help="Project description")
    p.add_argument("--tags", help="Default tags for frames on this project (comma-separated)")
    p.add_argument("--deadline", help="Due date")
    p.set_defaults(func=cmd_project_add)

    p = project_sub.add_parser("list", aliases=["ls"], help="List projects")
    p.set_defaults(func=cmd_project_list)

    p = project_sub.add_parser("rename", aliases=["mv"], help="Rename a project")
    p.add_argument("name")
    p.add_argument("new_name")
    p.set_defaults(func=cmd_project_rename)

    p = project_sub.add_parser("rm", aliases=["remove"], help="Remove an unused project")
    p.add_argument("name")
    p.set_defaults(func=cmd_project_remove)

    # task
    task_parser = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task_parser.add_subparsers(dest="task_command")

    p = task_sub.add_parser("add", help="Create a task in a project")
    p.add_argument("project")
    p.add_argument("name")
    p.add_argument("--description", help="Task description")
    p.add_argument("--state", help="Initial state (default: first configured state)")
    p.add_argument("--priority", type=int, default=DEFAULT_TASK_PRIORITY, help="1 (highest) to 10 (lowest)")
    p.add_argument("--deadline", help="Due date")
    p.add_argument("--tags", help="Tags (comma-separated)")
    p.set_defaults(func=cmd_task_add)

    p = task_sub.add_parser("list", aliases=["ls"], help="List tasks")
    p.add_argument("project", nargs="?")
    p.add_argument("--state", action="append", help="Only tasks in this state (repeatable)")
    p.add_argument("--all", action="store_true", help="Include done tasks")
    p.add_argument("--tags", help="Only tasks with any of these tags (comma-separated)")
    p.add_argument("--max-priority", type=int, help="Only tasks at this priority or more urgent")
    p.add_argument("--due-before", help="Only tasks due before this time")
    p.set_defaults(func=cmd_task_list)

    p = task_sub.add_parser("edit", help="Amend a task")
    p.add_argument("project")
    p.add_argument("name")
    p.add_argument("--rename", help="New task name")
    p.add_argument("--state", help="New state")
    p.add_argument("--priority", type=int, help="New priority")
    p.add_argument("--deadline", help="New due date (empty to clear)")
    p.add_argument("--tags", help="Replace tags (comma-separated, empty to clear)")
    p.add_argument("--description", help="Replace the description (empty to clear)")
    p.set_defaults(func=cmd_task_edit)

    p = task_sub.add_parser("states", help="Show the task workflow states")
    p.set_defaults(func=cmd_task_states)

    p = task_sub.add_parser("rm", aliases=["remove"], help="Remove an unused task")
    p.add_argument("project")
    p.add_argument("name")
    p.set_defaults(func=cmd_task_remove)

    # timer
    p = subparsers.add_parser("start", help="Start the timer")
    p.add_argument("project", nargs="?", help="Project (default: $TALLY_DEFAULT_PROJECT)")
    p.add_argument("-t", "--task", help="Task within the project")
    p.add_argument("--tags", help="Tags (comma-separated)")
    p.add_argument("-n", "--note", help="Note")
    p.add_argument("--at", help="Start time (default: now)")
    p.set_defaults(func=cmd_start)

    p = subparsers.add_parser("stop", help="Stop the timer")
    p.add_argument("--at", help="End time (default: now)")
    p.set_defaults(func=cmd_stop)

    p = subparsers.add_parser("cancel", help="Discard the running frame")
    p.set_defaults(func=cmd_cancel)

    p = subparsers.add_parser("status", help="Show the running frame")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("amend", help="Change the running frame")
    _add_patch_arguments(p, with_end=False)
    p.set_defaults(func=cmd_amend)

    # log
    log_parser = subparsers.add_parser("log", help="Manage recorded frames")
    log_sub = log_parser.add_subparsers(dest="log_command")

    p = log_sub.add_parser("add", help="Record a finished frame")
    p.add_argument("project")
    p.add_argument("-t", "--task", help="Task within the project")
    p.add_argument("--start", required=True, help='Start time, e.g. "09:00" or "yesterday@14:30"')
    p.add_argument("--end", help="End time (default: now)")
    p.add_argument("--duration", help='Duration instead of end, e.g. "1h30m"')
    p.add_argument("--tags", help="Tags (comma-separated)")
    p.add_argument("-n", "--note", help="Note")
    p.set_defaults(func=cmd_log_add)

    p = log_sub.add_parser("list", aliases=["ls"], help="List frames")
    _add_filter_arguments(p)
    p.set_defaults(func=cmd_log_list)

    p = log_sub.add_parser("edit", help="Amend a frame")
    p.add_argument("frame_id", type=int)
    _add_patch_arguments(p, with_end=True)
    p.set_defaults(func=cmd_log_edit)

    p = log_sub.add_parser("rm", aliases=["remove"], help="Delete a frame")
    p.add_argument("frame_id", type=int)
    p.set_defaults(func=cmd_log_remove)

    # reports
    p = subparsers.add_parser("report", help="Show time totals")
    _add_filter_arguments(p)
    p.add_argument(
        "--by",
        choices=[g.value for g in Grouping],
        default=Grouping.PROJECT.value,
        help="Grouping (default: project)",
    )
    p.add_argument("--frames", action="store_true", help="Also list the matching frames")
    p.set_defaults(func=cmd_report)

    p = subparsers.add_parser("check", help="Find overlapping and zero-length frames")
    p.add_argument("--gaps", help='Also report untracked gaps longer than this, e.g. "30m"')
    p.set_defaults(func=cmd_check)

    p = subparsers.add_parser("version", help="Show version information")
    p.set_defaults(func=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the tally CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        sys.exit(0)

    sys.exit(run_command(handler, args))


if __name__ == "__main__":
    main()
