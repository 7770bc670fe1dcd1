#!/usr/bin/env python3
"""
taskslot CLI - explore scheduling decisions against a workspace file

Usage:
    taskslot availability WORKSPACE          - Show free/busy time per day
    taskslot suggest WORKSPACE TASK_ID       - Rank slots for one task
    taskslot propose WORKSPACE [TASK_ID...]  - Propose a batch schedule
    taskslot propose WORKSPACE --confirm     - Propose and commit in memory

A workspace is a YAML or JSON file with ``user_id``, ``preferences``,
``tasks``, ``events`` and an optional fixed ``now``. Nothing is written to a
real calendar; confirmation runs against an in-memory calendar.

Options:
    --json                           - Output in JSON format for scripting
    --config PATH                    - Engine configuration (YAML)
    --log-level LEVEL                - Logging level
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import EngineConfig, load_config
from .errors import SchedulingError, ValidationError
from .integrations.memory import InMemoryCalendar, InMemoryPreferencesStore, InMemoryTaskStore
from .logging_config import setup_logging
from .models import (
    CalendarEvent,
    ConfirmResult,
    DateRange,
    ProposalOptions,
    ScheduleProposal,
    SchedulingSuggestion,
    Task,
    UserSchedulingPreferences,
)
from .scheduling.availability import compute_availability, free_runs
from .scheduling.proposal import default_date_range
from .scheduling.protected import effective_protected_slots
from .scheduling.service import SchedulingService
from .timeutil import format_hhmm, get_zone, normalize_datetime, parse_date, utc_now

console = Console()

SEVERITY_COLORS = {
    "error": "red",
    "warning": "yellow",
    "info": "blue",
}


# =============================================================================
# WORKSPACE
# =============================================================================

class Workspace:
    """Preferences, tasks and events loaded from a workspace file."""

    def __init__(
        self,
        user_id: str,
        preferences: UserSchedulingPreferences,
        tasks: List[Task],
        events: List[CalendarEvent],
        now: Optional[datetime] = None,
    ):
        self.user_id = user_id
        self.preferences = preferences
        self.tasks = tasks
        self.events = events
        self.now = now

    @classmethod
    def load(cls, path: Path) -> "Workspace":
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot read workspace {path}: {e}", field="workspace")
        if not isinstance(data, dict):
            raise ValidationError("Workspace must be a mapping", field="workspace")

        prefs_data = dict(data.get("preferences") or {})
        user_id = str(data.get("user_id") or prefs_data.get("user_id") or "user")
        prefs_data.setdefault("user_id", user_id)
        prefs_data["rules"] = [dict(r, user_id=r.get("user_id", user_id)) for r in prefs_data.get("rules") or []]
        preferences = UserSchedulingPreferences.from_dict(prefs_data)
        timezone = preferences.timezone

        tasks = []
        for raw in data.get("tasks") or []:
            raw = dict(raw)
            raw.setdefault("user_id", user_id)
            tasks.append(Task.from_dict(raw, timezone))
        events = [CalendarEvent.from_dict(raw, timezone) for raw in data.get("events") or []]
        now = normalize_datetime(data.get("now"), get_zone(timezone))
        return cls(user_id, preferences, tasks, events, now)

    def service(self, config: EngineConfig) -> SchedulingService:
        now = self.now
        return SchedulingService(
            InMemoryCalendar(self.events, self.preferences.timezone),
            InMemoryTaskStore(self.tasks),
            InMemoryPreferencesStore([self.preferences]),
            config=config,
            clock=(lambda: now) if now is not None else utc_now,
        )

    def current_time(self) -> datetime:
        return self.now or utc_now()


def resolve_range(
    workspace: Workspace,
    config: EngineConfig,
    start: Optional[str],
    end: Optional[str],
) -> Optional[DateRange]:
    """Build a date range from --from/--to; None when neither is given."""
    if not start and not end:
        return None
    default = default_date_range(workspace.current_time(), config.default_range_days, workspace.preferences.timezone)
    return DateRange(
        parse_date(start) if start else default.start,
        parse_date(end) if end else default.end,
    )


# =============================================================================
# OUTPUT HELPERS
# =============================================================================

def output_json(data: Any) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=2, default=str))


def format_slot(start: datetime, end: datetime) -> str:
    return f"{start.strftime('%a %Y-%m-%d')} {format_hhmm(start.timetz())}-{format_hhmm(end.timetz())}"


def create_suggestions_table(title: str, suggestions: List[SchedulingSuggestion]) -> Table:
    """Create a table of ranked suggestions."""
    table = Table(
        title=title,
        box=box.SIMPLE,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", style="dim", width=3)
    table.add_column("Slot", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Why", style="white")

    for index, suggestion in enumerate(suggestions, start=1):
        score_style = "green" if suggestion.score >= 70 else ("yellow" if suggestion.score >= 40 else "red")
        why = suggestion.reasoning
        for conflict in suggestion.conflicts:
            why += f"\n[{SEVERITY_COLORS.get(conflict.severity.value, 'white')}]! {conflict.description}[/]"
        table.add_row(
            str(index),
            format_slot(suggestion.slot.start, suggestion.slot.end),
            Text(f"{suggestion.score:.1f}", style=score_style),
            why,
        )
    return table


def create_proposal_table(proposal: ScheduleProposal) -> Table:
    """Create a table of proposed assignments."""
    table = Table(
        title=f"Proposal {proposal.proposal_id[:8]}",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Task", style="white")
    table.add_column("Priority", width=8)
    table.add_column("Slot", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Note", style="dim")

    for assignment in proposal.assignments:
        task = assignment.task
        recommended = assignment.recommended
        if recommended is None:
            table.add_row(task.content, task.priority.value, Text("unscheduled", style="red"), "", assignment.reason or "")
            continue
        note = "moves another event" if assignment.requires_displacement else ""
        table.add_row(
            task.content,
            task.priority.value,
            format_slot(recommended.slot.start, recommended.slot.end),
            f"{recommended.score:.1f}",
            note,
        )
    return table


def print_confirm_result(result: ConfirmResult) -> None:
    lines = [f"[green]Scheduled:[/green] {len(result.scheduled_tasks)}"]
    for scheduled in result.scheduled_tasks:
        lines.append(f"  {scheduled.task_id} -> {format_slot(scheduled.slot.start, scheduled.slot.end)}")
    if result.failed_tasks:
        lines.append(f"[red]Failed:[/red] {len(result.failed_tasks)}")
        for failed in result.failed_tasks:
            lines.append(f"  {failed.task_id}: {failed.error} [dim]({failed.error_code})[/dim]")
    if result.displaced:
        lines.append(f"[yellow]Moved events:[/yellow] {', '.join(result.displaced)}")
    console.print(Panel(
        "\n".join(lines),
        title="[bold blue]Confirmation[/bold blue]",
        border_style="blue",
        box=box.ROUNDED,
    ))


def fail(ctx: click.Context, error: SchedulingError) -> None:
    """Report a scheduling error and exit non-zero."""
    if ctx.obj.get("json", False):
        output_json(error.to_dict())
    else:
        console.print(f"[bold red]Error:[/bold red] {error} [dim]({error.error_code})[/dim]")
    ctx.exit(1)


def _prepare(ctx: click.Context, workspace_path: str) -> Tuple[Workspace, EngineConfig]:
    return Workspace.load(Path(workspace_path)), ctx.obj["config"]


# =============================================================================
# CLI GROUP
# =============================================================================

@click.group()
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Engine configuration file (YAML); defaults to $TASKSLOT_CONFIG')
@click.option('--log-level', default=None, help='Logging level (overrides config)')
@click.pass_context
def cli(ctx: click.Context, json_output: bool, config_path: Optional[str], log_level: Optional[str]) -> None:
    """taskslot - find time for tasks in a calendar."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = json_output
    try:
        config = load_config(config_path)
    except SchedulingError as e:
        fail(ctx, e)
        return
    setup_logging(log_level or config.log_level)
    ctx.obj['config'] = config


# =============================================================================
# AVAILABILITY COMMAND
# =============================================================================

@cli.command()
@click.argument('workspace', type=click.Path(exists=True, dir_okay=False))
@click.option('--from', 'start', default=None, help='First date (YYYY-MM-DD)')
@click.option('--to', 'end', default=None, help='Last date (YYYY-MM-DD)')
@click.option('--granularity', '-g', type=int, default=None, help='Slot size in minutes')
@click.pass_context
def availability(ctx: click.Context, workspace: str, start: Optional[str], end: Optional[str],
                 granularity: Optional[int]) -> None:
    """Show free and busy time per day."""
    json_output = ctx.obj.get('json', False)
    try:
        ws, config = _prepare(ctx, workspace)
        prefs = ws.preferences
        rng = resolve_range(ws, config, start, end) or default_date_range(
            ws.current_time(), config.default_range_days, prefs.timezone
        )
        windows = compute_availability(
            ws.events,
            effective_protected_slots(prefs),
            prefs.working_hours,
            rng,
            granularity or config.default_granularity_minutes,
            prefs.timezone,
        )
    except SchedulingError as e:
        fail(ctx, e)
        return

    if json_output:
        output_json([w.to_dict() for w in windows])
        return

    table = Table(
        title=f"Availability {rng.start} to {rng.end} ({prefs.timezone})",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Date", style="cyan", width=16)
    table.add_column("Free", justify="right", style="green")
    table.add_column("Busy", justify="right", style="red")
    table.add_column("Free time", style="white")

    for window in windows:
        runs = ", ".join(
            f"{format_hhmm(r.start.timetz())}-{format_hhmm(r.end.timetz())}" for r in free_runs(window)
        )
        table.add_row(
            window.date.strftime("%a %Y-%m-%d"),
            f"{window.total_free_minutes}m",
            f"{window.total_busy_minutes}m",
            runs or "[dim]none[/dim]",
        )

    console.print()
    console.print(table)
    console.print()


# =============================================================================
# SUGGEST COMMAND
# =============================================================================

@cli.command()
@click.argument('workspace', type=click.Path(exists=True, dir_okay=False))
@click.argument('task_id')
@click.option('--count', '-n', type=int, default=None, help='Number of suggestions')
@click.option('--from', 'start', default=None, help='First date (YYYY-MM-DD)')
@click.option('--to', 'end', default=None, help='Last date (YYYY-MM-DD)')
@click.pass_context
def suggest(ctx: click.Context, workspace: str, task_id: str, count: Optional[int],
            start: Optional[str], end: Optional[str]) -> None:
    """Rank candidate slots for one task."""
    json_output = ctx.obj.get('json', False)
    try:
        ws, config = _prepare(ctx, workspace)
        service = ws.service(config)
        rng = resolve_range(ws, config, start, end)
        result = asyncio.run(service.get_suggestions(ws.user_id, task_id, count, rng))
    except SchedulingError as e:
        fail(ctx, e)
        return

    if json_output:
        output_json(result.to_dict())
        return

    console.print()
    if not result.suggestions:
        console.print(f"[yellow]No available slot for '{result.task.content}'.[/yellow]")
    else:
        console.print(create_suggestions_table(f"Suggestions for '{result.task.content}'", result.suggestions))
    if result.applied_rule is not None:
        rule = result.applied_rule
        console.print(
            f"[dim]Rule ({rule.source}): {rule.task_type.value}, "
            f"{format_hhmm(rule.preferred_time_range.start)}-{format_hhmm(rule.preferred_time_range.end)}, "
            f"{rule.default_duration}m[/dim]"
        )
    console.print()


# =============================================================================
# PROPOSE COMMAND
# =============================================================================

@cli.command()
@click.argument('workspace', type=click.Path(exists=True, dir_okay=False))
@click.argument('task_ids', nargs=-1)
@click.option('--from', 'start', default=None, help='First date (YYYY-MM-DD)')
@click.option('--to', 'end', default=None, help='Last date (YYYY-MM-DD)')
@click.option('--no-buffers', is_flag=True, help='Do not reserve buffer time')
@click.option('--no-displacement', is_flag=True, help='Never propose moving existing events')
@click.option('--ignore-priority', is_flag=True, help='Place tasks in the given order')
@click.option('--confirm', 'confirm_now', is_flag=True, help='Commit the proposal to the in-memory calendar')
@click.option('--approve-displacements', is_flag=True, help='Allow moving events when confirming')
@click.pass_context
def propose(ctx: click.Context, workspace: str, task_ids: Tuple[str, ...], start: Optional[str],
            end: Optional[str], no_buffers: bool, no_displacement: bool, ignore_priority: bool,
            confirm_now: bool, approve_displacements: bool) -> None:
    """Propose a schedule for several tasks (default: every open task)."""
    json_output = ctx.obj.get('json', False)
    try:
        ws, config = _prepare(ctx, workspace)
        ids = list(task_ids) or [t.task_id for t in ws.tasks if t.is_open and not t.is_scheduled]
        options = ProposalOptions(
            date_range=resolve_range(ws, config, start, end),
            respect_priority=not ignore_priority,
            include_buffers=not no_buffers,
            allow_displacement=not no_displacement,
        )
        service = ws.service(config)
        proposal, result = asyncio.run(
            _propose_and_confirm(service, ws.user_id, ids, options, confirm_now, approve_displacements)
        )
    except SchedulingError as e:
        fail(ctx, e)
        return

    if json_output:
        data: Dict[str, Any] = {"proposal": proposal.to_dict()}
        if result is not None:
            data["result"] = result.to_dict()
        output_json(data)
        return

    summary = proposal.summary
    console.print()
    console.print(create_proposal_table(proposal))
    console.print(
        f"[bold]{summary.schedulable_tasks}/{summary.total_tasks}[/bold] tasks placed, "
        f"{summary.total_minutes} minutes, expires {proposal.expires_at.strftime('%H:%M')}"
    )
    for displacement in proposal.displacements:
        console.print(
            f"[yellow]Moves '{displacement.event_title}' to "
            f"{format_slot(displacement.proposed_slot.start, displacement.proposed_slot.end)}[/yellow]"
        )
    if result is not None:
        console.print()
        print_confirm_result(result)
    console.print()


async def _propose_and_confirm(
    service: SchedulingService,
    user_id: str,
    task_ids: List[str],
    options: ProposalOptions,
    confirm_now: bool,
    approve_displacements: bool,
) -> Tuple[ScheduleProposal, Optional[ConfirmResult]]:
    proposal = await service.propose_schedule(user_id, task_ids, options)
    if not confirm_now:
        return proposal, None
    result = await service.confirm_schedule(
        user_id, proposal.proposal_id, displacements_approved=approve_displacements
    )
    return proposal, result


# =============================================================================
# VERSION COMMAND
# =============================================================================

@cli.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show version information."""
    if ctx.obj.get('json', False):
        output_json({"name": "taskslot", "version": __version__})
        return
    console.print(f"taskslot [bold]{__version__}[/bold]")


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Main entry point for the taskslot CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
