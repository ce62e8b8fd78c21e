"""Command-line interface for MailPilot.

Provides commands for configuration validation, pattern analysis and review,
the staging pipeline, the audit log, and the scheduler service.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot analyze --user u1
    python -m mailpilot patterns list --user u1
    python -m mailpilot staged rescue <staged_id> --user u1
    python -m mailpilot audit undo <entry_id> --user u1
    python -m mailpilot serve
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from mailpilot.config import validate_config_file
from mailpilot.core.errors import (
    ActionValidationError,
    EntityNotFoundError,
    MailPilotError,
    StateConflictError,
)
from mailpilot.core.logging import configure_logging, short_id

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore
    from mailpilot.engine.staging import StagingPipeline, SweepResult
    from mailpilot.engine.undo import UndoService
    from mailpilot.graph.messages import MailProvider

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore


@dataclass(frozen=True, slots=True)
class GraphDeps:
    """Mail-provider backed services initialized by _init_graph_deps()."""

    provider: MailProvider
    staging: StagingPipeline
    undo: UndoService


async def _init_cli_deps() -> CLIDeps:
    """Load config and open the database.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from mailpilot.config import get_config
    from mailpilot.db.store import DatabaseStore

    try:
        config = get_config()
    except MailPilotError as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least an [cyan]auth[/cyan] section.\n"
            "See config/config.yaml.example for the available settings."
        )
        sys.exit(1)

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    return CLIDeps(config=config, store=store)


def _init_graph_deps(deps: CLIDeps) -> GraphDeps:
    """Build the Graph provider and the services that need it."""
    from mailpilot.auth.msal_auth import GraphAuth
    from mailpilot.core.errors import AuthenticationError
    from mailpilot.engine.staging import StagingPipeline
    from mailpilot.engine.undo import UndoService
    from mailpilot.graph.client import GraphClient
    from mailpilot.graph.folders import HoldingFolderCache
    from mailpilot.graph.messages import GraphMailProvider

    try:
        auth = GraphAuth.from_config(deps.config.auth)
    except AuthenticationError as e:
        console.print(
            f"[red]Authentication error:[/red] {e}\n\n"
            "Check your Azure AD app registration and try again."
        )
        sys.exit(1)

    provider = GraphMailProvider(GraphClient(auth))
    holding = HoldingFolderCache(provider, deps.config.staging.holding_folder_name)
    return GraphDeps(
        provider=provider,
        staging=StagingPipeline(deps.store, provider, holding, deps.config),
        undo=UndoService(deps.store, provider, deps.config),
    )


def _run(coro_fn: Callable[..., Awaitable[None]]) -> Callable[..., None]:
    """Run an async command body, mapping domain errors to exit codes."""

    @wraps(coro_fn)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            asyncio.run(coro_fn(*args, **kwargs))
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelled.[/yellow]")
            sys.exit(130)
        except (SystemExit, click.ClickException):
            raise
        except EntityNotFoundError as e:
            console.print(f"[red]Not found:[/red] {e}")
            sys.exit(2)
        except StateConflictError as e:
            console.print(f"[red]Conflict:[/red] {e}")
            sys.exit(3)
        except ActionValidationError as e:
            console.print(f"[red]Invalid action:[/red] {e}")
            sys.exit(4)
        except Exception as e:
            console.print(f"\n[red]Error:[/red] {e}")
            sys.exit(1)

    return wrapper


def _fmt_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


user_option = click.option("--user", "user_id", required=True, help="Owning user ID")
mailbox_option = click.option("--mailbox", "mailbox_id", default=None, help="Mailbox ID filter")
page_options = [
    click.option("--page", default=1, type=int, show_default=True),
    click.option("--limit", default=20, type=int, show_default=True),
]


def with_paging(func: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(page_options):
        func = option(func)
    return func


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """MailPilot - learn mailbox habits and automate them safely."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for the CLI, JSON for the service
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Mailboxes
# ---------------------------------------------------------------------------


@cli.group("mailboxes")
def mailboxes() -> None:
    """Manage the mailbox registry."""


@mailboxes.command("add")
@click.argument("email")
@user_option
@click.option("--name", "display_name", default=None, help="Display name")
@_run
async def mailboxes_add(email: str, user_id: str, display_name: str | None) -> None:
    """Register (or reconnect) a mailbox by email address."""
    from mailpilot.db.store import Mailbox, new_id, utcnow

    deps = await _init_cli_deps()
    existing = await deps.store.list_mailboxes(user_id, connected_only=False)
    match = next((m for m in existing if m.email.lower() == email.lower()), None)
    mailbox = Mailbox(
        id=match.id if match else new_id(),
        user_id=user_id,
        email=email.lower(),
        display_name=display_name or (match.display_name if match else None),
        is_connected=True,
        created_at=match.created_at if match else utcnow(),
    )
    await deps.store.save_mailbox(mailbox)
    console.print(f"[green]✓[/green] Mailbox {mailbox.email} registered as [cyan]{mailbox.id}[/cyan]")


@mailboxes.command("list")
@click.option("--user", "user_id", default=None, help="Only this user's mailboxes")
@_run
async def mailboxes_list(user_id: str | None) -> None:
    """List connected mailboxes."""
    deps = await _init_cli_deps()
    table = Table(title="Mailboxes")
    table.add_column("ID")
    table.add_column("User")
    table.add_column("Email")
    table.add_column("Name")
    for mailbox in await deps.store.list_mailboxes(user_id):
        table.add_row(mailbox.id, mailbox.user_id, mailbox.email, mailbox.display_name or "")
    console.print(table)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@cli.command("analyze")
@click.option("--user", "user_id", default=None, help="Analyze one user (default: everyone)")
@mailbox_option
@_run
async def analyze(user_id: str | None, mailbox_id: str | None) -> None:
    """Run pattern analysis on demand."""
    from mailpilot.classifier.pattern_engine import PatternEngine

    deps = await _init_cli_deps()
    engine = PatternEngine(deps.store, deps.config)

    if mailbox_id:
        if not user_id:
            raise click.UsageError("--mailbox requires --user")
        result = await engine.analyze_mailbox(user_id, mailbox_id)
        console.print(
            f"[bold]Mailbox {mailbox_id}[/bold]: "
            f"sender={result.sender_patterns} routing={result.folder_routing_patterns} "
            f"created={result.created} updated={result.updated} "
            f"cooldown={result.skipped_cooldown} approved={result.skipped_approved}"
        )
        return

    run = await (engine.analyze_user(user_id) if user_id else engine.analyze_all())
    console.print(f"\n[bold]Analysis Summary[/bold] (run {run.run_id[:8]}...)")
    console.print(f"  Duration:          {run.duration_ms}ms")
    console.print(f"  Mailboxes:         {run.mailboxes_analyzed}")
    console.print(f"  Failed:            {run.mailboxes_failed}")
    console.print(f"  Sender patterns:   {run.sender_patterns}")
    console.print(f"  Routing patterns:  {run.folder_routing_patterns}")
    for failed_id in run.failed_mailbox_ids:
        console.print(f"  [red]✗[/red] {failed_id}")


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


@cli.group("patterns")
def patterns() -> None:
    """Review detected patterns."""


@patterns.command("list")
@user_option
@mailbox_option
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(["detected", "suggested", "approved", "rejected", "expired"]),
    help="Filter by status (repeatable)",
)
@with_paging
@_run
async def patterns_list(
    user_id: str, mailbox_id: str | None, statuses: tuple[str, ...], page: int, limit: int
) -> None:
    """List patterns, highest confidence first."""
    from mailpilot.classifier.pattern_review import PatternReviewService
    from mailpilot.db.store import PatternStatus

    deps = await _init_cli_deps()
    review = PatternReviewService(deps.store, deps.config)
    items, total = await review.list_patterns(
        user_id,
        mailbox_id=mailbox_id,
        statuses=[PatternStatus(s) for s in statuses] or None,
        page=page,
        limit=limit,
    )

    table = Table(title=f"Patterns ({total} total)")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Sender")
    table.add_column("Action")
    table.add_column("Confidence", justify="right")
    table.add_column("Samples", justify="right")
    for p in items:
        action = p.suggested_action.action_type
        if p.suggested_action.to_folder:
            action += f" -> {short_id(p.suggested_action.to_folder, 12)}"
        table.add_row(
            p.id,
            str(p.pattern_type),
            str(p.status),
            p.condition.sender_email or p.condition.sender_domain or "",
            action,
            str(p.confidence),
            str(p.sample_size),
        )
    console.print(table)


@patterns.command("approve")
@click.argument("pattern_id")
@user_option
@click.option("--convert/--no-convert", default=True, help="Create a rule right away")
@_run
async def patterns_approve(pattern_id: str, user_id: str, convert: bool) -> None:
    """Approve a pattern as suggested."""
    from mailpilot.classifier.pattern_review import PatternReviewService
    from mailpilot.classifier.rule_converter import RuleConverter

    deps = await _init_cli_deps()
    pattern = await PatternReviewService(deps.store, deps.config).approve(pattern_id, user_id)
    console.print(f"[green]✓[/green] Pattern {pattern.id} approved")
    if convert:
        rule = await RuleConverter(deps.store).convert_pattern_to_rule(pattern.id, user_id)
        console.print(f"[green]✓[/green] Rule [cyan]{rule.name}[/cyan] ({rule.id})")


@patterns.command("reject")
@click.argument("pattern_id")
@user_option
@_run
async def patterns_reject(pattern_id: str, user_id: str) -> None:
    """Reject a pattern and suppress it for the cooldown period."""
    from mailpilot.classifier.pattern_review import PatternReviewService

    deps = await _init_cli_deps()
    pattern = await PatternReviewService(deps.store, deps.config).reject(pattern_id, user_id)
    console.print(
        f"[green]✓[/green] Pattern {pattern.id} rejected "
        f"(suppressed until {_fmt_time(pattern.rejection_cooldown_until)})"
    )


@patterns.command("customize")
@click.argument("pattern_id")
@user_option
@click.option(
    "--action",
    "action_type",
    required=True,
    type=click.Choice(["delete", "move", "archive", "markRead", "flag", "categorize"]),
)
@click.option("--to-folder", default=None, help="Destination folder ID for move")
@click.option("--category", default=None, help="Category name for categorize")
@_run
async def patterns_customize(
    pattern_id: str,
    user_id: str,
    action_type: str,
    to_folder: str | None,
    category: str | None,
) -> None:
    """Replace a pattern's action and approve it."""
    from mailpilot.classifier.pattern_review import PatternReviewService

    deps = await _init_cli_deps()
    pattern = await PatternReviewService(deps.store, deps.config).customize(
        pattern_id, user_id, action_type, to_folder=to_folder, category=category
    )
    console.print(
        f"[green]✓[/green] Pattern {pattern.id} approved with action "
        f"[cyan]{pattern.suggested_action.action_type}[/cyan]"
    )


@patterns.command("convert")
@click.argument("pattern_id")
@user_option
@_run
async def patterns_convert(pattern_id: str, user_id: str) -> None:
    """Create the rule for an approved pattern."""
    from mailpilot.classifier.rule_converter import RuleConverter

    deps = await _init_cli_deps()
    rule = await RuleConverter(deps.store).convert_pattern_to_rule(pattern_id, user_id)
    console.print(f"[green]✓[/green] Rule [cyan]{rule.name}[/cyan] ({rule.id})")


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


def _print_sweep(title: str, result: SweepResult) -> None:
    console.print(f"\n[bold]{title}[/bold] (run {result.run_id[:8]}...)")
    console.print(f"  Duration:      {result.duration_ms}ms")
    console.print(f"  Selected:      {result.selected}")
    console.print(f"  Executed:      {result.executed}")
    console.print(f"  Expired:       {result.expired}")
    console.print(f"  Rate limited:  {result.rate_limited}")
    console.print(f"  Failed:        {result.failed}")


@cli.command("sweep")
@_run
async def sweep() -> None:
    """Execute staged actions whose grace period has ended."""
    deps = await _init_cli_deps()
    graph = _init_graph_deps(deps)
    _print_sweep("Sweep Summary", await graph.staging.sweep())


@cli.group("staged")
def staged() -> None:
    """Inspect, rescue or execute staged actions."""


@staged.command("list")
@user_option
@mailbox_option
@click.option(
    "--status",
    default="staged",
    type=click.Choice(["staged", "rescued", "executed", "expired"]),
    show_default=True,
)
@with_paging
@_run
async def staged_list(
    user_id: str, mailbox_id: str | None, status: str, page: int, limit: int
) -> None:
    """List staged actions, soonest expiry first."""
    from mailpilot.db.store import StagedStatus

    deps = await _init_cli_deps()
    items, total = await deps.store.list_staged_actions(
        user_id, mailbox_id=mailbox_id, status=StagedStatus(status), page=page, limit=limit
    )

    table = Table(title=f"Staged actions ({total} total)")
    table.add_column("ID")
    table.add_column("Message")
    table.add_column("Actions")
    table.add_column("Staged")
    table.add_column("Expires")
    for s in items:
        table.add_row(
            s.id,
            short_id(s.message_id),
            ", ".join(a.action_type for a in s.actions),
            _fmt_time(s.staged_at),
            _fmt_time(s.expires_at),
        )
    console.print(table)


@staged.command("rescue")
@click.argument("staged_ids", nargs=-1, required=True)
@user_option
@_run
async def staged_rescue(staged_ids: tuple[str, ...], user_id: str) -> None:
    """Rescue one or more staged actions."""
    deps = await _init_cli_deps()
    graph = _init_graph_deps(deps)

    if len(staged_ids) == 1:
        result = await graph.staging.rescue(staged_ids[0], user_id)
        if result.changed:
            console.print(f"[green]✓[/green] Rescued {result.staged.id}")
        else:
            console.print(f"[yellow]Already rescued:[/yellow] {result.staged.id}")
        return

    rescued = await graph.staging.batch_rescue(list(staged_ids), user_id)
    console.print(f"[green]✓[/green] Rescued {len(rescued)} of {len(staged_ids)}")


@staged.command("execute")
@click.argument("staged_ids", nargs=-1, required=True)
@user_option
@_run
async def staged_execute(staged_ids: tuple[str, ...], user_id: str) -> None:
    """Execute staged actions now, without waiting for expiry."""
    deps = await _init_cli_deps()
    graph = _init_graph_deps(deps)

    if len(staged_ids) == 1:
        record, outcome = await graph.staging.execute_now(staged_ids[0], user_id)
        console.print(f"{record.id}: [cyan]{outcome}[/cyan] (status {record.status})")
        return

    _print_sweep("Batch Execute Summary", await graph.staging.batch_execute(list(staged_ids), user_id))


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@cli.group("audit")
def audit() -> None:
    """Browse the audit log and undo automated actions."""


@audit.command("list")
@user_option
@mailbox_option
@click.option("--action", default=None, help="Filter by audit action")
@with_paging
@_run
async def audit_list(
    user_id: str, mailbox_id: str | None, action: str | None, page: int, limit: int
) -> None:
    """List audit entries, newest first."""
    deps = await _init_cli_deps()
    items, total = await deps.store.list_audit_entries(
        user_id, mailbox_id=mailbox_id, action=action, page=page, limit=limit
    )

    table = Table(title=f"Audit log ({total} total)")
    table.add_column("ID")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Undo")
    for entry in items:
        if entry.undone_at:
            undo_state = f"undone {_fmt_time(entry.undone_at)}"
        else:
            undo_state = "yes" if entry.undoable else ""
        table.add_row(
            entry.id,
            _fmt_time(entry.created_at),
            entry.action,
            short_id(entry.target_id),
            undo_state,
        )
    console.print(table)


@audit.command("undo")
@click.argument("entry_id")
@user_option
@_run
async def audit_undo(entry_id: str, user_id: str) -> None:
    """Undo an automated action."""
    deps = await _init_cli_deps()
    graph = _init_graph_deps(deps)
    result = await graph.undo.undo(entry_id, user_id)
    console.print(f"[green]✓[/green] Undone {entry_id}: [cyan]{result.outcome}[/cyan]")
    if result.reason:
        console.print(f"  [yellow]{result.reason}[/yellow]")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@cli.command("serve")
def serve() -> None:
    """Run scheduled analysis and staging sweeps until interrupted."""
    try:
        asyncio.run(_run_service())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_service() -> None:
    """Run analysis and sweep jobs with APScheduler."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from mailpilot.classifier.pattern_engine import PatternEngine
    from mailpilot.config import get_config, reload_config_if_changed

    deps = await _init_cli_deps()
    configure_logging(
        log_level=deps.config.logging.level, json_output=deps.config.logging.json_output
    )
    graph = _init_graph_deps(deps)
    engine = PatternEngine(deps.store, deps.config)

    def refresh_config() -> None:
        if reload_config_if_changed():
            config = get_config()
            engine.update_config(config)
            graph.staging.update_config(config)
            graph.undo.update_config(config)

    async def run_analysis() -> None:
        refresh_config()
        result = await engine.analyze_all()
        console.print(
            f"[dim]Analysis {result.run_id[:8]}...[/dim] "
            f"mailboxes={result.mailboxes_analyzed} failed={result.mailboxes_failed} "
            f"({result.duration_ms}ms)"
        )

    async def run_sweep() -> None:
        refresh_config()
        result = await graph.staging.sweep()
        console.print(
            f"[dim]Sweep {result.run_id[:8]}...[/dim] "
            f"executed={result.executed} expired={result.expired} "
            f"failed={result.failed + result.rate_limited} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_analysis,
        "interval",
        hours=deps.config.analysis.interval_hours,
        id="pattern_analysis",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_sweep,
        "interval",
        minutes=deps.config.staging.sweep_interval_minutes,
        id="staging_sweep",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(
        f"MailPilot running: analysis every {deps.config.analysis.interval_hours}h, "
        f"sweep every {deps.config.staging.sweep_interval_minutes} minutes. "
        "Press Ctrl+C to stop."
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)
    await graph.staging.drain_notifications()


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
