"""Command-line interface for the mailpilot email intelligence engine.

Provides commands for configuration validation, scoring, queue draining,
feedback, weekly digests, budget status and VIP management.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot score emails.json
    python -m mailpilot process-queue --user u1
    python -m mailpilot digest u1 --week 2025-01-06
    python -m mailpilot budget u1
    python -m mailpilot maintenance
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click
import yaml
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.table import Table

from mailpilot.config import validate_config_file
from mailpilot.core.logging import configure_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from mailpilot.engine.service import IntelligenceService

console = Console()

T = TypeVar("T")


@asynccontextmanager
async def _service() -> AsyncIterator[IntelligenceService]:
    """Load config, open the database and build the service.

    Prints an actionable error and exits with status 1 on config failure.
    """
    import anthropic

    from mailpilot.config import get_config
    from mailpilot.core.errors import ConfigLoadError, ConfigValidationError
    from mailpilot.db.store import DatabaseStore
    from mailpilot.engine.service import IntelligenceService

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it, "
            "or set MAILPILOT_CONFIG_PATH."
        )
        sys.exit(1)

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # Retries happen in the analyzer so every attempt is logged and costed
    client = anthropic.AsyncAnthropic(max_retries=0)
    try:
        yield IntelligenceService(store, config, client)
    finally:
        await client.close()


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body with the CLI's standard error handling."""
    from mailpilot.core.errors import MailPilotError

    try:
        return asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except MailPilotError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailpilot - email prioritization, AI routing and weekly digests."""
    log_level = "DEBUG" if debug else "INFO"
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
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("score")
@click.argument("source", type=click.File("r"), default="-")
@click.option(
    "--queue-medium",
    is_flag=True,
    help="Queue medium-tier emails instead of analyzing them now",
)
def score(source: Any, queue_medium: bool) -> None:
    """Score inbound emails from a JSON file (one object or a list)."""
    try:
        payload = json.load(source)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON:[/red] {e}")
        sys.exit(1)
    emails = payload if isinstance(payload, list) else [payload]

    async def body() -> None:
        from mailpilot.core.errors import EmailValidationError

        table = Table(title="Scored emails")
        for column in ("Email", "Score", "Tier", "AI"):
            table.add_column(column)

        async with _service() as service:
            for raw in emails:
                try:
                    record = await service.score_email(raw, allow_sync_medium=not queue_medium)
                except EmailValidationError as e:
                    console.print(f"[yellow]Skipped:[/yellow] {e}")
                    continue
                table.add_row(
                    record.email_id,
                    f"{record.final_score:g}",
                    record.processing_tier,
                    record.ai_status,
                )
        console.print(table)

    _run(body)


@cli.command("explain")
@click.argument("email_id")
def explain(email_id: str) -> None:
    """Show the stored score, factor breakdown and matched signals for one email."""

    async def body() -> None:
        async with _service() as service:
            explanation = await service.explain_score(email_id)
        if explanation is None:
            console.print(f"[yellow]No score stored for {email_id}[/yellow]")
            sys.exit(1)
        _print_json(explanation)

    _run(body)


@cli.command("backfill")
@click.argument("user_id")
@click.option("--limit", default=None, type=int, help="Maximum emails to score")
def backfill(user_id: str, limit: int | None) -> None:
    """Score stored emails that have no score yet."""

    async def body() -> None:
        async with _service() as service:
            result = await service.backfill_scores(user_id, limit=limit)
        console.print(
            f"Backfilled [cyan]{result.processed}[/cyan] emails "
            f"in {result.duration_ms}ms: {result.by_status}"
        )
        for error in result.errors:
            console.print(f"  [red]✗[/red] {error}")

    _run(body)


@cli.command("process-queue")
@click.option("--user", "user_id", default=None, help="Only drain this user's queue")
@click.option("--limit", default=None, type=int, help="Maximum emails to process")
def process_queue(user_id: str | None, limit: int | None) -> None:
    """Run AI analysis for queued medium-tier emails."""

    async def body() -> None:
        async with _service() as service:
            result = await service.process_queued(user_id=user_id, limit=limit)
        console.print(
            f"Processed [cyan]{result.processed}[/cyan] queued emails "
            f"in {result.duration_ms}ms: {result.by_status}"
        )
        for error in result.errors:
            console.print(f"  [red]✗[/red] {error}")

    _run(body)


@cli.command("feedback")
@click.argument("user_id")
@click.argument("email_id")
@click.argument("action")
@click.option("--category", default=None, help="Corrected category (category_correction)")
@click.option("--action-id", default=None, help="Idempotency key")
def feedback(
    user_id: str,
    email_id: str,
    action: str,
    category: str | None,
    action_id: str | None,
) -> None:
    """Record a user action (star, reply, archive, delete, ...) on an email."""
    context = {"category": category} if category else None

    async def body() -> None:
        async with _service() as service:
            result = await service.submit_feedback(
                user_id, email_id, action, context=context, action_id=action_id
            )
        if result.duplicate:
            console.print("[yellow]Already recorded (duplicate action id).[/yellow]")
            return
        console.print(
            f"[green]✓[/green] Recorded [cyan]{action}[/cyan]: "
            f"{len(result.pattern_updates)} patterns updated, "
            f"{len(result.vip_promotions)} VIP promotions, "
            f"{len(result.vip_demotions)} VIP demotions"
        )

    _run(body)


@cli.command("digest")
@click.argument("user_id")
@click.option(
    "--week",
    "week",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Any day in the week to summarize (default: this week)",
)
@click.option("--force", is_flag=True, help="Regenerate even if a digest exists")
@click.option("--json", "as_json", is_flag=True, help="Print the raw digest as JSON")
def digest(user_id: str, week: Any, force: bool, as_json: bool) -> None:
    """Build the weekly low-priority digest for a user."""
    week_start: date | None = week.date() if week else None

    async def body() -> None:
        async with _service() as service:
            result = await service.generate_weekly_digest(
                user_id, week_start=week_start, force_regenerate=force
            )
        if result is None:
            console.print("[yellow]Weekly digest is disabled for this user.[/yellow]")
            return
        if as_json:
            _print_json(result.to_dict())
            return

        console.print(
            f"Digest [cyan]#{result.id}[/cyan] for week of {result.week_start}: "
            f"{result.total_low_priority_emails} low-priority emails"
        )
        for title, suggestions in (
            ("Safe to unsubscribe", result.safe_to_unsubscribe),
            ("Needs review", result.needs_review),
        ):
            table = Table(title=title)
            for column in ("Sender", "Category", "Emails", "Confidence"):
                table.add_column(column)
            for s in suggestions:
                table.add_row(
                    s["sender_email"],
                    s["category"],
                    str(s["email_count"]),
                    f"{s['confidence']:.2f}",
                )
            console.print(table)
        for bulk in result.bulk_actions:
            console.print(
                f"Bulk: unsubscribe {bulk['target_type']} [cyan]{bulk['target']}[/cyan] "
                f"({len(bulk['senders'])} senders)"
            )
        for error in result.errors:
            console.print(f"  [red]✗[/red] {error}")

    _run(body)


@cli.command("digest-action")
@click.argument("digest_id", type=int)
@click.argument("action", type=click.Choice(["unsubscribe", "keep"]))
@click.argument("target")
@click.option(
    "--type",
    "target_type",
    type=click.Choice(["sender", "domain", "category"]),
    default="sender",
    help="What TARGET names",
)
def digest_action(digest_id: int, action: str, target: str, target_type: str) -> None:
    """Apply an unsubscribe or keep decision from a weekly digest."""

    async def body() -> None:
        async with _service() as service:
            result = await service.execute_digest_actions(
                digest_id, [{"action": action, "target_type": target_type, "target": target}]
            )
        unsubscribed = ", ".join(result.user_actions["unsubscribed"]) or "-"
        kept = ", ".join(result.user_actions["marked_keep"]) or "-"
        console.print(f"[green]✓[/green] Unsubscribed: {unsubscribed}")
        console.print(f"[green]✓[/green] Kept: {kept}")

    _run(body)


@cli.command("budget")
@click.argument("user_id")
def budget(user_id: str) -> None:
    """Show a user's AI budget status."""

    async def body() -> None:
        async with _service() as service:
            status = await service.get_budget_status(user_id)
        table = Table(title=f"AI budget for {user_id}")
        for column in ("Window", "Used", "Limit", "Used %"):
            table.add_column(column)
        table.add_row(
            "daily",
            f"${status.daily_used_cents / 100:.2f}",
            f"${status.daily_limit_cents / 100:.2f}",
            f"{status.daily_percent}%",
        )
        table.add_row(
            "monthly",
            f"${status.monthly_used_cents / 100:.2f}",
            f"${status.monthly_limit_cents / 100:.2f}",
            f"{status.monthly_percent}%",
        )
        console.print(table)
        if status.is_exhausted:
            console.print("[red]Budget exhausted:[/red] medium-tier AI analysis is paused.")
        elif status.alert_message:
            console.print(f"[yellow]{status.alert_message}[/yellow]")

    _run(body)


@cli.group("vip")
def vip() -> None:
    """Manage VIP senders."""


@vip.command("list")
@click.argument("user_id")
@click.option(
    "--status",
    type=click.Choice(["active", "suggested"]),
    default=None,
    help="Only show VIPs with this status",
)
def vip_list(user_id: str, status: str | None) -> None:
    """List VIP senders, including learned suggestions."""

    async def body() -> None:
        async with _service() as service:
            vips = await service.list_vip_senders(user_id, status=status)  # type: ignore[arg-type]
        table = Table(title=f"VIP senders for {user_id}")
        for column in ("Sender", "Status", "Boost", "Confidence", "Learned", "Used"):
            table.add_column(column)
        for v in vips:
            table.add_row(
                v.sender_email,
                v.status,
                str(v.score_boost),
                f"{v.confidence_score:.2f}",
                "yes" if v.learned else "no",
                str(v.usage_count),
            )
        console.print(table)

    _run(body)


@vip.command("add")
@click.argument("user_id")
@click.argument("sender_email")
@click.option("--name", default=None, help="Display name")
@click.option("--boost", default=30, type=click.IntRange(0, 50), help="Score boost (0-50)")
def vip_add(user_id: str, sender_email: str, name: str | None, boost: int) -> None:
    """Add or update an explicit VIP sender."""

    async def body() -> None:
        async with _service() as service:
            saved = await service.upsert_vip_sender(
                user_id, sender_email, sender_name=name, score_boost=boost
            )
        console.print(
            f"[green]✓[/green] {saved.sender_email} is a VIP (boost {saved.score_boost})"
        )

    _run(body)


@cli.command("prefs")
@click.argument("user_id")
@click.option(
    "--set",
    "assignments",
    multiple=True,
    metavar="KEY=VALUE",
    help="Update a preference (VALUE is parsed as YAML), repeatable",
)
def prefs(user_id: str, assignments: tuple[str, ...]) -> None:
    """Show or update a user's preferences."""
    updates: dict[str, Any] = {}
    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid assignment:[/red] {assignment} (expected KEY=VALUE)")
            sys.exit(1)
        updates[key.strip()] = yaml.safe_load(raw)

    async def body() -> None:
        async with _service() as service:
            if updates:
                current = await service.update_preferences(user_id, updates)
            else:
                current = await service.get_preferences(user_id)
        _print_json(current.model_dump(mode="json"))

    _run(body)


@cli.command("maintenance")
def maintenance() -> None:
    """Reset expired budget windows, prune old LLM logs and checkpoint the database."""

    async def body() -> None:
        async with _service() as service:
            result = await service.run_maintenance()
        console.print(
            f"[green]✓[/green] Budget rows reset: {result['budgets_reset']}, "
            f"LLM log rows pruned: {result['logs_pruned']}"
        )

    _run(body)


def main() -> None:
    """Entry point for the CLI (`mailpilot` script and `python -m mailpilot`).

    Loads .env from the working directory first so ANTHROPIC_API_KEY and
    MAILPILOT_CONFIG_PATH can live there.
    """
    load_dotenv(find_dotenv(usecwd=True))
    cli()


if __name__ == "__main__":
    main()
