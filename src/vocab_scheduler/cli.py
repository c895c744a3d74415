"""
Command Line Interface for the Vocabulary Delivery Scheduler

Provides CLI commands for setup, scheduling, dispatch and administration.
"""

from __future__ import annotations

import getpass
import json
import os
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich import print as rich_print
from rich.console import Console
from rich.table import Table

from .channel.service import create_channel
from .channel.webhooks import apply_status_updates, parse_status_payload
from .database.models import OutboxStatus, Subscriber, Category
from .database.operations import (
    DatabaseError,
    count_words,
    import_words,
    load_delivery_settings,
    upsert_subscriber,
)
from .database.outbox import get_messages_by_status, get_outbox_counts
from .main import DEFAULT_CONFIG_FILE, VocabSchedulerApplication
from .scheduler.delivery_settings import DeliverySettingsResolver, SchedulingError
from .scheduler.scheduler import error_payload
from .security.credentials import (
    PROVIDERS,
    AppConfig,
    ChannelCredentials,
    CredentialError,
    CredentialManager,
)
from .utils.validation_utils import normalize_phone_number


# Initialize CLI app
app = typer.Typer(
    name="vocab-scheduler",
    help="Vocabulary Delivery Scheduler - daily word-of-the-day messages over SMS and WhatsApp",
    add_completion=False,
    rich_markup_mode="rich"
)
words_app = typer.Typer(help="Manage the vocabulary catalog")
settings_app = typer.Typer(help="Manage per-user delivery settings")
subscribers_app = typer.Typer(help="Manage subscribers for batch scheduling")
app.add_typer(words_app, name="words")
app.add_typer(settings_app, name="settings")
app.add_typer(subscribers_app, name="subscribers")

# Initialize console for rich output
console = Console()

# Global state for configuration
config_file: Path = DEFAULT_CONFIG_FILE
database_override: Optional[Path] = None
master_password: Optional[str] = None


def get_master_password(prompt: str = "Enter master password: ") -> str:
    """Read the master password from ``MASTER_PASSWORD`` or prompt for it."""
    global master_password

    if not master_password:
        master_password = os.environ.get("MASTER_PASSWORD") or getpass.getpass(prompt)

    if not master_password.strip():
        rich_print("[red]Master password is required[/red]")
        raise typer.Exit(1)
    return master_password


def get_application(require_config: bool = False) -> VocabSchedulerApplication:
    """Build and initialize the application for a command.

    With ``--db`` the database commands run without the encrypted
    configuration; dispatch always needs it.
    """
    if require_config and not config_file.exists():
        rich_print("[red]Configuration not found. Please run 'vocab-scheduler setup' first.[/red]")
        raise typer.Exit(1)

    password: Optional[str] = None
    if config_file.exists() and (require_config or database_override is None):
        password = get_master_password()

    application = VocabSchedulerApplication(config_file, database_override, console_logging=False)
    try:
        application.initialize(password)
    except CredentialError as e:
        rich_print(f"[red]Failed to access configuration: {e}[/red]")
        raise typer.Exit(1)
    except DatabaseError as e:
        rich_print(f"[red]Database error: {e}[/red]")
        raise typer.Exit(1)
    return application


def parse_date_option(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        rich_print(f"[red]Invalid date '{value}', expected YYYY-MM-DD[/red]")
        raise typer.Exit(1)


@app.callback()
def main_callback(
    config: Path = typer.Option(DEFAULT_CONFIG_FILE, "--config", "-c", help="Encrypted configuration file"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file (overrides the configuration)")
) -> None:
    """Vocabulary Delivery Scheduler."""
    global config_file, database_override, master_password
    config_file = config
    database_override = db
    master_password = None


@app.command()
def setup(
    force: bool = typer.Option(False, "--force", "-f", help="Reconfigure existing setup"),
    provider: str = typer.Option("twilio", "--provider", help="Messaging provider: twilio or whatsapp"),
    account_sid: Optional[str] = typer.Option(None, "--account-sid", help="Twilio account SID"),
    auth_token: Optional[str] = typer.Option(None, "--auth-token", help="Twilio auth token"),
    from_number: Optional[str] = typer.Option(None, "--from-number", help="Twilio sender number"),
    phone_number_id: Optional[str] = typer.Option(None, "--phone-number-id", help="WhatsApp phone number id"),
    access_token: Optional[str] = typer.Option(None, "--access-token", help="WhatsApp access token"),
    timezone: Optional[str] = typer.Option(
        None, "--timezone", help="Default timezone for send times [default: Asia/Kolkata]"
    ),
    database_path: Optional[str] = typer.Option(
        None, "--database-path", help="SQLite database file [default: vocab_scheduler.db]"
    ),
    verify: bool = typer.Option(False, "--verify", help="Test the provider connection before saving")
) -> None:
    """Store provider credentials and application settings in the encrypted configuration.

    With --force on an existing configuration the provider credentials are
    replaced and the other settings are kept unless given again.
    """
    rich_print("[bold blue]Vocabulary Delivery Scheduler Setup[/bold blue]")

    reconfigure: bool = config_file.exists()
    if reconfigure and not force:
        rich_print(f"[yellow]Configuration already exists at {config_file}[/yellow]")
        rich_print("[yellow]Use --force to reconfigure.[/yellow]")
        return

    if provider not in PROVIDERS:
        rich_print(f"[red]Provider must be one of {', '.join(PROVIDERS)}[/red]")
        raise typer.Exit(1)

    manager: Optional[CredentialManager] = None
    current_config: Optional[AppConfig] = None
    password: Optional[str] = None
    if reconfigure:
        manager = CredentialManager(config_file, get_master_password("Enter current master password: "))
        if not manager.verify_master_password():
            rich_print("[red]Wrong master password; existing configuration left unchanged.[/red]")
            raise typer.Exit(1)
        _, current_config = manager.load_credentials()
    else:
        password = os.environ.get("MASTER_PASSWORD")
        if not password:
            password = getpass.getpass("Create a master password for encrypting your credentials: ")
            if password != getpass.getpass("Confirm master password: "):
                rich_print("[red]Passwords don't match. Setup cancelled.[/red]")
                raise typer.Exit(1)

    if provider == "twilio":
        account_sid = account_sid or typer.prompt("Twilio account SID")
        auth_token = auth_token or typer.prompt("Twilio auth token", hide_input=True)
        from_number = from_number or typer.prompt("Twilio sender number")
    else:
        phone_number_id = phone_number_id or typer.prompt("WhatsApp phone number id")
        access_token = access_token or typer.prompt("WhatsApp access token", hide_input=True)

    try:
        channel_credentials = ChannelCredentials(
            provider=provider,
            account_sid=account_sid or "",
            auth_token=auth_token or "",
            from_number=from_number or "",
            phone_number_id=phone_number_id or "",
            access_token=access_token or ""
        )
        base_config: AppConfig = current_config or AppConfig()
        app_config = replace(
            base_config,
            database_path=database_path or base_config.database_path,
            timezone=timezone or base_config.timezone
        )
    except ValueError as e:
        rich_print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    if verify:
        rich_print("\n[yellow]Testing provider credentials...[/yellow]")
        if create_channel(channel_credentials).test_connection():
            rich_print("[green]Provider credentials verified successfully![/green]")
        else:
            rich_print("[red]Provider credentials test failed. Setup cancelled.[/red]")
            raise typer.Exit(1)

    try:
        if manager is not None:
            manager.update_channel_credentials(channel_credentials)
            if app_config != current_config:
                manager.update_app_config(app_config)
        else:
            CredentialManager.setup_wizard(config_file, str(password), channel_credentials, app_config)
    except (CredentialError, ValueError) as e:
        rich_print(f"[red]Setup failed: {e}[/red]")
        raise typer.Exit(1)

    rich_print(f"\n[green]Setup completed successfully! Configuration saved to {config_file}[/green]")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Delete without asking for confirmation")
) -> None:
    """Securely delete the encrypted configuration."""
    if not config_file.exists():
        rich_print(f"[yellow]No configuration found at {config_file}[/yellow]")
        return

    manager = CredentialManager(config_file, get_master_password())
    if not manager.verify_master_password():
        rich_print("[red]Wrong master password; configuration left in place.[/red]")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete {config_file}? Credentials cannot be recovered"):
        rich_print("[yellow]Reset cancelled.[/yellow]")
        return

    try:
        manager.delete_config()
    except CredentialError as e:
        rich_print(f"[red]Reset failed: {e}[/red]")
        raise typer.Exit(1)
    rich_print(f"[green]Configuration {config_file} deleted.[/green]")



@app.command("schedule-today")
def schedule_today(
    user_id: str = typer.Option(..., "--user-id", help="User to schedule"),
    phone: str = typer.Option(..., "--phone", help="Destination phone number"),
    category: str = typer.Option(..., "--category", help="Word category"),
    on_date: Optional[str] = typer.Option(None, "--date", help="Local day to schedule (YYYY-MM-DD)")
) -> None:
    """Create today's messages for one user and print the schedule as JSON."""
    today: Optional[date] = parse_date_option(on_date)
    application = get_application()

    try:
        result = application.create_scheduler().schedule_today(user_id, phone, category, today=today)
    except (SchedulingError, DatabaseError, ValueError) as e:
        typer.echo(json.dumps(error_payload(e)))
        raise typer.Exit(1)

    typer.echo(json.dumps(result.to_payload()))


@app.command("schedule-all")
def schedule_all(
    on_date: Optional[str] = typer.Option(None, "--date", help="Day to schedule (YYYY-MM-DD)")
) -> None:
    """Schedule the day's messages for every active subscriber."""
    today: Optional[date] = parse_date_option(on_date)
    application = get_application()

    try:
        result = application.run_scheduling(today)
    except DatabaseError as e:
        rich_print(f"[red]Scheduling failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Scheduling for {result.schedule_date.isoformat()}", show_header=True, header_style="bold magenta")
    table.add_column("Outcome", style="cyan")
    table.add_column("Users", style="green")
    table.add_row("Scheduled", str(len(result.scheduled)))
    table.add_row("Messages created", str(result.total_messages))
    table.add_row("Already scheduled", str(len(result.already_scheduled)))
    table.add_row("Not configured", str(len(result.not_configured)))
    table.add_row("No words left", str(len(result.no_words)))
    table.add_row("Failed", str(len(result.failed)))
    console.print(table)

    for user_id, error in result.failed.items():
        rich_print(f"[red]{user_id}: {error}[/red]")


@app.command()
def dispatch() -> None:
    """Send every pending message whose time has come."""
    application = get_application(require_config=True)

    try:
        result = application.run_dispatch()
    except CredentialError as e:
        rich_print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except DatabaseError as e:
        rich_print(f"[red]Dispatch failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Dispatch Sweep", show_header=True, header_style="bold magenta")
    table.add_column("Outcome", style="cyan")
    table.add_column("Messages", style="green")
    table.add_row("Processed", str(result.processed))
    table.add_row("Sent", str(result.sent))
    table.add_row("Failed", str(result.failed))
    table.add_row("Expired", str(result.expired))
    table.add_row("Skipped", str(result.skipped))
    table.add_row("Sent, not recorded", str(result.unrecorded))
    console.print(table)


@app.command("record-status")
def record_status(
    payload: Path = typer.Option(..., "--payload", help="JSON file with a provider status callback")
) -> None:
    """Attach provider delivery status callbacks to sent messages."""
    try:
        data: Any = json.loads(payload.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        rich_print(f"[red]Cannot read payload {payload}: {e}[/red]")
        raise typer.Exit(1)

    if not isinstance(data, dict):
        rich_print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(1)

    application = get_application()
    try:
        counts: Dict[str, int] = apply_status_updates(parse_status_payload(data), application.database_path)
    except DatabaseError as e:
        rich_print(f"[red]Failed to record status: {e}[/red]")
        raise typer.Exit(1)

    rich_print(f"[green]Recorded {counts['matched']} status updates[/green] ({counts['unmatched']} unmatched)")


@words_app.command("import")
def words_import(
    source: Path = typer.Argument(..., help="CSV or JSON file of words")
) -> None:
    """Import words into the catalog, skipping duplicates."""
    application = get_application()

    try:
        imported, skipped = import_words(source, application.database_path)
    except (DatabaseError, ValueError, OSError) as e:
        rich_print(f"[red]Import failed: {e}[/red]")
        raise typer.Exit(1)

    rich_print(f"[green]Imported {imported} words[/green] ({skipped} skipped)")


@words_app.command("count")
def words_count(
    category: Optional[str] = typer.Option(None, "--category", help="Only count this category")
) -> None:
    """Show how many words the catalog holds."""
    application = get_application()

    try:
        parsed: Optional[Category] = Category.parse(category) if category else None
        total: int = count_words(parsed, application.database_path)
    except (DatabaseError, ValueError) as e:
        rich_print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    rich_print(f"[cyan]{total}[/cyan] words{f' in {parsed.value}' if parsed else ''}")


@settings_app.command("set")
def settings_set(
    user_id: str = typer.Option(..., "--user-id", help="User to configure"),
    words_per_day: int = typer.Option(..., "--words-per-day", help="Words to send per day (1-10)"),
    mode: str = typer.Option("auto", "--mode", help="auto or custom"),
    times: Optional[str] = typer.Option(None, "--times", help="Comma separated HH:MM times for custom mode"),
    timezone: Optional[str] = typer.Option(None, "--timezone", help="IANA timezone for this user")
) -> None:
    """Save a user's delivery settings."""
    application = get_application()
    custom_times: List[str] = [value.strip() for value in times.split(",") if value.strip()] if times else []

    resolver = DeliverySettingsResolver(application.database_path)
    try:
        saved = resolver.save(user_id, words_per_day, mode, custom_times, timezone)
    except (ValueError, DatabaseError) as e:
        rich_print(f"[red]Invalid settings: {e}[/red]")
        raise typer.Exit(1)

    rich_print(f"[green]Saved settings for {saved.user_id}[/green]")


@settings_app.command("show")
def settings_show(
    user_id: str = typer.Option(..., "--user-id", help="User to show")
) -> None:
    """Show a user's delivery settings and today's send times."""
    application = get_application()
    settings = load_delivery_settings(user_id, application.database_path)
    if settings is None:
        rich_print(f"[yellow]No delivery settings for {user_id}[/yellow]")
        raise typer.Exit(1)

    config = application.scheduler_config
    resolver = DeliverySettingsResolver(
        application.database_path,
        config.auto_window_start_hour,
        config.auto_window_end_hour,
        config.duplicate_policy,
        config.stagger_minutes
    )

    table = Table(title=f"Delivery Settings: {user_id}", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Words per day", str(settings.words_per_day))
    table.add_row("Mode", settings.mode.value)
    table.add_row("Timezone", settings.timezone or f"{config.timezone} (default)")
    table.add_row("Send times", ", ".join(resolver.schedule_times(settings)))
    console.print(table)


@subscribers_app.command("add")
def subscribers_add(
    user_id: str = typer.Option(..., "--user-id", help="Subscriber id"),
    phone: str = typer.Option(..., "--phone", help="Destination phone number"),
    category: str = typer.Option(..., "--category", help="Word category"),
    first_name: str = typer.Option("", "--first-name", help="First name for greetings"),
    inactive: bool = typer.Option(False, "--inactive", help="Exclude from batch scheduling")
) -> None:
    """Add or update a subscriber."""
    application = get_application()

    try:
        subscriber = Subscriber(
            user_id=user_id,
            phone=normalize_phone_number(phone),
            category=Category.parse(category),
            first_name=first_name,
            active=not inactive
        )
        upsert_subscriber(subscriber, application.database_path)
    except (ValueError, DatabaseError) as e:
        rich_print(f"[red]Cannot save subscriber: {e}[/red]")
        raise typer.Exit(1)

    rich_print(f"[green]Subscriber {user_id} saved[/green]")


@app.command()
def outbox(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent failures to show")
) -> None:
    """Show outbox counts and recent failures."""
    application = get_application()

    try:
        counts: Dict[str, int] = get_outbox_counts(application.database_path)
        failures = get_messages_by_status(OutboxStatus.FAILED, limit, application.database_path)
    except DatabaseError as e:
        rich_print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Outbox", show_header=True, header_style="bold magenta")
    table.add_column("Status", style="cyan")
    table.add_column("Messages", style="green")
    for status in OutboxStatus:
        table.add_row(status.value, str(counts.get(status.value, 0)))
    console.print(table)

    if failures:
        failure_table = Table(title="Recent Failures", show_header=True, header_style="bold red")
        failure_table.add_column("ID", style="cyan")
        failure_table.add_column("User")
        failure_table.add_column("Send At")
        failure_table.add_column("Error", style="red")
        for message in failures:
            failure_table.add_row(
                str(message.id),
                message.user_id,
                message.send_at.isoformat(),
                message.error or ""
            )
        console.print(failure_table)


@app.command()
def health(
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON")
) -> None:
    """Check system resources and outbox backlog."""
    application = get_application()
    report: Dict[str, Any] = application.get_health_status()

    if as_json:
        typer.echo(json.dumps(report, indent=2))
    else:
        status = "[green]HEALTHY[/green]" if report.get('is_healthy') else "[red]UNHEALTHY[/red]"
        rich_print(f"Status: {status}")
        for warning in report.get('warnings', []):
            rich_print(f"[yellow]Warning: {warning}[/yellow]")
        for error in report.get('errors', []):
            rich_print(f"[red]Error: {error}[/red]")
        if report.get('error'):
            rich_print(f"[red]Error: {report['error']}[/red]")

    if not report.get('is_healthy'):
        raise typer.Exit(1)


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
