from __future__ import annotations

import signal
import uuid
from pathlib import Path
from typing import Any

import anyio
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config_store import (
    FLEET_CONFIG_DIR,
    get_config_path,
    write_raw_toml,
)
from .events import FleetEvent, FleetEventKind
from .llm import GroqProvider
from .logging import get_logger, setup_logging
from .media import GroqTranscriber, build_uploader
from .model import BotInstance, BotStatus
from .registry import BotRegistry, BotServices
from .settings import ConfigError, FleetSettings, find_fleet_root, load_settings
from .store import FleetStore
from .transport_registry import (
    check_transport_setup,
    get_default_transport,
    list_transports,
    session_factory,
)
from .triage import TriageService

logger = get_logger(__name__)
console = Console()


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def _load_fleet_settings() -> FleetSettings:
    """Load settings for the fleet around cwd, exiting with a message on failure."""
    try:
        return load_settings(find_fleet_root())
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)


def _render_event(event: FleetEvent) -> None:
    bot = event.bot
    if event.kind is FleetEventKind.UPDATED and bot["status"] == BotStatus.WAITING_FOR_SCAN.value:
        console.print(f"[bold]{bot['name']}[/bold] ({bot['id']}) is waiting for a QR scan:")
        console.print(bot["qr_code"] or "")
    elif event.kind is FleetEventKind.UPDATED and bot["status"] == BotStatus.CONNECTED.value:
        console.print(f"[green]✓[/green] {bot['name']} connected as {bot['phone_number']}")


async def _run_fleet(settings: FleetSettings) -> None:
    llm = GroqProvider(settings.llm)
    transcriber = GroqTranscriber(settings.llm, settings.transcription)
    services = BotServices(
        llm=llm,
        triage=TriageService(),
        transcriber=transcriber if transcriber.available else None,
        uploader=build_uploader(settings.storage, settings.data_dir),
    )
    registry = BotRegistry(
        settings=settings,
        session_factory=session_factory(settings),
        services=services,
        store=FleetStore(settings.data_dir),
    )
    registry.events.subscribe(_render_event)
    if not llm.available:
        logger.warning("llm.unconfigured", hint="set LEXINTAKE__LLM__API_KEY")

    try:
        async with anyio.create_task_group() as tg:
            await tg.start(registry.run)
            status = registry.status()
            logger.info("fleet.started", name=settings.name, bots=status.total)
            if status.total == 0:
                typer.echo("No bots configured. Add one with 'lexintake bots add NAME'.")
            with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
                async for signum in signals:
                    logger.info("shutdown.signal", signal=signum)
                    break
            await registry.shutdown()
    finally:
        await llm.aclose()
        await transcriber.aclose()


def _run(*, debug: bool) -> None:
    setup_logging(debug=debug)
    settings = _load_fleet_settings()

    result = check_transport_setup(settings.transport.backend, settings)
    if not result.ready:
        typer.echo(f"error: transport '{settings.transport.backend}': {result.message}", err=True)
        raise typer.Exit(code=1)

    logger.info("transport.starting", transport=settings.transport.backend, fleet=settings.name)
    try:
        anyio.run(_run_fleet, settings)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception("fleet.failed", error=str(e))
        typer.echo(f"error: fleet failed: {e}", err=True)
        raise typer.Exit(code=1)


app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    help="Fleet of WhatsApp legal intake assistants.",
)
bots_app = typer.Typer(help="Manage the fleet's bots.")
app.add_typer(bots_app, name="bots")


@app.callback()
def app_main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log transport events, LLM calls and state transitions.",
    ),
) -> None:
    """LexIntake CLI - run and manage a fleet of intake bots."""
    if ctx.invoked_subcommand is None:
        _run(debug=debug)
        raise typer.Exit()


@app.command("run", help="Run every configured bot until interrupted.")
def run_command(
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable debug logging."),
) -> None:
    _run(debug=debug)


@app.command("init", help="Initialize a fleet in current dir or [FOLDER].")
def init_command(
    folder: str = typer.Argument(
        None,
        help="Folder to create the fleet in (defaults to current directory)",
    ),
    name: str = typer.Option(None, "--name", "-n", help="Fleet name (defaults to folder name)"),
    transport: str = typer.Option(
        get_default_transport(), "--transport", "-t", help="Transport backend id"
    ),
    bridge_url: str = typer.Option(
        "http://127.0.0.1:3000", "--bridge-url", help="WhatsApp bridge base URL"
    ),
) -> None:
    root = Path(folder).resolve() if folder else Path.cwd()
    config_path = get_config_path(root)
    if config_path.exists():
        typer.echo(f"error: fleet already exists at {root}", err=True)
        raise typer.Exit(code=1)
    if transport not in list_transports():
        typer.echo(
            f"error: unknown transport '{transport}' "
            f"(available: {', '.join(list_transports())})",
            err=True,
        )
        raise typer.Exit(code=1)

    data: dict[str, Any] = {
        "name": name or root.name,
        "transport": {"backend": transport},
    }
    if transport == "bridge":
        data["transport"]["bridge_url"] = bridge_url
    write_raw_toml(data, config_path)

    typer.echo(f"✓ Initialized fleet '{data['name']}' in {root / FLEET_CONFIG_DIR}")
    typer.echo(f"✓ Config saved to {config_path}")
    typer.echo("")
    typer.echo("Next steps:")
    typer.echo("  export LEXINTAKE__LLM__API_KEY=...")
    typer.echo("  lexintake bots add 'Escritório Silva'")
    typer.echo("  lexintake")


@app.command("transports", help="List transport backends and their setup status.")
def transports_command() -> None:
    settings = _load_fleet_settings()
    for transport_id in list_transports():
        result = check_transport_setup(transport_id, settings)
        marker = "✓" if result.ready else "✗"
        current = " (configured)" if transport_id == settings.transport.backend else ""
        typer.echo(f"  {marker} {transport_id}{current}: {result.message}")


@bots_app.command("list", help="List configured bots.")
def bots_list_command(
    owner: str = typer.Option(None, "--owner", help="Only bots owned by this id"),
) -> None:
    settings = _load_fleet_settings()
    bots = FleetStore(settings.data_dir).load_bots()
    if owner is not None:
        bots = [b for b in bots if b.owner_id == owner]
    if not bots:
        typer.echo("No bots configured.")
        return

    table = Table(title=f"Bots in {settings.name}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Assistant")
    table.add_column("Status")
    table.add_column("Phone")
    table.add_column("Messages", justify="right")
    for bot in bots:
        status = bot.status.value + (" (manual)" if bot.manual_stop else "")
        table.add_row(
            bot.id,
            bot.name,
            bot.assistant_name,
            status,
            bot.phone_number or "-",
            str(bot.message_count),
        )
    console.print(table)


@bots_app.command("add", help="Add a bot; it connects on the next run.")
def bots_add_command(
    name: str = typer.Argument(..., help="Display name of the bot"),
    assistant: str = typer.Option(None, "--assistant", "-a", help="Persona name"),
    owner: str = typer.Option(None, "--owner", help="Owning user id"),
) -> None:
    settings = _load_fleet_settings()
    store = FleetStore(settings.data_dir)
    bot = BotInstance(
        id=uuid.uuid4().hex[:12],
        name=name,
        assistant_name=assistant or settings.default_assistant_name,
        owner_id=owner,
    )
    store.upsert_bot(bot)
    typer.echo(f"✓ Added bot '{bot.name}' ({bot.id})")


@bots_app.command("remove", help="Remove a bot and its stored conversations.")
def bots_remove_command(
    bot_id: str = typer.Argument(..., help="Bot id"),
) -> None:
    settings = _load_fleet_settings()
    if not FleetStore(settings.data_dir).remove_bot(bot_id):
        typer.echo(f"error: no bot with id {bot_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✓ Removed bot {bot_id}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
