"""CLI commands for dingbot."""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from dingbot import __logo__, __version__

app = typer.Typer(
    name="dingbot",
    help=f"{__logo__} dingbot - DingTalk Stream-mode channel adapter",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} dingbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """dingbot - DingTalk Stream-mode channel adapter."""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Initialize dingbot configuration."""
    from dingbot.config.loader import get_config_path, load_config, save_config
    from dingbot.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        console.print("  [bold]y[/bold] = overwrite with defaults (existing values will be lost)")
        console.print("  [bold]N[/bold] = refresh config, keeping existing values and adding new fields")
        if typer.confirm("Overwrite?"):
            save_config(Config())
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            save_config(load_config())
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        save_config(Config())
        console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} dingbot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add clientId / clientSecret under [cyan]channels.dingtalk[/cyan]")
    console.print("  2. Check credentials: [cyan]dingbot probe[/cyan]")
    console.print("  3. Run: [cyan]dingbot gateway[/cyan]")


# ============================================================================
# Gateway / Server
# ============================================================================


def _make_channel(config):
    from dingbot.channels.dingtalk import DingTalkChannel
    from dingbot.runtime.local import LocalRuntime

    return DingTalkChannel(config, LocalRuntime(store_dir=config.session_store_path))


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start the DingTalk gateway for every enabled account."""
    from dingbot.config.loader import load_config

    _configure_logging(verbose)
    config = load_config()
    account_ids = config.list_account_ids()
    if not account_ids:
        console.print("[red]Error: No DingTalk account configured[/red]")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting dingbot gateway...")
    console.print(f"[green]✓[/green] Accounts: {', '.join(account_ids)}")

    channel = _make_channel(config)

    async def run():
        try:
            await channel.run()
        except KeyboardInterrupt:
            console.print("\nShutting down...")
        finally:
            await channel.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Status / Probe / Send
# ============================================================================


@app.command()
def status():
    """Show configured DingTalk accounts."""
    from dingbot.config.loader import get_config_path, get_data_dir, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} dingbot Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Data: {get_data_dir()}")

    table = Table(title="DingTalk Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Mode", style="magenta")
    table.add_column("Configuration", style="yellow")

    for account_id in config.list_account_ids():
        account = config.resolve_account(account_id)
        cfg = account.config
        detail = f"client_id: {cfg.client_id[:10]}..." if cfg.client_id else "[dim]not configured[/dim]"
        table.add_row(
            cfg.name or account_id,
            "✓" if account.enabled else "✗",
            cfg.message_type,
            detail,
        )

    console.print(table)


@app.command()
def probe(
    account: str = typer.Option(None, "--account", "-a", help="Account id"),
):
    """Validate DingTalk credentials by fetching an access token."""
    from dingbot.config.loader import load_config

    channel = _make_channel(load_config())

    async def run():
        try:
            return await channel.probe(account)
        finally:
            await channel.stop()

    result = asyncio.run(run())
    if result.ok:
        console.print(f"[green]✓[/green] Credentials OK ({result.details.get('clientId')})")
    else:
        console.print(f"[red]✗ {result.error}[/red]")
        raise typer.Exit(1)


@app.command()
def send(
    target: str = typer.Argument(..., help="User id, or cid... conversation id (group:/user: prefixes allowed)"),
    text: str = typer.Argument("", help="Message text"),
    media: Path = typer.Option(None, "--media", "-m", help="Send a file instead of text"),
    account: str = typer.Option(None, "--account", "-a", help="Account id"),
):
    """Send a proactive message."""
    from dingbot.config.loader import load_config

    if not text and media is None:
        console.print("[red]Error: provide TEXT or --media[/red]")
        raise typer.Exit(1)

    channel = _make_channel(load_config())

    async def run():
        try:
            if media is not None:
                return await channel.send_media(target, str(media), account)
            return await channel.send_text(target, text, account)
        finally:
            await channel.stop()

    result = asyncio.run(run())
    if result.ok:
        suffix = f" ({result.message_id})" if result.message_id else ""
        console.print(f"[green]✓[/green] Sent to {target}{suffix}")
    else:
        console.print(f"[red]✗ Send failed: {result.error}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
