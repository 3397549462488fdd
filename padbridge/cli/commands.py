"""CLI commands for padbridge."""

import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from padbridge import __logo__, __version__

app = typer.Typer(
    name="padbridge",
    help=f"{__logo__} padbridge - WeChatPadPro bridge connector",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} padbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """padbridge - WeChatPadPro bridge connector."""
    pass


def _load():
    from padbridge.config.loader import load_config
    from padbridge.settings import get_settings

    return load_config(get_settings().config_path)


def _allow_store():
    from padbridge.pairing.store import JsonAllowStore, default_allow_store_path
    from padbridge.utils.helpers import get_data_path

    return JsonAllowStore(default_allow_store_path(get_data_path()))


def _mark(ok: bool) -> str:
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


# ============================================================================
# Serve (FastAPI HTTP + account monitors)
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind host (default: PADBRIDGE_HOST)"),
    port: int = typer.Option(None, "--port", "-p", help="Bind port (default: PADBRIDGE_PORT)"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Start the webhook server and monitor every enabled account."""
    import uvicorn

    from padbridge.agent.responder import create_responder
    from padbridge.api.app import create_app
    from padbridge.channels.accounts import collect_warnings, list_enabled_accounts
    from padbridge.channels.monitor import MonitorManager
    from padbridge.settings import get_settings
    from padbridge.utils.helpers import setup_logging

    settings = get_settings()
    setup_logging("DEBUG" if verbose or settings.debug else settings.log_level)

    config = _load()
    for account in list_enabled_accounts(config):
        for warning in collect_warnings(account, config):
            console.print(f"[yellow]{escape(warning)}[/yellow]")

    manager = MonitorManager(
        load_config=_load,
        responder=create_responder(config.responder),
        allow_store=_allow_store(),
        webhook_base_fallback=settings.gateway_url,
    )
    bind_host = host or settings.host
    bind_port = port or settings.port

    console.print(f"{__logo__} Starting padbridge on {bind_host}:{bind_port} ...")

    async def run() -> None:
        uvi_config = uvicorn.Config(
            create_app(manager),
            host=bind_host,
            port=bind_port,
            log_level="warning",
        )
        server = uvicorn.Server(uvi_config)
        await server.serve()

    asyncio.run(run())


# ============================================================================
# Accounts / Status
# ============================================================================


@app.command()
def accounts():
    """List configured WeChatPadPro accounts (credentials redacted)."""
    from padbridge.channels.accounts import collect_warnings, describe_account, list_account_ids, resolve_account

    config = _load()

    table = Table(title="WeChatPadPro Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Server URL", style="yellow")
    table.add_column("Authcode", style="yellow")
    table.add_column("Wxid", style="yellow")

    warnings: list[str] = []
    for account_id in list_account_ids(config):
        account = resolve_account(config, account_id)
        info = describe_account(account)
        table.add_row(
            account.account_id,
            account.name or "",
            "✓" if account.enabled else "✗",
            escape(info["server_url"]),
            escape(info["authcode"]),
            escape(info["wxid"]),
        )
        warnings.extend(collect_warnings(account, config))

    console.print(table)
    for warning in warnings:
        console.print(f"[yellow]{escape(warning)}[/yellow]")


@app.command()
def status():
    """Show padbridge configuration status."""
    from padbridge.channels.accounts import list_enabled_accounts, resolve_account
    from padbridge.channels.monitor import resolve_webhook_base_url, webhook_path
    from padbridge.channels.status import build_account_snapshot
    from padbridge.config.loader import get_config_path
    from padbridge.settings import get_settings

    settings = get_settings()
    config_path = settings.config_path or get_config_path()
    config = _load()

    console.print(f"{__logo__} padbridge Status\n")
    console.print(f"Config: {config_path} {_mark(config_path.exists())}")
    console.print(f"State dir: {settings.state_dir} {_mark(settings.state_dir.exists())}")
    console.print(f"Responder: {config.responder.kind}" + (f" ({config.responder.model})" if config.responder.model else ""))

    enabled = list_enabled_accounts(config)
    if not enabled:
        console.print("[dim]No enabled accounts.[/dim]")
        return

    default = resolve_account(config)
    base = resolve_webhook_base_url(config, settings.gateway_url)
    for account in enabled:
        snapshot = build_account_snapshot(account)
        marker = " [dim](default)[/dim]" if account.account_id == default.account_id else ""
        console.print(f"\n[cyan]{account.account_id}[/cyan]{marker} configured {_mark(snapshot['configured'])}")
        if account.authcode:
            console.print(f"  webhook: {base}{webhook_path('<authcode>')}")


# ============================================================================
# Send
# ============================================================================


@app.command()
def send(
    to: str = typer.Argument(..., help="Target wxid (wechatpadpro:<id>, wxp:<id> or bare id)"),
    text: str = typer.Argument(..., help="Message text"),
    account: str = typer.Option(None, "--account", "-a", help="Account id"),
    no_suffix: bool = typer.Option(False, "--no-suffix", help="Do not append the AI suffix"),
):
    """Send one text message through the gateway."""
    from padbridge.channels.accounts import resolve_account
    from padbridge.channels.client import GatewayClient
    from padbridge.channels.errors import BridgeError

    resolved = resolve_account(_load(), account)

    async def run():
        async with GatewayClient(resolved) as client:
            return await client.send_text(to, text, append_ai_suffix=not no_suffix)

    try:
        result = asyncio.run(run())
    except (BridgeError, ValueError) as exc:
        console.print(f"[red]Send failed:[/red] {exc}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Sent {result.message_id or '(no id)'}")


# ============================================================================
# Pairing
# ============================================================================


pair_app = typer.Typer(help="Manage the pairing allow-store")
app.add_typer(pair_app, name="pair")


@pair_app.command("approve")
def pair_approve(sender: str = typer.Argument(..., help="Sender wxid to approve")):
    """Allow a sender to message the bot (dmPolicy=pairing)."""
    from padbridge.bus.events import CHANNEL_ID

    added = asyncio.run(_allow_store().approve(CHANNEL_ID, sender))
    console.print(f"[green]✓[/green] Approved {sender}" if added else f"[dim]{sender} already approved[/dim]")


@pair_app.command("revoke")
def pair_revoke(sender: str = typer.Argument(..., help="Sender wxid to revoke")):
    """Remove a previously approved sender."""
    from padbridge.bus.events import CHANNEL_ID

    removed = asyncio.run(_allow_store().revoke(CHANNEL_ID, sender))
    console.print(f"[green]✓[/green] Revoked {sender}" if removed else f"[dim]{sender} was not approved[/dim]")


@pair_app.command("list")
def pair_list():
    """List approved senders."""
    from padbridge.bus.events import CHANNEL_ID

    entries = asyncio.run(_allow_store().read_allow_from(CHANNEL_ID))
    if not entries:
        console.print("[dim]No approved senders.[/dim]")
        return
    table = Table(title="Approved senders")
    table.add_column("Sender", style="cyan")
    for entry in entries:
        table.add_row(entry)
    console.print(table)


if __name__ == "__main__":
    app()
