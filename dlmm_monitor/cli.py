"""
CLI entrypoint for the DLMM position monitor.

Provides commands to run the monitor, trigger checks and inspect stored
positions and their history.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from dlmm_monitor.app import MonitorApp
from dlmm_monitor.config.config import Config, load_config
from dlmm_monitor.config.dotenv_loader import load_dotenv_files
from dlmm_monitor.domain.models import PositionStatus
from dlmm_monitor.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="dlmm-monitor",
    help="DLMM liquidity position monitor",
    add_completion=False,
)

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to config file (defaults to the packaged config.yaml)")


def _bootstrap(config_path: Optional[Path], log_to_file: bool = False) -> Config:
    env_files = load_dotenv_files()
    config = load_config(config_path)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        config.monitoring.log_file if log_to_file else None,
    )
    if env_files:
        logger.debug("Loaded dotenv files", files=[str(p) for p in env_files])
    return config


async def _with_app(config: Config, action):
    app_instance = MonitorApp(config)
    try:
        return await action(app_instance)
    finally:
        await app_instance.shutdown()


@app.command()
def run(
    config_path: Optional[Path] = _CONFIG_OPTION,
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between bulk checks"),
):
    """
    Run the monitor until interrupted (SIGINT/SIGTERM).

    Example:
        dlmm-monitor run --interval 30
    """
    config = _bootstrap(config_path, log_to_file=True)
    logger.info("Starting position monitor", environment=config.environment, interval=interval)

    try:
        asyncio.run(MonitorApp(config).run_until_signalled(interval))
    except KeyboardInterrupt:
        logger.info("Position monitor stopped by user")
    except Exception as e:
        logger.critical("Position monitor failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        raise typer.Exit(1)


@app.command()
def check(
    position_id: str = typer.Argument(..., help="Position id"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Reconcile one position now and print the result."""
    config = _bootstrap(config_path)

    async def _check(monitor_app: MonitorApp):
        position = await monitor_app.storage.get_position(position_id)
        if position is None:
            typer.echo(f"Position not found: {position_id}", err=True)
            raise typer.Exit(1)
        return position, await monitor_app.monitor.check_position_status(position)

    try:
        position, status = asyncio.run(_with_app(config, _check))
    except typer.Exit:
        raise
    except Exception as e:
        # Surface the failure text as-is
        typer.echo(str(e), err=True)
        raise typer.Exit(1)

    typer.echo(f"Position:     {position.id} ({position.token_pair.label})")
    typer.echo(f"Active bin:   {status.active_bin}")
    typer.echo(f"Price:        {status.current_price:.4f}")
    typer.echo(f"In range:     {'yes' if status.bin_in_range else 'no'}")
    if status.current_lower_price is not None and status.current_upper_price is not None:
        typer.echo(f"Market range: {status.current_lower_price:.4f} - {status.current_upper_price:.4f}")
    if status.degraded:
        typer.echo(f"Partial data: {status.error}")


@app.command(name="check-all")
def check_all(config_path: Optional[Path] = _CONFIG_OPTION):
    """Run one bulk check of all active positions now."""
    config = _bootstrap(config_path)

    try:
        checked = asyncio.run(_with_app(config, lambda a: a.monitor.check_all_active_positions()))
    except Exception as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)

    typer.echo(f"Checked {checked} active position(s)")


@app.command()
def positions(
    wallet: Optional[str] = typer.Option(None, "--wallet", help="Only positions owned by this wallet"),
    chat_id: Optional[int] = typer.Option(None, "--chat-id", help="Only positions linked to this chat"),
    status: Optional[PositionStatus] = typer.Option(None, "--status", help="Filter by status"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """List stored positions."""
    config = _bootstrap(config_path)

    async def _list(monitor_app: MonitorApp):
        if wallet:
            return await monitor_app.storage.get_positions_by_user(wallet)
        if chat_id is not None:
            return await monitor_app.storage.get_positions_by_chat_id(chat_id)
        return await monitor_app.storage.get_all_positions()

    found = asyncio.run(_with_app(config, _list))
    if status is not None:
        found = [p for p in found if p.status == status]

    if not found:
        typer.echo("No positions found")
        return

    for p in found:
        in_range = "-"
        if p.last_status is not None:
            in_range = "yes" if p.last_status.bin_in_range else "no"
        typer.echo(
            f"{p.id}  {p.token_pair.label:<12} {p.status.value:<8} "
            f"bins {p.lower_bin_id}-{p.upper_bin_id}  in range: {in_range}"
        )


@app.command()
def history(
    position_id: str = typer.Argument(..., help="Position id"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Print a position's history, oldest first."""
    config = _bootstrap(config_path)
    entries = asyncio.run(_with_app(config, lambda a: a.storage.get_position_history(position_id)))

    if not entries:
        typer.echo(f"No history for position {position_id}")
        return

    for entry in entries:
        details = []
        if entry.price_at_event is not None:
            details.append(f"price={entry.price_at_event:.4f}")
        if entry.metadata.active_bin is not None:
            details.append(f"active_bin={entry.metadata.active_bin}")
        if entry.metadata.bin_in_range is not None:
            details.append(f"in_range={entry.metadata.bin_in_range}")
        if entry.metadata.updated_fields:
            details.append(f"fields={','.join(entry.metadata.updated_fields)}")
        if entry.metadata.error:
            details.append(f"error={entry.metadata.error}")
        typer.echo(f"{entry.timestamp.isoformat()}  {entry.event_type:<13} {' '.join(details)}")


@app.command(name="link-wallet")
def link_wallet(
    chat_id: int = typer.Argument(..., help="Chat to notify"),
    wallet: str = typer.Argument(..., help="Wallet address"),
    primary: bool = typer.Option(False, "--primary", help="Make this the chat's primary wallet"),
    config_path: Optional[Path] = _CONFIG_OPTION,
):
    """Route notifications for a wallet's positions to a chat."""
    config = _bootstrap(config_path)
    mapping = asyncio.run(_with_app(config, lambda a: a.wallet_map.add_wallet(chat_id, wallet, primary)))
    typer.echo(f"Chat {chat_id} wallets: {', '.join(mapping.wallet_addresses)} (primary: {mapping.primary_wallet or '-'})")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    DLMM Position Monitor

    Watches liquidity positions and notifies owners when they move in or out of range.
    """
    if version:
        typer.echo("DLMM Position Monitor v1.0.0")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
