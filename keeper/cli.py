"""
CLI entrypoint for the perpetual keeper.

Provides commands for run, status, init-db and assess.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from keeper.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from keeper.exceptions import ConfigurationError, KeeperError
from keeper.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="perp-keeper",
    help="Perpetual Keeper: position indexer, liquidator and funding updater",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Path, log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the keeper: indexer, liquidator and funding updater.

    Exits 0 on SIGINT/SIGTERM, 1 on startup failure or event-stream loss.

    Example:
        python run.py run
    """
    config = _load(config_path, log_file)

    from keeper.main import run_keeper

    exit_code = asyncio.run(run_keeper(config))
    raise typer.Exit(exit_code)


@app.command()
def status(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    limit: int = typer.Option(10, "--limit", help="Rows of history to show"),
):
    """
    Display the position store's state.

    Shows position counts, the indexer checkpoint, and recent liquidation
    attempts and funding updates.

    Example:
        python run.py status
    """
    config = _load(config_path)

    from keeper.storage.db import init_db
    from keeper.storage.repository import PositionStore

    try:
        db = init_db(config.storage.database_url)
    except KeeperError as e:
        typer.secho(f"Database unavailable: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    try:
        store = PositionStore(db)
        counts = store.count_positions()
        checkpoint = store.get_checkpoint()
        attempts = store.get_liquidation_attempts(limit=limit)
        updates = store.get_funding_updates(limit=limit)
    finally:
        db.close()

    typer.echo("Keeper Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment:   {config.environment}")
    typer.echo(f"Chain ID:      {config.chain.chain_id}")
    typer.echo(f"Indexer mode:  {config.indexer.start_block}")
    if checkpoint.is_set:
        typer.echo(f"Checkpoint:    block {checkpoint.last_processed_block} ({checkpoint.last_update_time:%Y-%m-%d %H:%M:%S} UTC)")
    else:
        typer.echo("Checkpoint:    not set")
    typer.echo(f"Positions:     {counts['active']} active, {counts['inactive']} inactive")

    typer.secho(f"\nRecent liquidation attempts ({len(attempts)})", bold=True)
    for a in attempts:
        color = typer.colors.GREEN if a.success else typer.colors.RED
        detail = a.tx_hash if a.success else (a.error or "")[:80]
        typer.secho(f"  {a.timestamp:%Y-%m-%d %H:%M:%S}  #{a.token_id}  {detail}", fg=color)

    typer.secho(f"\nRecent funding updates ({len(updates)})", bold=True)
    for u in updates:
        rate = f"{u.funding_rate_pct}%" if u.funding_rate is not None else "n/a"
        typer.echo(f"  {u.timestamp:%Y-%m-%d %H:%M:%S}  block {u.block_number}  rate {rate}  {u.tx_hash}")


@app.command("init-db")
def init_db_command(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Create the keeper's tables if they do not exist.

    Example:
        python run.py init-db
    """
    config = _load(config_path)

    from keeper.storage.db import init_db

    try:
        db = init_db(config.storage.database_url)
    except KeeperError as e:
        typer.secho(f"Database initialization failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    db.close()
    typer.secho("Database tables ready", fg=typer.colors.GREEN)


@app.command()
def assess(
    token_id: int = typer.Argument(..., help="Position token id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Evaluate one stored position against the current on-chain price and funding.

    Read-only: never submits a transaction.

    Example:
        python run.py assess 42
    """
    config = _load(config_path)

    from keeper.chain.client import Web3ChainClient
    from keeper.runtime.lifecycle import Lifecycle
    from keeper.services.liquidator import Liquidator
    from keeper.storage.db import init_db
    from keeper.storage.repository import PositionStore

    async def run_assess():
        db = init_db(config.storage.database_url)
        try:
            chain = await Web3ChainClient.connect(config)
            try:
                liquidator = Liquidator(chain, PositionStore(db), config.liquidator, Lifecycle())
                return await liquidator.assess(token_id)
            finally:
                await chain.close()
        finally:
            db.close()

    try:
        position, assessment = asyncio.run(run_assess())
    except KeeperError as e:
        typer.secho(f"Assessment failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(f"Position #{position.token_id} ({position.side.upper()} {position.leverage}x, owner {position.owner})")
    typer.echo(f"  Active:             {position.is_active}")
    for key, value in assessment.as_log_fields().items():
        typer.echo(f"  {key:<19} {value}")
    if assessment.liquidatable:
        typer.secho("  LIQUIDATABLE", fg=typer.colors.RED, bold=True)
    else:
        typer.secho("  Healthy", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
