"""
CLI entrypoint for the perp indexer.

Provides commands for the reconciliation daemon, the price updater, the
HTTP read API, and a status view of the materialized ledger.
"""
import asyncio
import typer
from typing import Optional
from pathlib import Path

from perp_indexer.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from perp_indexer.monitoring.logger import setup_logging, get_logger
from perp_indexer.storage.db import init_db
from perp_indexer.storage.repository import SqlLedgerStore

app = typer.Typer(
    name="perp-indexer",
    help="Perp DEX event indexer and price updater",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Path) -> Config:
    config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def build_supervisor(config: Config, store: SqlLedgerStore):
    """Wire chain client, dispatcher, scheduler and supervisor from config."""
    from perp_indexer.chain.client import Web3ChainClient
    from perp_indexer.indexer.dispatcher import EventDispatcher
    from perp_indexer.indexer.scheduler import WindowScheduler
    from perp_indexer.indexer.supervisor import ReconciliationSupervisor

    client = Web3ChainClient.from_config(config.chain)
    dispatcher = EventDispatcher(store, failure_policy=config.indexer.handler_failure_policy)
    scheduler = WindowScheduler.from_config(config.indexer, client, dispatcher, store)
    return ReconciliationSupervisor.from_config(config.indexer, client, scheduler, store)


@app.command()
def index(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    max_cycles: Optional[int] = typer.Option(None, "--max-cycles", help="Stop after N loop iterations (default: run forever)"),
):
    """
    Run the reconciliation daemon.

    Example:
        python run.py index --config perp_indexer/config/config.yaml
    """
    config = _load(config_path)
    try:
        config.validate_indexer()
    except ValueError as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    db = init_db(config.storage.database_url)
    store = SqlLedgerStore(db)
    supervisor = build_supervisor(config, store)

    logger.info(
        "Starting indexer",
        environment=config.environment,
        chunk_size=config.indexer.chunk_size,
        failure_policy=config.indexer.handler_failure_policy,
        persist_checkpoint=config.indexer.persist_checkpoint,
    )
    try:
        stats = asyncio.run(supervisor.run(max_cycles=max_cycles))
    except KeyboardInterrupt:
        logger.info("Indexer stopped by user")
        return
    typer.echo(f"Stopped after {stats.cycles} cycles, checkpoint={stats.checkpoint}")


@app.command()
def oracle(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Run the price-feed updater.

    Example:
        ORACLE_PRIVATE_KEY=0x... python run.py oracle
    """
    config = _load(config_path)
    try:
        config.validate_oracle()
    except ValueError as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    from perp_indexer.oracle.updater import PriceUpdater

    updater = PriceUpdater.from_config(config.oracle)
    try:
        asyncio.run(updater.run_forever())
    except KeyboardInterrupt:
        logger.info("Price updater stopped by user")


@app.command()
def api(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: api.host)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default: api.port)"),
):
    """
    Serve the read API over the ledger store.

    Example:
        python run.py api --port 8000
    """
    import uvicorn
    from perp_indexer.api.server import create_app

    config = _load(config_path)
    store = SqlLedgerStore(init_db(config.storage.database_url))
    bind_host = host or config.api.host
    bind_port = port or config.api.port

    logger.info("Starting read API", host=bind_host, port=bind_port)
    uvicorn.run(
        create_app(store, cors_origins=config.api.cors_origins),
        host=bind_host,
        port=bind_port,
        log_level=config.monitoring.log_level.lower(),
        access_log=False,
    )


@app.command()
def status(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    position_id: Optional[str] = typer.Option(None, "--position-id", help="Look up one position (0x-hex id)"),
):
    """
    Display ledger status.

    Shows:
    - Entity counts
    - Persisted checkpoint (when checkpointing is enabled)
    - One position, if --position-id is given

    Example:
        python run.py status --position-id 0xabc...
    """
    config = _load(config_path)
    store = SqlLedgerStore(init_db(config.storage.database_url))

    typer.echo("Indexer Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment: {config.environment}")

    counts = store.count_entities()
    typer.echo(f"Open positions:       {counts['open_positions']}")
    typer.echo(f"Historical positions: {counts['historical_positions']}")
    typer.echo(f"Unspent notes:        {counts['unspent_notes']}")

    checkpoint = store.load_checkpoint(config.indexer.checkpoint_name)
    if checkpoint is not None:
        typer.echo(f"Checkpoint ({config.indexer.checkpoint_name}): next block {checkpoint}")
    else:
        typer.echo("Checkpoint: not persisted")

    if position_id:
        lookup = store.get_position(position_id)
        typer.echo("-" * 50)
        if lookup is None:
            typer.secho(f"Position {position_id} not found", fg=typer.colors.YELLOW)
        elif lookup.open is not None:
            pos = lookup.open
            typer.secho(f"Position {pos.position_id} (Open)", bold=True)
            typer.echo(f"  Owner:  {lookup.owner_id}")
            typer.echo(f"  Side:   {'LONG' if pos.is_long else 'SHORT'}")
            typer.echo(f"  Entry:  {pos.entry_price}")
            typer.echo(f"  Margin: {pos.margin}")
            typer.echo(f"  Size:   {pos.size}")
        else:
            hist = lookup.historical
            color = typer.colors.RED if hist.status.value == "Liquidated" else typer.colors.GREEN
            typer.secho(f"Position {hist.position_id} ({hist.status.value})", bold=True, fg=color)
            typer.echo(f"  Owner:   {lookup.owner_id}")
            typer.echo(f"  Side:    {'LONG' if hist.is_long else 'SHORT'}")
            typer.echo(f"  Entry:   {hist.entry_price}")
            typer.echo(f"  Size:    {hist.size}")
            typer.echo(f"  Outcome: {hist.outcome}")
            typer.echo(f"  Closed by: {hist.closing_user}")

    typer.echo("=" * 50)


if __name__ == "__main__":
    app()
