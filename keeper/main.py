"""
Keeper orchestrator.

Wires config, storage, the chain client and the three loops into one asyncio
process, then owns shutdown: stop flag first, in-flight calls drain (bounded
by system.shutdown_timeout_seconds), chain client closed, storage closed last.

Exit codes: 0 on a clean stop, 1 on startup failure or a fatal runtime error
such as loss of the live event stream.
"""
import asyncio
import signal
import sys
from typing import Dict, Optional

from keeper.config.config import Config, load_config
from keeper.config.dotenv_loader import load_dotenv_files
from keeper.domain.protocols import ChainClient
from keeper.exceptions import ConfigurationError, KeeperError
from keeper.monitoring.logger import get_logger, setup_logging
from keeper.runtime.lifecycle import EXIT_FAILURE, Lifecycle
from keeper.services.funding_updater import FundingUpdater
from keeper.services.indexer import Indexer
from keeper.services.liquidator import Liquidator
from keeper.storage.db import Database, init_db
from keeper.storage.repository import PositionStore

logger = get_logger("Main")


def _install_signal_handlers(lifecycle: Lifecycle) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lifecycle.request_stop, f"signal {sig.name}")
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or not supported by this platform's loop
            logger.warning("SIGNAL_HANDLER_UNAVAILABLE", signal=sig.name)


async def _connect_chain(config: Config) -> ChainClient:
    from keeper.chain.client import Web3ChainClient

    return await Web3ChainClient.connect(config)


async def run_keeper(
    config: Config,
    *,
    chain: Optional[ChainClient] = None,
    db: Optional[Database] = None,
    lifecycle: Optional[Lifecycle] = None,
    install_signal_handlers: bool = True,
) -> int:
    """
    Run the keeper until stopped.

    chain and db may be injected; otherwise they are built from config.
    Injected resources are still closed at shutdown.

    Returns:
        Process exit code.
    """
    lifecycle = lifecycle or Lifecycle()
    logger.info(
        "KEEPER_STARTING",
        name=config.system.name,
        version=config.system.version,
        environment=config.environment,
        chain_id=config.chain.chain_id,
        indexer_mode=config.indexer.start_block,
    )

    # Startup: any failure here exits 1 before a loop starts
    try:
        if db is None:
            db = await asyncio.to_thread(init_db, config.storage.database_url)
        store = PositionStore(db)
        counts = await asyncio.to_thread(store.count_positions)
        if chain is None:
            chain = await _connect_chain(config)
    except (KeeperError, ValueError) as e:
        # ValueError: malformed private key or address
        logger.critical("STARTUP_FAILED", error=str(e), error_type=type(e).__name__)
        if chain is not None:
            await chain.close()
        if db is not None:
            db.close()
        return EXIT_FAILURE

    logger.info("POSITION_STORE_READY", **counts)

    indexer = Indexer(chain, store, config.indexer, lifecycle)
    liquidator = Liquidator(chain, store, config.liquidator, lifecycle)
    funding_updater = FundingUpdater(
        chain,
        store,
        config.funding,
        lifecycle,
        gas_ceiling_gwei=config.funding_gas_ceiling_gwei,
    )

    if install_signal_handlers:
        _install_signal_handlers(lifecycle)

    tasks: Dict[asyncio.Task, str] = {
        asyncio.create_task(indexer.run(), name="indexer"): "indexer",
        asyncio.create_task(liquidator.run(), name="liquidator"): "liquidator",
        asyncio.create_task(funding_updater.run(), name="funding_updater"): "funding_updater",
    }
    logger.info("KEEPER_RUNNING", services=list(tasks.values()))

    try:
        await _supervise(tasks, lifecycle)
    finally:
        await _shutdown(tasks, lifecycle, config.system.shutdown_timeout_seconds)
        try:
            await chain.close()
        except Exception as e:
            logger.error("CHAIN_CLIENT_CLOSE_FAILED", error=str(e))
        db.close()

    logger.info(
        "KEEPER_STOPPED",
        exit_code=lifecycle.exit_code,
        reason=lifecycle.stop_reason,
    )
    return lifecycle.exit_code


async def _supervise(tasks: Dict[asyncio.Task, str], lifecycle: Lifecycle) -> None:
    """Block until a stop is requested or a service dies."""
    pending = set(tasks)
    stop_waiter = asyncio.create_task(lifecycle.wait_stopped(), name="stop-waiter")
    try:
        while pending and not lifecycle.is_stopping:
            done, _ = await asyncio.wait(pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is stop_waiter:
                    continue
                pending.discard(task)
                name = tasks[task]
                if task.cancelled():
                    lifecycle.fail(asyncio.CancelledError(), f"{name} cancelled")
                elif task.exception() is not None:
                    lifecycle.fail(task.exception(), f"{name} crashed")
                elif not lifecycle.is_stopping:
                    # Indexer without a live stream finishes after backfill
                    logger.info("SERVICE_FINISHED", service=name)
        if not pending:
            lifecycle.request_stop("all services finished")
    finally:
        stop_waiter.cancel()
        await asyncio.gather(stop_waiter, return_exceptions=True)


async def _shutdown(tasks: Dict[asyncio.Task, str], lifecycle: Lifecycle, timeout: float) -> None:
    lifecycle.request_stop("shutdown")
    running = [t for t in tasks if not t.done()]
    if running:
        logger.info("WAITING_FOR_SERVICES", services=[tasks[t] for t in running], timeout_seconds=timeout)
        _, still_running = await asyncio.wait(running, timeout=timeout)
        if still_running:
            logger.warning("SHUTDOWN_TIMEOUT", services=[tasks[t] for t in still_running])
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    for task, name in tasks.items():
        if task.done() and not task.cancelled() and task.exception() is not None:
            if lifecycle.fatal_error is None:
                lifecycle.fail(task.exception(), f"{name} crashed")


def main() -> int:
    """Load config from the environment and run until stopped."""
    load_dotenv_files()
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=config.monitoring.log_file,
    )
    return asyncio.run(run_keeper(config))


if __name__ == "__main__":
    sys.exit(main())
