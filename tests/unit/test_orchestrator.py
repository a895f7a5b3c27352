"""
Orchestrator tests: startup failure, clean shutdown, fatal stream loss.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from keeper.config.config import Config
from keeper.exceptions import ConfigurationError, EventStreamLostError, RpcError
from keeper.main import run_keeper
from keeper.runtime.lifecycle import EXIT_FAILURE, EXIT_OK, Lifecycle
from tests.fakes import opened_event


def _config(database_url: str) -> Config:
    return Config(
        storage={"database_url": database_url},
        liquidator={"interval_seconds": 0.05},
        funding={"interval_seconds": 3600, "retry_delay_seconds": 300},
        system={"shutdown_timeout_seconds": 2},
    )


@pytest.mark.asyncio
async def test_clean_shutdown_exits_zero(chain, db):
    lifecycle = Lifecycle()
    asyncio.get_running_loop().call_later(0.2, lifecycle.request_stop, "test")

    code = await asyncio.wait_for(
        run_keeper(_config(db.database_url), chain=chain, db=db, lifecycle=lifecycle, install_signal_handlers=False),
        5,
    )

    assert code == EXIT_OK
    assert chain.closed
    # Funding update runs at startup
    assert len(chain.funding_calls) == 1


@pytest.mark.asyncio
async def test_event_stream_loss_exits_one(chain, db):
    chain.supports_live_events = True
    chain.live.put_nowait(opened_event(1, chain.head + 1))
    chain.live.put_nowait(EventStreamLostError("websocket closed"))

    code = await asyncio.wait_for(
        run_keeper(_config(db.database_url), chain=chain, db=db, install_signal_handlers=False),
        5,
    )

    assert code == EXIT_FAILURE
    assert chain.closed


@pytest.mark.asyncio
async def test_indexer_finishing_without_live_stream_keeps_running(chain, db):
    lifecycle = Lifecycle()
    asyncio.get_running_loop().call_later(0.2, lifecycle.request_stop, "test")

    code = await asyncio.wait_for(
        run_keeper(_config(db.database_url), chain=chain, db=db, lifecycle=lifecycle, install_signal_handlers=False),
        5,
    )

    assert code == EXIT_OK
    assert lifecycle.stop_reason == "test"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [RpcError("connection refused"), ConfigurationError("wrong chain")])
async def test_chain_startup_failure_exits_one(db, error):
    with patch("keeper.main._connect_chain", AsyncMock(side_effect=error)):
        code = await run_keeper(_config(db.database_url), db=db, install_signal_handlers=False)

    assert code == EXIT_FAILURE


@pytest.mark.asyncio
async def test_storage_startup_failure_exits_one(chain, tmp_path):
    missing_dir = tmp_path / "missing" / "keeper.db"
    code = await run_keeper(_config(f"sqlite:///{missing_dir}"), chain=chain, install_signal_handlers=False)

    assert code == EXIT_FAILURE
    assert chain.closed
