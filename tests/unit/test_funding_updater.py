"""
FundingUpdater tests: cooldown, gas deferral, single retry, audit records.
"""
import asyncio

import pytest

from keeper.config.config import FundingConfig
from keeper.exceptions import RpcError, TransactionFailedError
from keeper.services.funding_updater import FundingUpdater
from keeper.services.gas import gwei_to_wei


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _updater(chain, store, lifecycle, clock=None, gas_ceiling_gwei=50.0, **config):
    return FundingUpdater(
        chain,
        store,
        FundingConfig(**config),
        lifecycle,
        gas_ceiling_gwei=gas_ceiling_gwei,
        clock=clock or FakeClock(),
    )


async def _wait_for_retry(updater):
    if updater._retry_task is not None:
        await asyncio.wait_for(updater._retry_task, 2)


@pytest.mark.asyncio
async def test_success_records_update_with_rate(chain, store, lifecycle):
    chain.funding_rate = -250
    receipt = await _updater(chain, store, lifecycle).update_funding_rate()

    assert receipt is not None
    assert len(chain.funding_calls) == 1
    (record,) = store.get_funding_updates()
    assert record.tx_hash == receipt.tx_hash
    assert record.block_number == receipt.block_number
    assert record.funding_rate == -250


@pytest.mark.asyncio
async def test_two_calls_within_cooldown_submit_once(chain, store, lifecycle):
    clock = FakeClock()
    updater = _updater(chain, store, lifecycle, clock=clock, cooldown_seconds=60)

    await updater.update_funding_rate()
    clock.now += 59
    assert await updater.update_funding_rate() is None

    assert len(chain.funding_calls) == 1


@pytest.mark.asyncio
async def test_call_after_cooldown_submits_again(chain, store, lifecycle):
    clock = FakeClock()
    updater = _updater(chain, store, lifecycle, clock=clock, cooldown_seconds=60)

    await updater.update_funding_rate()
    clock.now += 60
    await updater.update_funding_rate()

    assert len(chain.funding_calls) == 2
    assert len(store.get_funding_updates()) == 2


@pytest.mark.asyncio
async def test_readback_failure_still_records(chain, store, lifecycle):
    chain.funding_rate_error = RpcError("getCurrentFundingRate failed")

    receipt = await _updater(chain, store, lifecycle).update_funding_rate()

    assert receipt is not None
    (record,) = store.get_funding_updates()
    assert record.funding_rate is None


@pytest.mark.asyncio
async def test_gas_above_ceiling_defers_and_retries_once(chain, store, lifecycle):
    chain.gas_price = gwei_to_wei(80)
    updater = _updater(chain, store, lifecycle, cooldown_seconds=0, retry_delay_seconds=0)

    assert await updater.update_funding_rate() is None
    assert updater.retry_pending

    chain.gas_price = gwei_to_wei(20)
    await _wait_for_retry(updater)

    assert chain.funding_calls == [gwei_to_wei(20)]
    assert len(store.get_funding_updates()) == 1


@pytest.mark.asyncio
async def test_retry_never_chains(chain, store, lifecycle):
    chain.funding_error = TransactionFailedError("updateFundingRate() reverted on-chain")
    updater = _updater(chain, store, lifecycle, cooldown_seconds=0, retry_delay_seconds=0)

    await updater.update_funding_rate()
    await _wait_for_retry(updater)
    await asyncio.sleep(0.05)

    assert len(chain.funding_calls) == 2
    assert not updater.retry_pending
    assert store.get_funding_updates() == []


@pytest.mark.asyncio
async def test_only_one_retry_pending_at_a_time(chain, store, lifecycle):
    chain.funding_error = RpcError("nonce too low")
    updater = _updater(chain, store, lifecycle, cooldown_seconds=0, retry_delay_seconds=300)

    await updater.update_funding_rate()
    first = updater._retry_task
    await updater.update_funding_rate()

    assert updater._retry_task is first
    await updater.settle_pending_retry()


@pytest.mark.asyncio
async def test_pending_retry_is_cancelled(chain, store, lifecycle):
    chain.funding_error = RpcError("timeout")
    updater = _updater(chain, store, lifecycle, retry_delay_seconds=300)

    await updater.update_funding_rate()
    assert updater.retry_pending

    await updater.settle_pending_retry()

    assert not updater.retry_pending
    assert len(chain.funding_calls) == 1


@pytest.mark.asyncio
async def test_run_updates_at_startup_and_cancels_retry_on_stop(chain, store, lifecycle):
    chain.funding_error = RpcError("timeout")
    updater = _updater(chain, store, lifecycle, interval_seconds=3600, retry_delay_seconds=300)

    task = asyncio.create_task(updater.run())
    await asyncio.sleep(0.05)
    assert len(chain.funding_calls) == 1
    assert updater.retry_pending

    lifecycle.request_stop("test")
    await asyncio.wait_for(task, 1)

    assert not updater.retry_pending
    assert len(chain.funding_calls) == 1


@pytest.mark.asyncio
async def test_stop_lets_a_submitting_retry_finish(chain, store, lifecycle):
    chain.funding_error = RpcError("timeout")
    updater = _updater(chain, store, lifecycle, interval_seconds=3600, cooldown_seconds=0, retry_delay_seconds=0)
    submitting = asyncio.Event()
    mined = asyncio.Event()
    send = chain.update_funding_rate

    async def slow_update(*, gas_price):
        if not chain.funding_calls:
            return await send(gas_price=gas_price)
        submitting.set()
        await mined.wait()
        chain.funding_error = None
        return await send(gas_price=gas_price)

    chain.update_funding_rate = slow_update
    task = asyncio.create_task(updater.run())
    await asyncio.wait_for(submitting.wait(), 1)

    lifecycle.request_stop("test")
    asyncio.get_running_loop().call_later(0.1, mined.set)
    await asyncio.wait_for(task, 2)

    assert len(chain.funding_calls) == 2
    (record,) = store.get_funding_updates()
    assert record.funding_rate == chain.funding_rate
