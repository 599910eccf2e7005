from decimal import Decimal

import pytest

from custody.core.enums import Currency
from custody.core.errors import BroadcastFailed, BroadcastTimeout
from custody.services.chain.observers import BalanceDiffObserver, DbSnapshotStore
from custody.services.pool import PoolCustody
from custody.services.sweeper import Sweeper

from conftest import POOL_ETH

FEE = Decimal("0.00021")  # 21000 gas at 10 gwei


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshots(session_factory):
    return DbSnapshotStore(session_factory)


@pytest.fixture
def sweeper(adapters, keys, clock, snapshots):
    pool = PoolCustody(adapters, keys)
    return Sweeper(
        adapters, keys, pool, min_interval=300, max_backoff=1000, dust=Decimal("0.0005"), clock=clock,
        snapshots=snapshots,
    )


def _address(keys, user_id):
    return keys.derive_address(user_id, Currency.ETH).address


def _credited(adapters, snapshots, address, amount, sequence=1):
    """An address whose on-chain balance has been fully credited."""
    eth = adapters[Currency.ETH]
    eth.balances[address] = Decimal(amount)
    snapshots.save("ETH", address, eth.to_raw(Decimal(amount)), sequence)


class TestSweep:
    def test_sweeps_credited_balance_minus_fee_to_pool(self, sweeper, adapters, keys, snapshots):
        eth = adapters[Currency.ETH]
        _credited(adapters, snapshots, _address(keys, 1), "1")

        sweeper.schedule(1, Currency.ETH)
        [result] = sweeper.run_once()

        assert result.amount == Decimal("1") - FEE
        [sent] = eth.broadcasts
        assert sent.source == _address(keys, 1)
        assert sent.destination == POOL_ETH
        assert sweeper.pending() == 0

        snapshot = snapshots.get("ETH", _address(keys, 1))
        assert snapshot.sweep_tx_reference == sent.tx_reference
        assert snapshot.sweep_outflow_raw == eth.to_raw(Decimal("1"))

    def test_uncredited_inflow_stays_on_the_address(self, sweeper, adapters, keys, snapshots, session_factory):
        eth = adapters[Currency.ETH]
        address = _address(keys, 5)
        _credited(adapters, snapshots, address, "1")
        # arrived after the last credit
        eth.balances[address] = Decimal("1.5")

        sweeper.schedule(5, Currency.ETH)
        [result] = sweeper.run_once()
        assert result.amount == Decimal("1") - FEE

        # once the sweep is mined, the observer sees the rest as a new deposit
        eth.balances[address] = Decimal("0.5")
        observer = BalanceDiffObserver(eth, lambda: [address], snapshots, confirmations=12)
        [obs] = list(observer.poll())
        assert obs.amount == Decimal("0.5")
        assert obs.external_ref == f"ETH:{address.lower()}:2"

    def test_sweep_is_capped_by_chain_balance(self, sweeper, adapters, keys, snapshots):
        eth = adapters[Currency.ETH]
        address = _address(keys, 6)
        _credited(adapters, snapshots, address, "1")
        eth.balances[address] = Decimal("0.6")

        sweeper.schedule(6, Currency.ETH)
        [result] = sweeper.run_once()
        assert result.amount == Decimal("0.6") - FEE

    def test_skips_when_fee_and_dust_eat_everything(self, sweeper, adapters, keys, snapshots):
        eth = adapters[Currency.ETH]
        _credited(adapters, snapshots, _address(keys, 2), "0.0007")

        sweeper.schedule(2, Currency.ETH)
        [result] = sweeper.run_once()
        assert result.tx_reference is None
        assert result.skipped
        assert eth.broadcasts == []
        assert sweeper.pending() == 0

    def test_nothing_credited_nothing_swept(self, sweeper, adapters, keys):
        adapters[Currency.ETH].balances[_address(keys, 7)] = Decimal("3")
        sweeper.schedule(7, Currency.ETH)
        [result] = sweeper.run_once()
        assert result.skipped
        assert adapters[Currency.ETH].broadcasts == []

    def test_tokens_and_unattributed_are_not_scheduled(self, sweeper):
        sweeper.schedule(1, Currency.USDT)
        sweeper.schedule(1, Currency.BTC)
        sweeper.schedule(None, Currency.ETH)
        assert sweeper.pending() == 0

    def test_schedule_is_deduplicated(self, sweeper):
        sweeper.schedule(1, Currency.ETH)
        sweeper.schedule(1, Currency.ETH)
        assert sweeper.pending() == 1


class TestSweepBroadcast:
    def test_rejected_sweep_is_forgotten(self, sweeper, adapters, keys, snapshots):
        eth = adapters[Currency.ETH]
        address = _address(keys, 8)
        _credited(adapters, snapshots, address, "1")
        eth.broadcast_error = BroadcastFailed("insufficient funds for gas")

        sweeper.schedule(8, Currency.ETH)
        assert sweeper.run_once() == []
        assert snapshots.get("ETH", address).sweep_tx_reference is None

    def test_timed_out_sweep_is_resent_with_the_same_bytes(self, sweeper, adapters, keys, snapshots, clock):
        eth = adapters[Currency.ETH]
        address = _address(keys, 9)
        _credited(adapters, snapshots, address, "1")
        eth.broadcast_error = BroadcastTimeout("read timed out")
        eth.deliver_on_timeout = False

        sweeper.schedule(9, Currency.ETH)
        assert sweeper.run_once() == []
        pending = snapshots.get("ETH", address).sweep_tx_reference
        assert pending

        eth.broadcast_error = None
        clock.now += 300
        [result] = sweeper.run_once()
        assert result.tx_reference == pending
        first, second = eth.broadcasts
        assert (second.tx_reference, second.raw) == (first.tx_reference, first.raw)

    def test_mined_sweep_is_not_resent(self, sweeper, adapters, keys, snapshots, clock):
        eth = adapters[Currency.ETH]
        address = _address(keys, 10)
        _credited(adapters, snapshots, address, "1")
        sweeper.schedule(10, Currency.ETH)
        sweeper.run_once()

        # not settled by the observer yet
        clock.now += 300
        sweeper.schedule(10, Currency.ETH)
        [result] = sweeper.run_once()
        assert result.skipped
        assert len(eth.broadcasts) == 1


class TestBackoff:
    def test_failures_back_off_exponentially_up_to_cap(self, sweeper, adapters, keys, snapshots, clock):
        eth = adapters[Currency.ETH]
        address = _address(keys, 3)
        _credited(adapters, snapshots, address, "1")
        eth.fail_addresses.add(address)

        sweeper.schedule(3, Currency.ETH)
        assert sweeper.run_once() == []  # attempt 1 fails, retry in 300s

        clock.now += 299
        sweeper.run_once()
        assert sweeper._failures[(3, Currency.ETH)] == 1

        clock.now += 1
        sweeper.run_once()  # attempt 2 fails, retry in 600s
        assert sweeper._due[(3, Currency.ETH)] == clock.now + 600

        clock.now += 600
        sweeper.run_once()  # attempt 3 fails, 1200s capped at 1000s
        assert sweeper._due[(3, Currency.ETH)] == clock.now + 1000

        eth.fail_addresses.clear()
        clock.now += 1000
        [result] = sweeper.run_once()
        assert result.tx_reference
        assert (3, Currency.ETH) not in sweeper._failures
        assert sweeper.pending() == 0

    def test_unexpected_error_backs_off_too(self, sweeper, adapters, keys, snapshots, clock):
        eth = adapters[Currency.ETH]
        _credited(adapters, snapshots, _address(keys, 11), "1")

        def broken():
            raise ValueError("bad gas price response")

        eth.gas_price = broken
        sweeper.schedule(11, Currency.ETH)
        assert sweeper.run_once() == []
        assert sweeper._failures[(11, Currency.ETH)] == 1
        assert sweeper._due[(11, Currency.ETH)] == clock.now + 300

    def test_min_interval_between_sweeps(self, sweeper, adapters, keys, snapshots, clock):
        eth = adapters[Currency.ETH]
        address = _address(keys, 4)
        _credited(adapters, snapshots, address, "1")
        sweeper.schedule(4, Currency.ETH)
        [first] = sweeper.run_once()

        # mined and settled, then credited again
        snapshots.settle_sweep("ETH", address, first.tx_reference, eth.to_raw(Decimal("1")))
        _credited(adapters, snapshots, address, "1", sequence=2)

        sweeper.schedule(4, Currency.ETH)
        assert sweeper.run_once() == []
        clock.now += 300
        assert len(sweeper.run_once()) == 1
        assert len(eth.broadcasts) == 2
