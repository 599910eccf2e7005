import threading
from decimal import Decimal

import pytest

from custody.core.enums import Currency, DepositStatus, UserRole
from custody.core.errors import InvalidTransition, NotFound
from custody.models import DepositRecord
from custody.services.chain.base import Observation

from conftest import ETH_DEST, POOL_BTC, POOL_ETH


def _display(runtime, db, user, currency):
    return runtime.address_book.get_deposit_address(db, user.id, currency).address


def _btc(address, confirmations, ref="aa" * 32 + ":0", amount="0.01"):
    return Observation(Currency.BTC, address, Decimal(amount), ref, confirmations)


def _balance(runtime, db, user_id, currency):
    db.expire_all()
    row = runtime.ledger.get_balance(db, user_id, currency)
    return row.balance if row else Decimal("0")


class TestDepositAddresses:
    def test_address_is_cached(self, runtime, db, make_user):
        user = make_user()
        first = runtime.address_book.get_deposit_address(db, user.id, Currency.BTC)
        again = runtime.address_book.get_deposit_address(db, user.id, Currency.BTC)
        assert first.id == again.id
        assert first.address == runtime.keys.derive_address(user.id, Currency.BTC).address

    def test_evm_currencies_share_one_address(self, runtime, db, make_user):
        user = make_user()
        eth = _display(runtime, db, user, Currency.ETH)
        assert _display(runtime, db, user, Currency.USDT) == eth
        assert runtime.address_book.display_addresses(db, Currency.USDT) == [eth]

    def test_pool_is_watched_only_on_utxo_chains(self, runtime, db, make_user):
        user = make_user()
        btc = _display(runtime, db, user, Currency.BTC)
        eth = _display(runtime, db, user, Currency.ETH)
        assert runtime.observers[Currency.BTC].watched() == [POOL_BTC, btc]
        assert runtime.observers[Currency.ETH].watched() == [eth]
        assert POOL_ETH not in runtime.observers[Currency.USDT].watched()
        # account pools are block-scanned instead
        assert runtime.pool_observers[Currency.ETH].watched() == [POOL_ETH]
        assert runtime.pool_observers[Currency.USDT].watched() == [POOL_ETH]
        assert Currency.BTC not in runtime.pool_observers


class TestConfirmationPolicy:
    def test_credit_happens_exactly_once_at_required_depth(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        reconciler = runtime.reconciler

        record = reconciler.apply(_btc(address, 1))
        assert record.status == DepositStatus.CONFIRMING.value
        assert record.required_confirmations == 6
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0")

        assert reconciler.apply(_btc(address, 3)).status == DepositStatus.CONFIRMING.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0")

        record = reconciler.apply(_btc(address, 6))
        assert record.status == DepositStatus.COMPLETED.value
        assert record.credited_at is not None
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")

        record = reconciler.apply(_btc(address, 7))
        assert record.status == DepositStatus.COMPLETED.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")
        assert db.query(DepositRecord).count() == 1

    def test_unconfirmed_stays_pending(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        assert runtime.reconciler.apply(_btc(address, 0)).status == DepositStatus.PENDING.value

    def test_confirmations_never_go_backwards(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        runtime.reconciler.apply(_btc(address, 4))
        assert runtime.reconciler.apply(_btc(address, 2)).confirmations == 4

    def test_each_output_is_its_own_deposit(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        runtime.reconciler.apply(_btc(address, 6, ref="bb" * 32 + ":0"))
        runtime.reconciler.apply(_btc(address, 6, ref="bb" * 32 + ":1", amount="0.02"))
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.03")

    def test_replay_batch_is_idempotent(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        batch = [_btc(address, 6, ref=f"{n:064x}:0") for n in range(5)]
        assert runtime.reconciler.apply_all(batch) == 5
        assert runtime.reconciler.apply_all(batch) == 5
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.05")

    def test_concurrent_replays_credit_once(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        observation = _btc(address, 6)
        errors = []
        start = threading.Barrier(4)

        def worker():
            start.wait()
            try:
                runtime.reconciler.apply(observation)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")
        assert db.query(DepositRecord).count() == 1
        assert runtime.notifier.deposit_confirmed.call_count == 1

    def test_bad_observation_does_not_stop_the_cycle(self, runtime, db, make_user, monkeypatch):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        credit = runtime.ledger.credit

        def flaky(session, user_id, currency, amount, reference, *args, **kwargs):
            if reference == "ff" * 32 + ":0":
                raise RuntimeError("constraint violated")
            return credit(session, user_id, currency, amount, reference, *args, **kwargs)

        monkeypatch.setattr(runtime.ledger, "credit", flaky)
        bad = _btc(address, 6, ref="ff" * 32 + ":0")
        good = _btc(address, 6)

        assert runtime.reconciler.apply_all([bad, good]) == 1
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")
        assert db.query(DepositRecord).count() == 1

    def test_non_positive_amount_fails(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        record = runtime.reconciler.apply(_btc(address, 6, amount="0"))
        assert record.status == DepositStatus.FAILED.value
        assert record.failure_reason
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0")


class TestAfterCredit:
    def test_notifier_called_once(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        runtime.reconciler.apply(_btc(address, 6))
        runtime.reconciler.apply(_btc(address, 8))
        runtime.notifier.deposit_confirmed.assert_called_once()

    def test_eth_credit_schedules_sweep(self, runtime, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.ETH)
        runtime.reconciler.apply(Observation(Currency.ETH, address, Decimal("1"), f"ETH:{address.lower()}:1", 12))
        assert runtime.sweeper.pending() == 1

    def test_btc_credit_is_not_swept(self, runtime, db, make_user):
        user = make_user()
        runtime.reconciler.apply(_btc(_display(runtime, db, user, Currency.BTC), 6))
        assert runtime.sweeper.pending() == 0

    def test_notifier_failure_does_not_undo_credit(self, runtime, db, make_user):
        user = make_user()
        runtime.notifier.deposit_confirmed.side_effect = RuntimeError("telegram down")
        address = _display(runtime, db, user, Currency.BTC)
        assert runtime.reconciler.apply(_btc(address, 6)).status == DepositStatus.COMPLETED.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")


class TestPoolDeposits:
    def test_pool_deposit_waits_for_claim(self, runtime, db, make_user):
        user = make_user()
        admin = make_user(role=UserRole.ADMIN.value)
        record = runtime.reconciler.apply(_btc(POOL_BTC, 6))
        assert record.user_id is None
        assert record.status == DepositStatus.PENDING.value
        assert runtime.reconciler.list_deposits(db, unattributed=True)[0].id == record.id

        claimed = runtime.reconciler.claim(record.id, user.id, admin.id)
        assert claimed.status == DepositStatus.COMPLETED.value
        assert claimed.claimed_by == admin.id
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")

        with pytest.raises(InvalidTransition):
            runtime.reconciler.claim(record.id, user.id, admin.id)

    def test_shallow_claim_credits_later(self, runtime, db, make_user):
        user = make_user()
        record = runtime.reconciler.apply(_btc(POOL_BTC, 2))
        assert runtime.reconciler.claim(record.id, user.id).status == DepositStatus.CONFIRMING.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0")
        assert runtime.reconciler.apply(_btc(POOL_BTC, 6)).status == DepositStatus.COMPLETED.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.01")

    def test_claim_errors(self, runtime, make_user):
        record = runtime.reconciler.apply(_btc(POOL_BTC, 6))
        with pytest.raises(NotFound):
            runtime.reconciler.claim(9999, make_user().id)
        with pytest.raises(NotFound):
            runtime.reconciler.claim(record.id, 9999)


class TestHeal:
    def _record(self, db, user_id, ref, status):
        record = DepositRecord(
            user_id=user_id, currency="BTC", amount=Decimal("0.5"), address="1Addr", tx_reference=ref,
            confirmations=6, required_confirmations=6, status=status,
        )
        db.add(record)
        db.commit()
        return record

    def test_completed_without_credit_is_credited(self, runtime, db, make_user):
        user = make_user()
        self._record(db, user.id, "heal:0", DepositStatus.COMPLETED.value)
        report = runtime.reconciler.heal()
        assert (report.checked, report.credited, report.status_fixed) == (1, 1, 0)
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.5")
        assert runtime.reconciler.heal().credited == 0

    def test_credited_but_not_completed_is_fixed(self, runtime, db, make_user):
        user = make_user()
        runtime.ledger.credit(db, user.id, "BTC", Decimal("0.5"), "heal:1")
        db.commit()
        record = self._record(db, user.id, "heal:1", DepositStatus.CONFIRMING.value)

        report = runtime.reconciler.heal()
        assert (report.credited, report.status_fixed) == (0, 1)
        db.expire_all()
        assert db.get(DepositRecord, record.id).status == DepositStatus.COMPLETED.value
        assert _balance(runtime, db, user.id, "BTC") == Decimal("0.5")

    def test_consistent_records_untouched(self, runtime, db, make_user):
        user = make_user()
        runtime.reconciler.apply(_btc(_display(runtime, db, user, Currency.BTC), 6))
        report = runtime.reconciler.heal()
        assert (report.checked, report.credited, report.status_fixed) == (1, 0, 0)


class TestBalanceDiffEndToEnd:
    def test_eth_and_usdt_deposits_via_poll(self, runtime, adapters, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.ETH)

        adapters[Currency.ETH].balances[address] = Decimal("0.25")
        assert runtime.monitor.poll_once(Currency.ETH) == 1
        assert runtime.monitor.poll_once(Currency.ETH) == 0
        assert _balance(runtime, db, user.id, "ETH") == Decimal("0.25")

        adapters[Currency.USDT].balances[address] = Decimal("10")
        assert runtime.monitor.poll_once(Currency.USDT) == 1
        assert _balance(runtime, db, user.id, "USDT") == Decimal("10")

        [deposit] = runtime.reconciler.list_deposits(db, user_id=user.id, status="completed", limit=1)
        assert deposit.tx_reference == f"USDT:{address.lower()}:1"

    def test_second_inflow_gets_next_sequence(self, runtime, adapters, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.ETH)
        eth = adapters[Currency.ETH]

        eth.balances[address] = Decimal("1")
        runtime.monitor.poll_once(Currency.ETH)
        # swept out, then topped up again
        eth.balances[address] = Decimal("0")
        runtime.monitor.poll_once(Currency.ETH)
        eth.balances[address] = Decimal("0.4")
        runtime.monitor.poll_once(Currency.ETH)

        refs = sorted(d.tx_reference for d in runtime.reconciler.list_deposits(db, user_id=user.id))
        assert refs == [f"ETH:{address.lower()}:1", f"ETH:{address.lower()}:2"]
        assert _balance(runtime, db, user.id, "ETH") == Decimal("1.4")

    def test_poll_failure_returns_zero(self, runtime, adapters, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.BTC)
        adapters[Currency.BTC].incoming[address] = [_btc(address, 6)]

        def failing(observation):
            raise RuntimeError("db down")

        runtime.reconciler.apply = failing
        assert runtime.monitor.poll_once(Currency.BTC) == 0

    def test_crash_after_credit_does_not_lose_the_snapshot(self, runtime, adapters, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.ETH)
        eth = adapters[Currency.ETH]
        eth.balances[address] = Decimal("1")

        cycle = runtime.observers[Currency.ETH].poll()
        runtime.reconciler.apply(next(cycle))
        # the process dies before the cycle resumes
        cycle.close()
        assert runtime.observers[Currency.ETH].snapshots.get("ETH", address).sequence == 1

        assert runtime.monitor.poll_once(Currency.ETH) == 0
        eth.balances[address] = Decimal("1.25")
        assert runtime.monitor.poll_once(Currency.ETH) == 1

        refs = sorted(d.tx_reference for d in runtime.reconciler.list_deposits(db, user_id=user.id))
        assert refs == [f"ETH:{address.lower()}:1", f"ETH:{address.lower()}:2"]
        assert _balance(runtime, db, user.id, "ETH") == Decimal("1.25")

    def test_failed_credit_keeps_only_that_address_behind(self, runtime, adapters, db, make_user, monkeypatch):
        alice, bob = make_user(), make_user()
        a = _display(runtime, db, alice, Currency.ETH)
        b = _display(runtime, db, bob, Currency.ETH)
        eth = adapters[Currency.ETH]
        eth.balances[a] = Decimal("1")
        eth.balances[b] = Decimal("2")
        credit = runtime.ledger.credit

        def flaky(session, user_id, currency, amount, reference, *args, **kwargs):
            if user_id == alice.id:
                raise RuntimeError("constraint violated")
            return credit(session, user_id, currency, amount, reference, *args, **kwargs)

        monkeypatch.setattr(runtime.ledger, "credit", flaky)
        assert runtime.monitor.poll_once(Currency.ETH) == 1
        snapshots = runtime.observers[Currency.ETH].snapshots
        assert snapshots.get("ETH", a).sequence == 0
        assert snapshots.get("ETH", b).sequence == 1

        monkeypatch.setattr(runtime.ledger, "credit", credit)
        assert runtime.monitor.poll_once(Currency.ETH) == 1
        [deposit] = runtime.reconciler.list_deposits(db, user_id=alice.id)
        assert deposit.tx_reference == f"ETH:{a.lower()}:1"
        assert _balance(runtime, db, alice.id, "ETH") == Decimal("1")
        assert _balance(runtime, db, bob.id, "ETH") == Decimal("2")


class TestEvmPoolDeposits:
    def test_token_sent_to_pool_waits_for_claim(self, runtime, adapters, db, make_user):
        user = make_user()
        admin = make_user(role=UserRole.ADMIN.value)
        usdt = adapters[Currency.USDT]
        ref = "0x" + "ab" * 32 + ":0"
        usdt.block_transfers = [
            Observation(Currency.USDT, POOL_ETH, Decimal("25"), ref, 0, sender=ETH_DEST, block=95)
        ]

        assert runtime.monitor.poll_once(Currency.USDT) == 1
        [record] = runtime.reconciler.list_deposits(db, unattributed=True)
        assert (record.tx_reference, record.confirmations) == (ref, 6)
        assert record.status == DepositStatus.PENDING.value
        assert record.sender_address == ETH_DEST

        claimed = runtime.reconciler.claim(record.id, user.id, admin.id)
        assert claimed.status == DepositStatus.CONFIRMING.value
        assert _balance(runtime, db, user.id, "USDT") == Decimal("0")

        usdt.tip = 106
        runtime.monitor.poll_once(Currency.USDT)
        assert _balance(runtime, db, user.id, "USDT") == Decimal("25")
        db.expire_all()
        assert db.get(DepositRecord, record.id).status == DepositStatus.COMPLETED.value

        usdt.tip = 200
        runtime.monitor.poll_once(Currency.USDT)
        assert _balance(runtime, db, user.id, "USDT") == Decimal("25")
        assert db.query(DepositRecord).count() == 1

    def test_sweeps_into_the_pool_are_not_recorded(self, runtime, adapters, db, make_user):
        user = make_user()
        display = _display(runtime, db, user, Currency.ETH)
        adapters[Currency.ETH].block_transfers = [
            Observation(Currency.ETH, POOL_ETH, Decimal("0.99979"), "0x" + "c1" * 32, 0, sender=display, block=80),
            Observation(Currency.ETH, POOL_ETH, Decimal("2"), "0x" + "c2" * 32, 0, sender=ETH_DEST, block=81),
        ]

        assert runtime.monitor.poll_once(Currency.ETH) == 1
        [record] = runtime.reconciler.list_deposits(db, unattributed=True)
        assert record.tx_reference == "0x" + "c2" * 32
        assert record.amount == Decimal("2")

    def test_unreachable_display_chain_still_scans_the_pool(self, runtime, adapters, db, make_user):
        user = make_user()
        eth = adapters[Currency.ETH]
        eth.fail_addresses.add(_display(runtime, db, user, Currency.ETH))
        eth.block_transfers = [
            Observation(Currency.ETH, POOL_ETH, Decimal("1"), "0x" + "c3" * 32, 0, sender=ETH_DEST, block=99),
        ]
        assert runtime.monitor.poll_once(Currency.ETH) == 1


class TestSweepAccounting:
    def test_inflow_between_credit_and_sweep_is_credited(self, runtime, adapters, db, make_user):
        user = make_user()
        address = _display(runtime, db, user, Currency.ETH)
        eth = adapters[Currency.ETH]
        eth.balances[address] = Decimal("1")
        assert runtime.monitor.poll_once(Currency.ETH) == 1

        # lands after the credit, before the sweep runs
        eth.balances[address] = Decimal("1.5")
        [result] = runtime.sweeper.run_once()
        assert result.amount == Decimal("1.49979")
        assert _balance(runtime, db, user.id, "ETH") == Decimal("1.5")

        # the sweep is mined together with another deposit
        eth.balances[address] = Decimal("0.3")
        assert runtime.monitor.poll_once(Currency.ETH) == 1

        refs = sorted(d.tx_reference for d in runtime.reconciler.list_deposits(db, user_id=user.id))
        assert refs == [f"ETH:{address.lower()}:{n}" for n in (1, 2, 3)]
        assert _balance(runtime, db, user.id, "ETH") == Decimal("1.8")
        assert runtime.observers[Currency.ETH].snapshots.get("ETH", address).sweep_tx_reference is None
