import pytest

from db.ledger import (
    DepositStatus,
    GasSupplyLog,
    GasSupplyStatus,
    GasSupplyType,
    GasTriggerType,
    Sweep,
    SweepStatus,
)
from db.store import LedgerStore
from shared.crypto.HD import DerivedWallet
from shared.crypto.tokens import NATIVE_ASSET_KEY, TokenType

USER_ADDRESS = "0x" + "aa" * 20
MASTER_ADDRESS = "0x" + "bb" * 20


@pytest.fixture
def store(db_session):
    return LedgerStore(db_session)


def _deposit(store, tx_hash="0x01", asset_key=NATIVE_ASSET_KEY, amount=10 ** 18, user_id="u1", **extra):
    fields = dict(
        user_id=user_id,
        tx_hash=tx_hash,
        from_address="0x" + "cc" * 20,
        to_address=USER_ADDRESS,
        amount=amount,
        decimals=18,
        token_type=TokenType.NATIVE if asset_key == NATIVE_ASSET_KEY else TokenType.TOKEN,
        token_contract=None if asset_key == NATIVE_ASSET_KEY else asset_key,
        token_symbol="BNB" if asset_key == NATIVE_ASSET_KEY else "USDT",
        asset_key=asset_key,
        block_number=100,
        status=DepositStatus.PENDING,
    )
    fields.update(extra)
    return store.create_deposit(**fields)


def _sweep(user_id="u1", asset_key=NATIVE_ASSET_KEY, status=SweepStatus.COMPLETED, amount=10 ** 18):
    return Sweep(
        user_id=user_id,
        from_address=USER_ADDRESS,
        to_address=MASTER_ADDRESS,
        amount=amount,
        decimals=18,
        token_type=TokenType.NATIVE,
        token_symbol="BNB",
        asset_key=asset_key,
        gas_cost=21000 * 5 * 10 ** 9,
        status=status,
        related_deposits=[],
    )


def test_add_wallet_returns_existing_on_duplicate_user(store, db_session):
    derived = DerivedWallet("u1", USER_ADDRESS.upper().replace("0X", "0x"), "pub", "enc", "m/44'/60'/1'/2/3")
    wallet = store.add_wallet(derived)
    db_session.commit()
    assert wallet.address == USER_ADDRESS

    again = store.add_wallet(derived)
    assert again.id == wallet.id
    assert store.get_wallet_by_address(USER_ADDRESS.upper().replace("0X", "0x")).user_id == "u1"
    assert list(store.wallets_by_address()) == [USER_ADDRESS]


def test_deposit_is_recorded_once_per_tx_and_asset(store, db_session):
    assert _deposit(store) is not None
    db_session.commit()

    assert _deposit(store) is None
    # Same transaction, different asset
    assert _deposit(store, asset_key="0x" + "dd" * 20) is not None
    db_session.commit()

    assert store.deposit_exists("0x01", NATIVE_ASSET_KEY)
    assert len(store.find_deposits_by_user("u1")) == 2


def test_swept_flips_once_and_only_after_confirmation(store, db_session):
    deposit = _deposit(store)
    db_session.commit()

    assert store.mark_deposits_swept("u1", NATIVE_ASSET_KEY, "0xsweep", threshold=6) == []
    with pytest.raises(ValueError):
        deposit.mark_as_swept("0xsweep", threshold=6)

    assert deposit.update_confirmations(5, threshold=6) is False
    assert deposit.status == DepositStatus.PENDING
    assert deposit.update_confirmations(6, threshold=6) is True
    assert deposit.status == DepositStatus.CONFIRMED
    assert deposit.confirmed_at is not None
    db_session.commit()

    assert store.mark_deposits_swept("u1", NATIVE_ASSET_KEY, "0xsweep", threshold=6) == [deposit.id]
    assert deposit.swept and deposit.sweep_tx_hash == "0xsweep"
    assert deposit.mark_as_swept("0xother", threshold=6) is False
    assert deposit.sweep_tx_hash == "0xsweep"


def test_find_deposits_by_user_filters(store, db_session):
    confirmed = _deposit(store, tx_hash="0x01", status=DepositStatus.CONFIRMED, confirmations=8)
    _deposit(store, tx_hash="0x02")
    _deposit(store, tx_hash="0x03", user_id="u2")
    db_session.commit()

    assert [d.id for d in store.find_deposits_by_user("u1", status=DepositStatus.CONFIRMED)] == [confirmed.id]
    assert len(store.find_deposits_by_user("u1", token_type=TokenType.NATIVE, swept=False)) == 2
    assert len(store.find_deposits_by_user("u1", limit=1)) == 1
    assert [d.id for d in store.find_pending_sweeps()] == [confirmed.id]


def test_deposit_stats_grouped_by_asset(store, db_session):
    _deposit(store, tx_hash="0x01", amount=100)
    _deposit(store, tx_hash="0x02", amount=300)
    _deposit(store, tx_hash="0x03", amount=7, asset_key="0x" + "dd" * 20)
    db_session.commit()

    stats = store.deposit_stats("u1")
    assert stats[NATIVE_ASSET_KEY]["total_deposits"] == 400
    assert stats[NATIVE_ASSET_KEY]["deposit_count"] == 2
    assert stats[NATIVE_ASSET_KEY]["avg_deposit"] == 200
    assert stats["0x" + "dd" * 20]["token_symbol"] == "USDT"


def test_processing_attempts_and_flag(store, db_session):
    deposit = _deposit(store)
    deposit.add_processing_attempt("gas top-up failed")
    deposit.add_processing_attempt()
    deposit.flag("manual review")
    db_session.commit()

    assert deposit.processing_attempts == 2
    assert deposit.last_processing_error == "gas top-up failed"
    assert deposit.flagged and deposit.age_in_minutes == 0


def test_recent_sweep_ignores_failed_sweeps(store, db_session):
    store.add_sweep(_sweep(status=SweepStatus.FAILED))
    db_session.commit()
    assert not store.recent_sweep_exists("u1", NATIVE_ASSET_KEY, 600)

    store.add_sweep(_sweep(status=SweepStatus.PROCESSING))
    db_session.commit()
    assert store.recent_sweep_exists("u1", NATIVE_ASSET_KEY, 600)
    assert not store.recent_sweep_exists("u1", "0x" + "dd" * 20, 600)
    assert not store.recent_sweep_exists("u2", NATIVE_ASSET_KEY, 600)


def test_sweep_completion_and_stats(store, db_session):
    sweep = store.add_sweep(_sweep(status=SweepStatus.PENDING))
    sweep.mark_as_processing("0xabc", nonce=4)
    sweep.mark_as_completed({"block_number": 120, "gas_used": 21000, "effective_gas_price": 3 * 10 ** 9})
    sweep.link_deposits([3, 1])
    sweep.link_deposits([1, 2])
    store.add_sweep(_sweep(status=SweepStatus.FAILED))
    db_session.commit()

    assert sweep.gas_cost == 21000 * 3 * 10 ** 9
    assert sweep.related_deposits == [1, 2, 3]
    assert 0 < sweep.sweep_efficiency < 1

    stats = store.sweep_stats("u1")[NATIVE_ASSET_KEY]
    assert stats["sweep_count"] == 2
    assert stats["completed_sweeps"] == 1
    assert stats["failed_sweeps"] == 1
    assert stats["total_swept"] == 10 ** 18
    assert store.sweep_system_stats()["sweep_count"] == 2
    assert [s.status for s in store.find_failed_sweeps()] == [SweepStatus.FAILED]
    assert store.processing_sweeps() == []


def test_gas_supply_log_lifecycle_and_stats(store, db_session):
    auto = store.add_gas_log(GasSupplyLog(
        wallet_address=USER_ADDRESS, user_id="u1", amount=5 * 10 ** 14, supply_type=GasSupplyType.AUTO,
        tx_hash="0xg1", status=GasSupplyStatus.PENDING, balance_before=10 ** 14,
        trigger_type=GasTriggerType.CRITICAL_BALANCE,
    ))
    manual = store.add_gas_log(GasSupplyLog(
        wallet_address=USER_ADDRESS, user_id="u1", amount=10 ** 15, supply_type=GasSupplyType.MANUAL,
        tx_hash="0xg2", status=GasSupplyStatus.PENDING, admin_id="7", admin_name="ops",
        trigger_type=GasTriggerType.MANUAL_REQUEST,
    ))
    db_session.commit()
    assert len(store.find_pending_supplies()) == 2

    auto.mark_as_confirmed({"block_number": 101, "gas_used": 21000, "effective_gas_price": 10 ** 9},
                           balance_after=6 * 10 ** 14)
    manual.mark_as_failed("reverted")
    db_session.commit()

    assert auto.balance_change == 5 * 10 ** 14
    assert manual.balance_change is None
    assert [log.id for log in store.find_gas_by_admin(7)] == [manual.id]
    assert [log.id for log in store.find_failed_supplies()] == [manual.id]

    stats = store.gas_stats(USER_ADDRESS)
    assert stats["AUTO"]["successful_supplies"] == 1
    assert stats["MANUAL"]["failed_supplies"] == 1
    system = store.gas_system_stats()
    assert system["total_supplies"] == 2
    assert system["total_gas_supplied"] == 5 * 10 ** 14


def test_signed_sweeps_are_reconciled_with_processing_ones(store, db_session):
    unsigned = store.add_sweep(_sweep(status=SweepStatus.PENDING))
    signed = store.add_sweep(_sweep(status=SweepStatus.PENDING))
    signed.tx_hash = "0xs1"
    processing = store.add_sweep(_sweep(status=SweepStatus.PENDING))
    processing.mark_as_processing("0xs2", nonce=1)
    db_session.commit()

    assert [s.id for s in store.processing_sweeps()] == [signed.id, processing.id]
    assert unsigned not in store.processing_sweeps()


def test_unconfirmed_supplies_need_a_hash(store, db_session):
    for tx_hash, address in ((None, USER_ADDRESS), ("0xg1", USER_ADDRESS), ("0xg2", MASTER_ADDRESS)):
        store.add_gas_log(GasSupplyLog(
            wallet_address=address, amount=10 ** 14, supply_type=GasSupplyType.AUTO,
            tx_hash=tx_hash, status=GasSupplyStatus.PENDING, trigger_type=GasTriggerType.CRITICAL_BALANCE,
        ))
    db_session.commit()

    assert [log.tx_hash for log in store.unconfirmed_supplies()] == ["0xg1", "0xg2"]
    assert [log.tx_hash for log in store.unconfirmed_supplies(USER_ADDRESS.upper().replace("0X", "0x"))] == ["0xg1"]


def test_scan_cursor_only_moves_forward(store, db_session):
    assert store.get_cursor("scanner") is None
    assert store.highest_deposit_block() is None

    store.advance_cursor("scanner", 120)
    store.advance_cursor("scanner", 110)
    db_session.commit()

    assert store.get_cursor("scanner") == 120
    _deposit(store, block_number=95)
    _deposit(store, tx_hash="0x02", block_number=97)
    assert store.highest_deposit_block() == 97
