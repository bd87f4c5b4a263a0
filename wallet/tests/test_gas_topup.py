import pytest

from conftest import bnb
from db.incidents import RetryStrategy
from db.ledger import GasSupplyStatus, GasSupplyType, GasTriggerType
from db.store import LedgerStore
from shared.exceptions import ErrorType, GasTopUpError, ValidationError
from wallet.gas_topup_service import GasLevel, NoActionNeeded, TopUpResult
from wallet.service import get_or_create_wallet


@pytest.fixture
def user_wallet(db_session, key_derivation):
    return get_or_create_wallet("user-1", db_session, key_derivation)


def test_classify(gas_engine):
    assert gas_engine.classify(bnb("0.0003")) == GasLevel.OK
    assert gas_engine.classify(bnb("0.0002")) == GasLevel.LOW
    assert gas_engine.classify(bnb("0.0001")) == GasLevel.CRITICAL


def test_no_top_up_at_or_above_threshold(gas_engine, chain, submitter, user_wallet):
    chain.balances[user_wallet.address] = bnb("0.0003")
    outcome = gas_engine.ensure_gas(user_wallet.address)

    assert isinstance(outcome, NoActionNeeded)
    assert submitter.submitted == []


def test_top_up_below_threshold_is_logged(gas_engine, chain, db_session, user_wallet, master_wallet):
    chain.balances[user_wallet.address] = bnb("0.0001")
    master_before = chain.balances[master_wallet.address]

    result = gas_engine.ensure_gas(user_wallet.address, user_id=user_wallet.user_id)

    assert isinstance(result, TopUpResult)
    assert result.amount == bnb("0.0005")
    assert result.balance_before == bnb("0.0001")
    assert result.balance_after == bnb("0.0006")
    assert chain.balances[master_wallet.address] == master_before - bnb("0.0005") - 21000 * chain.gas_price_wei

    log = LedgerStore(db_session).find_gas_by_wallet(user_wallet.address)[0]
    assert log.supply_type == GasSupplyType.AUTO
    assert log.status == GasSupplyStatus.CONFIRMED
    assert log.trigger_type == GasTriggerType.CRITICAL_BALANCE
    assert log.balance_change == bnb("0.0005")
    assert log.gas_cost == 21000 * chain.gas_price_wei


def test_top_up_covers_larger_requirement(gas_engine, chain, user_wallet):
    chain.balances[user_wallet.address] = 0
    result = gas_engine.ensure_gas(user_wallet.address, min_required=bnb("0.002"))
    assert result.amount == bnb("0.002")


def test_reverted_top_up_marks_log_failed_and_records_incident(gas_engine, chain, submitter, db_session,
                                                               user_wallet):
    submitter.revert = 1
    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address)

    store = LedgerStore(db_session)
    assert store.find_gas_by_wallet(user_wallet.address)[0].status == GasSupplyStatus.FAILED
    incident = store.find_incidents_by_type(ErrorType.GAS_FAIL)[0]
    assert incident.context["address"] == user_wallet.address
    assert incident.retry_strategy == RetryStrategy.EXPONENTIAL_BACKOFF


def test_empty_master_wallet_sends_nothing(gas_engine, chain, submitter, master_wallet, user_wallet, db_session):
    chain.balances[master_wallet.address] = bnb("0.0001")
    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address)
    assert submitter.submitted == []
    assert LedgerStore(db_session).find_gas_by_wallet(user_wallet.address) == []


def test_manual_top_up_records_operator(gas_engine, db_session, user_wallet):
    result = gas_engine.manual_top_up(user_wallet.address, bnb("0.01"), admin_id=9, admin_name="ops",
                                      admin_ip_address="10.0.0.1", reason="pre-fund")

    log = LedgerStore(db_session).find_gas_by_admin(9)[0]
    assert log.id == result.gas_log_id
    assert log.supply_type == GasSupplyType.MANUAL
    assert log.trigger_type == GasTriggerType.MANUAL_REQUEST
    assert log.admin_name == "ops"
    assert log.admin_ip_address == "10.0.0.1"
    assert log.reason == "pre-fund"


@pytest.mark.parametrize("amount", [0, bnb("0.2")])
def test_manual_top_up_rejects_out_of_range_amounts(gas_engine, submitter, user_wallet, amount):
    with pytest.raises(ValidationError):
        gas_engine.manual_top_up(user_wallet.address, amount, admin_id=1, admin_name="ops")
    assert submitter.submitted == []


def test_manual_top_up_rejects_unknown_wallet(gas_engine):
    with pytest.raises(ValidationError):
        gas_engine.manual_top_up("0x" + "ee" * 20, bnb("0.01"), admin_id=1, admin_name="ops")


def test_failed_manual_top_up_is_not_retried(gas_engine, submitter, db_session, user_wallet):
    submitter.reject = 1
    with pytest.raises(GasTopUpError):
        gas_engine.manual_top_up(user_wallet.address, bnb("0.01"), admin_id=1, admin_name="ops")
    incident = LedgerStore(db_session).find_incidents_by_type(ErrorType.GAS_FAIL)[0]
    assert incident.retry_strategy == RetryStrategy.NO_RETRY


def test_gas_monitor_reports_every_wallet(gas_engine, chain, db_session, key_derivation):
    low = get_or_create_wallet("low", db_session, key_derivation)
    ok = get_or_create_wallet("ok", db_session, key_derivation)
    chain.balances[low.address] = bnb("0.0002")
    chain.balances[ok.address] = bnb("0.01")

    report = {row["user_id"]: row for row in gas_engine.gas_monitor()}

    assert report["low"]["status"] == GasLevel.LOW
    assert report["ok"]["status"] == GasLevel.OK
    assert low.native_balance == bnb("0.0002")
    assert low.balance_checked_at is not None


def test_retry_incident_tops_up_without_new_incident(gas_engine, chain, submitter, db_session, user_wallet):
    submitter.reject = 1
    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address, user_id=user_wallet.user_id)
    incident = LedgerStore(db_session).find_incidents_by_type(ErrorType.GAS_FAIL)[0]

    gas_engine.retry_incident(incident)

    store = LedgerStore(db_session)
    assert len(store.find_incidents_by_type(ErrorType.GAS_FAIL)) == 1
    log = store.find_gas_by_wallet(user_wallet.address)[0]
    assert log.trigger_type == GasTriggerType.AUTO_RETRY
    assert log.status == GasSupplyStatus.CONFIRMED


def test_rejected_top_up_is_logged_failed_without_hash(gas_engine, submitter, db_session, user_wallet):
    submitter.reject = 1
    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address)

    log = LedgerStore(db_session).find_gas_by_wallet(user_wallet.address)[0]
    assert log.status == GasSupplyStatus.FAILED
    assert log.tx_hash is None
    assert "nonce too low" in log.error


def test_broadcast_timeout_is_settled_instead_of_sent_twice(gas_engine, chain, submitter, db_session,
                                                            user_wallet):
    chain.balances[user_wallet.address] = bnb("0.0001")
    submitter.broadcast_timeout = 1

    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address, user_id=user_wallet.user_id)

    store = LedgerStore(db_session)
    log = store.find_gas_by_wallet(user_wallet.address)[0]
    assert log.status == GasSupplyStatus.PENDING
    assert log.tx_hash == submitter.submitted[0].tx_hash
    incident = store.find_incidents_by_type(ErrorType.GAS_FAIL)[0]

    gas_engine.retry_incident(incident)

    assert len(submitter.submitted) == 1
    assert chain.balances[user_wallet.address] == bnb("0.0006")
    assert [log.status for log in store.find_gas_by_wallet(user_wallet.address)] == [GasSupplyStatus.CONFIRMED]
    assert log.balance_after == bnb("0.0006")


def test_unmined_top_up_blocks_another(gas_engine, chain, submitter, db_session, user_wallet):
    chain.balances[user_wallet.address] = 0
    submitter.broadcast_timeout = 1
    submitter.timeout = 1
    with pytest.raises(GasTopUpError):
        gas_engine.ensure_gas(user_wallet.address)
    # The transfer is applied but unmined; the node still reports the old balance
    chain.balances[user_wallet.address] = 0

    with pytest.raises(GasTopUpError, match="not confirmed yet"):
        gas_engine.ensure_gas(user_wallet.address)

    assert len(submitter.submitted) == 1
    assert gas_engine.reconcile_pending_supplies() == LedgerStore(db_session).unconfirmed_supplies()
