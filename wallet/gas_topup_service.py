#!/usr/bin/env python3
"""
Gas Top-Up Service
Funds user wallets with native currency from the master wallet so their
balances can pay for sweep transactions.
"""

import enum
import traceback
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Union

from db.incidents import EntityType, RetryStrategy
from db.ledger import GasSupplyLog, GasSupplyStatus, GasSupplyType, GasTriggerType
from db.store import LedgerStore
from shared.crypto.tokens import NATIVE_TRANSFER_GAS
from shared.currency_precision import AmountConverter
from shared.exceptions import (
    BroadcastTimeoutError,
    ErrorType,
    GasTopUpError,
    RPCError,
    RPCTimeoutError,
    SweeperError,
    TransactionFailedError,
    ValidationError,
)
from shared.logger import setup_logging
from wallet.tx_submitter import checked_receipt

logger = setup_logging(__name__)

MAX_MANUAL_TOP_UP_WEI = AmountConverter.to_smallest_units(Decimal("0.1"))


class GasLevel(enum.Enum):
    OK = "OK"
    LOW = "LOW"
    CRITICAL = "CRITICAL"


@dataclass
class TopUpResult:
    """A confirmed top-up"""
    address: str
    amount: int
    tx_hash: str
    balance_before: int
    balance_after: int
    gas_log_id: int


@dataclass
class NoActionNeeded:
    address: str
    balance: int
    min_required: int


class GasTopUpEngine:
    """Keeps user wallets funded for gas, paying from the master wallet"""

    def __init__(self, session_factory, client, submitter, master_wallet, settings, incidents=None):
        self.session_factory = session_factory
        self.client = client
        self.submitter = submitter
        self.master_wallet = master_wallet
        self.settings = settings
        self.incidents = incidents

    def classify(self, balance: int, min_required: int = None) -> GasLevel:
        min_required = min_required or self.settings.min_gas_balance_wei
        if balance < min_required / 2:
            return GasLevel.CRITICAL
        if balance < min_required:
            return GasLevel.LOW
        return GasLevel.OK

    def ensure_gas(self, address: str, min_required: int = None, user_id=None,
                   trigger: GasTriggerType = GasTriggerType.CRITICAL_BALANCE,
                   reason: str = None, record_incident: bool = True) -> Union[TopUpResult, NoActionNeeded]:
        """
        Top up ``address`` when its native balance is below ``min_required``
        (default MIN_GAS_BALANCE). Never sends anything at or above it.
        """
        address = address.lower()
        min_required = min_required or self.settings.min_gas_balance_wei
        try:
            unconfirmed = self.reconcile_pending_supplies(address)
            balance = self.client.get_balance(address)
            if balance >= min_required:
                logger.debug(f"⛽ {address} has {balance} wei, no top-up needed")
                return NoActionNeeded(address=address, balance=balance, min_required=min_required)

            if unconfirmed:
                raise GasTopUpError(
                    f"Top-up {unconfirmed[0].tx_hash} to {address} is not confirmed yet, not sending another"
                )

            amount = max(self.settings.gas_topup_amount_wei, min_required - balance)
            logger.info(
                f"⛽ Topping up {address}: balance {AmountConverter.format_display_amount(balance)} "
                f"< {AmountConverter.format_display_amount(min_required)}, sending "
                f"{AmountConverter.format_display_amount(amount, symbol=self.settings.native_symbol)}"
            )
            return self._send(
                address, amount,
                supply_type=GasSupplyType.AUTO,
                trigger=trigger,
                reason=reason or f"Balance {balance} wei below required {min_required} wei",
                balance_before=balance,
                user_id=user_id,
            )
        except SweeperError as e:
            self._record_failure(e, address, {"min_required": min_required, "user_id": user_id}, record_incident)
            if isinstance(e, GasTopUpError):
                raise
            raise GasTopUpError(f"Gas top-up for {address} failed: {e}") from e

    def manual_top_up(self, address: str, amount: int, admin_id, admin_name: str,
                      admin_ip_address: str = None, reason: str = None) -> TopUpResult:
        """Operator-initiated top-up of a known user wallet; the operator is recorded on the log"""
        address = address.lower()
        if amount <= 0 or amount > MAX_MANUAL_TOP_UP_WEI:
            raise ValidationError(
                f"Manual gas amount must be between 0 and "
                f"{AmountConverter.format_display_amount(MAX_MANUAL_TOP_UP_WEI, symbol=self.settings.native_symbol)}"
            )
        session = self.session_factory()
        wallet = LedgerStore(session).get_wallet_by_address(address)
        if wallet is None:
            raise ValidationError(f"{address} is not a user wallet")

        try:
            balance_before = self.client.get_balance(address)
            return self._send(
                address, amount,
                supply_type=GasSupplyType.MANUAL,
                trigger=GasTriggerType.MANUAL_REQUEST,
                reason=reason or "Manual gas top-up by admin",
                balance_before=balance_before,
                user_id=wallet.user_id,
                admin_id=admin_id,
                admin_name=admin_name,
                admin_ip_address=admin_ip_address,
            )
        except SweeperError as e:
            self._record_failure(e, address, {"amount": amount, "admin_id": admin_id}, True,
                                 retry_strategy=RetryStrategy.NO_RETRY)
            if isinstance(e, GasTopUpError):
                raise
            raise GasTopUpError(f"Manual gas top-up for {address} failed: {e}") from e

    def _send(self, address: str, amount: int, supply_type: GasSupplyType, trigger: GasTriggerType,
              reason: str, balance_before: int, user_id=None, admin_id=None, admin_name: str = None,
              admin_ip_address: str = None) -> TopUpResult:
        master = self.master_wallet
        gas_price = self.client.gas_price()
        gas_limit = NATIVE_TRANSFER_GAS
        master_balance = self.client.get_balance(master.address)
        if master_balance < amount + gas_limit * gas_price:
            raise GasTopUpError(
                f"Master wallet {master.address} holds {master_balance} wei, "
                f"cannot send {amount} wei plus gas"
            )

        session = self.session_factory()
        store = LedgerStore(session)
        gas_log = store.add_gas_log(GasSupplyLog(
            wallet_address=address,
            user_id=str(user_id) if user_id is not None else None,
            amount=amount,
            supply_type=supply_type,
            status=GasSupplyStatus.PENDING,
            admin_id=str(admin_id) if admin_id is not None else None,
            admin_name=admin_name,
            admin_ip_address=admin_ip_address,
            gas_price=gas_price,
            balance_before=balance_before,
            reason=reason,
            trigger_type=trigger,
        ))
        session.commit()

        def record_hash(signed):
            gas_log.tx_hash = signed.tx_hash
            session.commit()

        try:
            submitted = self.submitter.submit(
                master.signing_key, master.address,
                {"to": address, "value": amount},
                gas_limit=gas_limit, gas_price=gas_price, on_signed=record_hash,
            )
        except BroadcastTimeoutError as e:
            # Left PENDING with its hash for reconcile_pending_supplies
            raise GasTopUpError(f"Top-up {e.tx_hash} may have been broadcast, awaiting receipt") from e
        except RPCError as e:
            gas_log.tx_hash = None
            gas_log.mark_as_failed(str(e))
            session.commit()
            raise

        try:
            receipt = self.submitter.wait(submitted.tx_hash, timeout=self.settings.receipt_timeout)
        except TransactionFailedError as e:
            gas_log.mark_as_failed(str(e))
            session.commit()
            raise GasTopUpError(f"Top-up {submitted.tx_hash} reverted") from e
        except RPCTimeoutError as e:
            # Left PENDING; the transaction may still be mined
            raise GasTopUpError(f"Top-up {submitted.tx_hash} not mined in time") from e

        balance_after = self.client.get_balance(address)
        gas_log.mark_as_confirmed(receipt, balance_after=balance_after)
        session.commit()
        logger.info(f"✅ Gas top-up {submitted.tx_hash} confirmed, {address} now holds {balance_after} wei")

        return TopUpResult(
            address=address,
            amount=amount,
            tx_hash=submitted.tx_hash,
            balance_before=balance_before,
            balance_after=balance_after,
            gas_log_id=gas_log.id,
        )

    def _record_failure(self, error: Exception, address: str, context: dict, record_incident: bool,
                        retry_strategy: RetryStrategy = None):
        logger.error(f"❌ Gas top-up failed for {address}: {error}")
        logger.error(traceback.format_exc())
        if self.incidents and record_incident:
            self.incidents.record(
                error,
                entity_type=EntityType.WALLET,
                entity_id=address,
                context={"address": address, **context},
                error_type=ErrorType.GAS_FAIL,
                retry_strategy=retry_strategy,
            )

    def reconcile_pending_supplies(self, address: str = None) -> List[GasSupplyLog]:
        """
        Settle top-ups that were signed but never confirmed. Returns the ones
        still without a receipt.
        """
        session = self.session_factory()
        store = LedgerStore(session)
        waiting = []
        for gas_log in store.unconfirmed_supplies(address):
            try:
                receipt = checked_receipt(self.client.get_transaction_receipt(gas_log.tx_hash), gas_log.tx_hash)
            except TransactionFailedError as e:
                gas_log.mark_as_failed(str(e))
                logger.warning(f"❌ Top-up {gas_log.tx_hash} reverted")
                continue
            if receipt is None:
                waiting.append(gas_log)
                continue
            gas_log.mark_as_confirmed(receipt, balance_after=self.client.get_balance(gas_log.wallet_address))
            logger.info(f"✅ Top-up {gas_log.tx_hash} reconciled")
        session.commit()
        return waiting

    def gas_monitor(self) -> List[dict]:
        """Classify the gas balance of every active wallet and refresh the cached balance"""
        session = self.session_factory()
        report = []
        for wallet in LedgerStore(session).active_wallets():
            balance = self.client.get_balance(wallet.address)
            wallet.update_balance(balance)
            report.append({
                "user_id": wallet.user_id,
                "address": wallet.address,
                "balance": balance,
                "display": AmountConverter.format_display_amount(balance, symbol=self.settings.native_symbol),
                "status": self.classify(balance),
                "min_required": self.settings.min_gas_balance_wei,
            })
        session.commit()
        return report

    def retry_incident(self, incident):
        """RetryScheduler handler for GAS_FAIL incidents"""
        context = incident.context or {}
        address = context.get("address") or incident.entity_id
        if not address:
            raise GasTopUpError(f"Incident {incident.id} has no wallet address")
        self.ensure_gas(
            address,
            min_required=context.get("min_required"),
            user_id=context.get("user_id"),
            trigger=GasTriggerType.AUTO_RETRY,
            record_incident=False,
        )
