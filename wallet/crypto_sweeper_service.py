#!/usr/bin/env python3
"""
Crypto Sweeper Service
Sweeps confirmed deposits from user wallets to the master wallet
"""

import traceback
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from db.incidents import EntityType
from db.ledger import Sweep, SweepStatus
from db.store import LedgerStore
from shared.crypto.tokens import TokenType
from shared.currency_precision import AmountConverter
from shared.exceptions import (
    BroadcastTimeoutError,
    ErrorType,
    GasTopUpError,
    InsufficientBalanceForGas,
    RPCError,
    RPCTimeoutError,
    SweepError,
    SweeperError,
    SweepSkipped,
    TransactionFailedError,
    WalletError,
)
from shared.logger import setup_logging
from wallet.gas_topup_service import TopUpResult
from wallet.tx_submitter import checked_receipt

# Configure logging
logger = setup_logging(__name__)


@dataclass
class SweepResult:
    """Result of a sweep operation"""
    success: bool
    user_id: str
    asset_key: str
    symbol: str
    from_address: str
    to_address: str
    amount: int
    gas_cost: int
    tx_hash: Optional[str] = None
    sweep_id: Optional[int] = None
    swept_deposit_ids: List[int] = field(default_factory=list)
    top_up: Optional[TopUpResult] = None
    error: Optional[str] = None


class SweepEngine:
    """Moves user wallet balances to the master wallet"""

    def __init__(self, session_factory, client, submitter, key_derivation, master_wallet, settings,
                 tokens: Iterable = (), gas_engine=None, incidents=None):
        self.session_factory = session_factory
        self.client = client
        self.submitter = submitter
        self.key_derivation = key_derivation
        self.master_wallet = master_wallet
        self.settings = settings
        self.tokens: Dict[str, object] = {token.key: token for token in tokens}
        self.gas_engine = gas_engine
        self.incidents = incidents

    def sweep(self, user_wallet, token, master_address: str = None) -> SweepResult:
        """
        Sweep the full balance of ``token`` from ``user_wallet``.

        Native sweeps send ``balance - gas_limit * gas_price``; token sweeps
        send the whole token balance and pay gas from the wallet's native
        balance. Raises SweepSkipped during the cooldown or with nothing to
        sweep, InsufficientBalanceForGas before anything is broadcast, and
        SweepError when the transaction is rejected or reverts.
        """
        master_address = (master_address or self.master_wallet.address).lower()
        address = user_wallet.address.lower()
        user_id = user_wallet.user_id
        session = self.session_factory()
        store = LedgerStore(session)

        if store.recent_sweep_exists(user_id, token.key, self.settings.sweep_cooldown_seconds):
            raise SweepSkipped(f"{token.symbol} of user {user_id} was swept in the last "
                               f"{self.settings.sweep_cooldown_seconds}s")

        balance = token.balance_of(self.client, address)
        if balance <= 0:
            raise SweepSkipped(f"{address} holds no {token.symbol}")

        gas_price = self.client.gas_price()
        gas_limit = token.estimate_gas(self.client, address, master_address, balance)
        gas_cost = gas_limit * gas_price

        if token.token_type == TokenType.NATIVE:
            sweep_amount = balance - gas_cost
            if sweep_amount <= 0:
                raise InsufficientBalanceForGas(address, balance, gas_cost)
        else:
            native_balance = self.client.get_balance(address)
            if native_balance < gas_cost:
                raise InsufficientBalanceForGas(address, native_balance, gas_cost)
            sweep_amount = balance

        private_key = self.key_derivation.signing_key_for(user_id, address, user_wallet.encrypted_private_key)

        sweep = store.add_sweep(Sweep(
            user_id=user_id,
            from_address=address,
            to_address=master_address,
            amount=sweep_amount,
            decimals=token.decimals,
            token_type=token.token_type,
            token_contract=token.contract_address,
            token_symbol=token.symbol,
            asset_key=token.key,
            gas_limit=gas_limit,
            gas_price=gas_price,
            gas_cost=gas_cost,
            status=SweepStatus.PENDING,
            related_deposits=[],
        ))
        session.commit()

        logger.info(
            f"🧹 Sweeping {AmountConverter.format_display_amount(sweep_amount, token.decimals, token.symbol)} "
            f"from {address} to {master_address} (gas {gas_limit} @ {gas_price} wei)"
        )

        def record_hash(signed):
            sweep.tx_hash = signed.tx_hash
            sweep.nonce = signed.nonce
            session.commit()

        try:
            submitted = self.submitter.submit(
                private_key, address, token.build_transfer(master_address, sweep_amount),
                gas_limit=gas_limit, gas_price=gas_price, on_signed=record_hash,
            )
        except BroadcastTimeoutError as e:
            sweep.mark_as_processing(e.tx_hash, e.nonce)
            session.commit()
            logger.warning(f"⏳ Sweep {e.tx_hash} may have been broadcast, left for reconciliation")
            return self._awaiting_receipt(sweep, token, gas_cost)
        except RPCError as e:
            # Rejected by the node, so the signed hash never reached the chain
            sweep.tx_hash = None
            sweep.mark_as_failed(str(e))
            session.commit()
            raise SweepError(f"Broadcast of sweep {sweep.id} failed: {e}") from e

        sweep.mark_as_processing(submitted.tx_hash, submitted.nonce)
        session.commit()

        try:
            receipt = self.submitter.wait(submitted.tx_hash, timeout=self.settings.receipt_timeout)
        except TransactionFailedError as e:
            sweep.mark_as_failed(str(e))
            session.commit()
            raise SweepError(f"Sweep {submitted.tx_hash} reverted") from e
        except RPCTimeoutError as e:
            logger.warning(f"⏳ Sweep {submitted.tx_hash} not mined yet, left for reconciliation: {e}")
            return self._awaiting_receipt(sweep, token, gas_cost)

        swept_ids = self._complete(store, sweep, receipt)
        session.commit()
        logger.info(f"✅ Sweep {submitted.tx_hash} completed, {len(swept_ids)} deposit(s) marked swept")

        return SweepResult(
            success=True, user_id=user_id, asset_key=token.key, symbol=token.symbol,
            from_address=address, to_address=master_address, amount=sweep_amount,
            gas_cost=sweep.gas_cost or gas_cost, tx_hash=submitted.tx_hash, sweep_id=sweep.id,
            swept_deposit_ids=swept_ids,
        )

    @staticmethod
    def _awaiting_receipt(sweep: Sweep, token, gas_cost: int) -> SweepResult:
        return SweepResult(
            success=False, user_id=sweep.user_id, asset_key=token.key, symbol=token.symbol,
            from_address=sweep.from_address, to_address=sweep.to_address, amount=sweep.amount,
            gas_cost=gas_cost, tx_hash=sweep.tx_hash, sweep_id=sweep.id,
            error="awaiting receipt",
        )

    def _complete(self, store: LedgerStore, sweep: Sweep, receipt: dict) -> List[int]:
        sweep.mark_as_completed(receipt)
        swept_ids = store.mark_deposits_swept(
            sweep.user_id, sweep.asset_key, sweep.tx_hash, self.settings.confirmation_threshold
        )
        sweep.link_deposits(swept_ids)
        return swept_ids

    def run_pipeline(self, user_wallet, token) -> SweepResult:
        """
        Gas check, sweep, and one top-up-and-retry when the wallet cannot pay
        for the sweep's gas. Errors propagate to the caller.
        """
        top_up = None
        if token.token_type == TokenType.TOKEN:
            if self.gas_engine is None:
                raise SweepError("Token sweeps need a gas top-up engine")
            # Do not fund gas for a sweep that would be skipped anyway
            store = LedgerStore(self.session_factory())
            if store.recent_sweep_exists(user_wallet.user_id, token.key, self.settings.sweep_cooldown_seconds):
                raise SweepSkipped(f"{token.symbol} of user {user_wallet.user_id} is in its sweep cooldown")
            if token.balance_of(self.client, user_wallet.address) <= 0:
                raise SweepSkipped(f"{user_wallet.address} holds no {token.symbol}")
            outcome = self.gas_engine.ensure_gas(user_wallet.address, user_id=user_wallet.user_id)
            if isinstance(outcome, TopUpResult):
                top_up = outcome

        try:
            result = self.sweep(user_wallet, token)
        except InsufficientBalanceForGas as e:
            if token.token_type == TokenType.NATIVE or self.gas_engine is None:
                # Native dust that cannot pay for its own transfer stays put
                raise SweepSkipped(str(e)) from e
            logger.info(f"⛽ {e}; topping up and retrying once")
            top_up = self.gas_engine.ensure_gas(
                user_wallet.address, min_required=e.gas_cost, user_id=user_wallet.user_id,
                reason=f"Sweep of {token.symbol} needs {e.gas_cost} wei of gas",
            )
            result = self.sweep(user_wallet, token)

        if isinstance(top_up, TopUpResult):
            result.top_up = top_up
        return result

    def auto_sweep(self, user_wallet, token) -> Optional[SweepResult]:
        """Run the sweep pipeline, turning failures into incidents"""
        try:
            return self.run_pipeline(user_wallet, token)
        except SweepSkipped as e:
            logger.info(f"⏭️ Sweep skipped: {e}")
        except GasTopUpError as e:
            # The gas engine has already recorded the incident
            logger.error(f"❌ Sweep of {token.symbol} for user {user_wallet.user_id} blocked on gas: {e}")
            self._note_attempt(user_wallet.user_id, token.key, str(e))
        except WalletError as e:
            logger.error(f"❌ Wallet error for user {user_wallet.user_id}: {e}")
            self._record(e, user_wallet, token, ErrorType.WALLET_ERROR)
        except SweeperError as e:
            logger.error(f"❌ Sweep of {token.symbol} for user {user_wallet.user_id} failed: {e}")
            logger.error(traceback.format_exc())
            self._note_attempt(user_wallet.user_id, token.key, str(e))
            self._record(e, user_wallet, token, ErrorType.SWEEP_FAIL)
        return None

    def _note_attempt(self, user_id, asset_key: str, error: str):
        session = self.session_factory()
        store = LedgerStore(session)
        for deposit in store.sweepable_deposits(user_id, asset_key, self.settings.confirmation_threshold):
            deposit.add_processing_attempt(error)
        session.commit()

    def _record(self, error: Exception, user_wallet, token, error_type: ErrorType):
        if not self.incidents:
            return
        self.incidents.record(
            error,
            entity_type=EntityType.WALLET,
            entity_id=user_wallet.address,
            context={"user_id": user_wallet.user_id, "address": user_wallet.address, "asset_key": token.key},
            error_type=error_type,
        )

    def reconcile_processing_sweeps(self) -> int:
        """Finalise sweeps whose receipt was not available when they were broadcast"""
        session = self.session_factory()
        store = LedgerStore(session)
        finalised = 0
        for sweep in store.processing_sweeps():
            try:
                receipt = checked_receipt(self.client.get_transaction_receipt(sweep.tx_hash), sweep.tx_hash)
            except TransactionFailedError as e:
                sweep.mark_as_failed(str(e))
                finalised += 1
                logger.warning(f"❌ Sweep {sweep.tx_hash} reverted")
                continue
            if receipt is None:
                continue
            swept_ids = self._complete(store, sweep, receipt)
            finalised += 1
            logger.info(f"✅ Sweep {sweep.tx_hash} reconciled, {len(swept_ids)} deposit(s) marked swept")
        session.commit()
        return finalised

    def retry_incident(self, incident):
        """RetryScheduler handler for SWEEP_FAIL incidents"""
        context = incident.context or {}
        session = self.session_factory()
        store = LedgerStore(session)
        user_wallet = store.get_wallet_by_user(context.get("user_id")) if context.get("user_id") else None
        if user_wallet is None:
            raise SweepError(f"Incident {incident.id} does not name a known wallet")
        token = self.tokens.get(context.get("asset_key"))
        if token is None:
            raise SweepError(f"Incident {incident.id} names unknown asset {context.get('asset_key')}")
        try:
            self.run_pipeline(user_wallet, token)
        except SweepSkipped as e:
            logger.info(f"⏭️ Nothing left to retry for incident {incident.id}: {e}")
