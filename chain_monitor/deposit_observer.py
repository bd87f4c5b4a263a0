#!/usr/bin/env python3
"""
Deposit Observer
Polls the chain for new blocks, records deposits into user wallets, tracks
their confirmations and hands confirmed funds to the sweep pipeline.

Threads: a block poller feeding a queue, a single consumer processing blocks
in order, and a backup scan that checks wallet balances directly. Sweeps run
on a small executor so a slow sweep never holds up block processing.
"""

import queue
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from db.incidents import EntityType, RetryStrategy
from db.ledger import Deposit, DepositStatus
from db.store import LedgerStore
from db.wallet import UserWallet
from chain_monitor.dedup_cache import DedupCache
from shared.crypto.tokens import NATIVE_ASSET_KEY, TRANSFER_EVENT_TOPIC, TokenType, decode_transfer_log
from shared.currency_precision import AmountConverter
from shared.exceptions import ErrorType, RPCError, SweeperError
from shared.logger import setup_logging

logger = setup_logging(__name__)

SCAN_CURSOR = "deposit_observer"


@dataclass(frozen=True)
class WalletSnapshot:
    """The fields a sweep needs, detached from any session"""
    user_id: str
    address: str
    encrypted_private_key: str

    @classmethod
    def of(cls, wallet: UserWallet) -> 'WalletSnapshot':
        return cls(
            user_id=wallet.user_id,
            address=wallet.address,
            encrypted_private_key=wallet.encrypted_private_key,
        )


class ChainObserver:

    def __init__(self, session_factory, client, settings, sweep_engine, tokens: Iterable,
                 incidents=None, dedup_cache: DedupCache = None,
                 sweep_scheduler: Callable = None, stop_event: threading.Event = None):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings
        self.sweep_engine = sweep_engine
        self.incidents = incidents
        self.dedup_cache = dedup_cache or DedupCache(settings.dedup_cache_size)
        self.stop_event = stop_event or threading.Event()

        self.tokens = {token.key: token for token in tokens}
        self.native = self.tokens.get(NATIVE_ASSET_KEY)
        self.fungible = {key: token for key, token in self.tokens.items() if token.token_type == TokenType.TOKEN}

        self._executor: Optional[ThreadPoolExecutor] = None
        if sweep_scheduler is None:
            self._executor = ThreadPoolExecutor(max_workers=settings.sweep_workers, thread_name_prefix="sweep")
            sweep_scheduler = self._executor.submit
        self.sweep_scheduler = sweep_scheduler

        self.block_queue: "queue.Queue[int]" = queue.Queue()
        self.next_block: Optional[int] = None
        self.last_processed_block: Optional[int] = None
        self.is_running = False
        self._threads: List[threading.Thread] = []
        self._inflight = set()
        self._inflight_lock = threading.Lock()

    # ===== Block processing =====

    def on_new_block(self, block_number: int) -> bool:
        """Process one block; an RPC failure is recorded and the block skipped"""
        processed = True
        try:
            self.process_block(block_number)
        except SweeperError as e:
            logger.error(f"❌ Block {block_number} skipped: {e}")
            self._record(e, EntityType.BLOCK, block_number, {"block_number": block_number})
            processed = False

        if self.last_processed_block is None or block_number > self.last_processed_block:
            self.last_processed_block = block_number
        # A skipped block is re-processed through its incident
        session = self.session_factory()
        LedgerStore(session).advance_cursor(SCAN_CURSOR, block_number)
        session.commit()
        return processed

    def resume_block(self) -> Optional[int]:
        """
        First block to scan after a restart: the one after the saved cursor,
        else the block of the newest recorded deposit. None when nothing is
        stored, in which case scanning starts at the chain head.
        """
        store = LedgerStore(self.session_factory())
        cursor = store.get_cursor(SCAN_CURSOR)
        if cursor is not None:
            return cursor + 1
        return store.highest_deposit_block()

    def process_block(self, block_number: int, strict: bool = False):
        """
        Record deposits found in ``block_number`` and refresh pending ones.
        With ``strict`` a failing transaction aborts the block instead of
        being recorded and skipped.
        """
        block = self.client.get_block(block_number, include_tx=True)
        if block is None:
            raise RPCError("eth_getBlockByNumber", f"block {block_number} not available")

        session = self.session_factory()
        wallets = LedgerStore(session).wallets_by_address()

        for tx in block["transactions"]:
            if not tx.get("to") and not tx.get("value"):
                continue
            wallet = wallets.get(tx.get("to") or "")
            if wallet is None or not tx.get("value"):
                continue
            self._guarded(self.process_transaction, strict, block_number, tx["hash"], tx, wallet)

        if self.fungible:
            logs = self.client.get_logs(
                block_number, block_number,
                address=list(self.fungible.keys()),
                topics=[TRANSFER_EVENT_TOPIC],
            )
            for log in logs:
                self._guarded(self.on_token_transfer, strict, block_number, log.get("transaction_hash"),
                              log, wallets)

        self.update_pending_deposits()

    def _guarded(self, handler, strict: bool, block_number: int, tx_hash: str, *args):
        try:
            handler(*args)
        except SweeperError as e:
            if strict:
                raise
            logger.error(f"❌ Transaction {tx_hash} in block {block_number} skipped: {e}")
            self._record(e, EntityType.TRANSACTION, tx_hash, {"block_number": block_number, "tx_hash": tx_hash})

    def process_transaction(self, tx: Dict, wallet: UserWallet) -> Optional[Deposit]:
        """Record a native transfer into ``wallet``"""
        if self.native is None:
            return None
        return self._record_deposit(
            wallet, self.native,
            tx_hash=tx["hash"],
            from_address=tx.get("from") or "",
            amount=tx["value"],
        )

    def on_token_transfer(self, log: Dict, wallets: Dict[str, UserWallet] = None) -> Optional[Deposit]:
        """Record a Transfer event of a configured token into a user wallet"""
        transfer = decode_transfer_log(log)
        if transfer is None or transfer["value"] <= 0:
            return None
        token = self.fungible.get(transfer["contract"])
        if token is None:
            return None
        if wallets is None:
            wallet = LedgerStore(self.session_factory()).get_wallet_by_address(transfer["to"])
        else:
            wallet = wallets.get(transfer["to"])
        if wallet is None:
            return None
        return self._record_deposit(
            wallet, token,
            tx_hash=transfer["transaction_hash"],
            from_address=transfer["from"],
            amount=transfer["value"],
        )

    def _record_deposit(self, wallet: UserWallet, token, tx_hash: str, from_address: str,
                        amount: int) -> Optional[Deposit]:
        key = (tx_hash, token.key)
        if self.dedup_cache.seen(key):
            return None

        session = self.session_factory()
        store = LedgerStore(session)
        if store.deposit_exists(tx_hash, token.key):
            self.dedup_cache.add(key)
            return None

        receipt = self.client.get_transaction_receipt(tx_hash)
        if receipt is None:
            raise RPCError("eth_getTransactionReceipt", f"no receipt yet for {tx_hash}")
        head = self.client.get_block_number()
        confirmations = max(0, head - receipt["block_number"])

        deposit = store.create_deposit(
            user_id=wallet.user_id,
            tx_hash=tx_hash,
            from_address=from_address.lower(),
            to_address=wallet.address,
            amount=amount,
            decimals=token.decimals,
            token_type=token.token_type,
            token_contract=token.contract_address,
            token_symbol=token.symbol,
            asset_key=token.key,
            block_number=receipt["block_number"],
            confirmations=0,
            status=DepositStatus.PENDING,
        )
        if deposit is None:
            self.dedup_cache.add(key)
            return None

        confirmed = False
        if receipt.get("status") != 1:
            deposit.mark_as_failed("transaction failed on chain")
        else:
            confirmed = deposit.update_confirmations(confirmations, self.settings.confirmation_threshold)
        session.commit()
        self.dedup_cache.add(key)

        logger.info(
            f"💰 Deposit {tx_hash}: {AmountConverter.format_display_amount(amount, token.decimals, token.symbol)} "
            f"to {wallet.address} (user {wallet.user_id}), {confirmations} confirmation(s), {deposit.status.value}"
        )
        if confirmed:
            self._schedule_sweep(WalletSnapshot.of(wallet), token)
        return deposit

    def update_pending_deposits(self) -> List[Deposit]:
        """Re-derive confirmations of pending deposits from a fresh head; returns those newly confirmed"""
        session = self.session_factory()
        store = LedgerStore(session)
        pending = store.pending_deposits()
        if not pending:
            return []

        head = self.client.get_block_number()
        threshold = self.settings.confirmation_threshold
        newly_confirmed = []
        for deposit in pending:
            try:
                receipt = self.client.get_transaction_receipt(deposit.tx_hash)
            except RPCError as e:
                logger.warning(f"⚠️ Could not re-check deposit {deposit.tx_hash}: {e}")
                continue

            if receipt is None:
                deposit.mark_as_reverted()
                logger.warning(f"↩️ Deposit {deposit.tx_hash} lost its receipt, marked reverted")
            elif receipt.get("status") != 1:
                deposit.mark_as_failed("transaction failed on chain")
            else:
                deposit.block_number = receipt["block_number"]
                if deposit.update_confirmations(head - receipt["block_number"], threshold):
                    newly_confirmed.append(deposit)
        session.commit()

        for deposit in newly_confirmed:
            logger.info(f"✅ Deposit {deposit.tx_hash} confirmed with {deposit.confirmations} confirmations")
            wallet = store.get_wallet_by_user(deposit.user_id)
            token = self.tokens.get(deposit.asset_key)
            if wallet is not None and token is not None:
                self._schedule_sweep(WalletSnapshot.of(wallet), token)
        return newly_confirmed

    # ===== Backup scan =====

    def backup_scan(self) -> int:
        """Check every wallet's balances directly; returns the number of sweeps scheduled"""
        session = self.session_factory()
        store = LedgerStore(session)
        scheduled = 0

        for wallet in store.active_wallets():
            try:
                native_balance = self.client.get_balance(wallet.address)
                wallet.update_balance(native_balance)

                candidates = []
                if self.native is not None and native_balance >= self.settings.min_native_sweep_wei:
                    candidates.append(self.native)
                for token in self.fungible.values():
                    minimum = AmountConverter.to_smallest_units(self.settings.min_token_sweep_units, token.decimals)
                    if token.balance_of(self.client, wallet.address) >= minimum:
                        candidates.append(token)
            except SweeperError as e:
                logger.error(f"❌ Backup scan of {wallet.address} failed: {e}")
                self._record(e, EntityType.WALLET, wallet.address, {"address": wallet.address},
                             retry_strategy=RetryStrategy.NO_RETRY)
                continue

            for token in candidates:
                if store.recent_sweep_exists(wallet.user_id, token.key, self.settings.sweep_cooldown_seconds):
                    continue
                logger.info(f"🔎 Backup scan found {token.symbol} in {wallet.address}")
                if self._schedule_sweep(WalletSnapshot.of(wallet), token):
                    scheduled += 1

        session.commit()
        return scheduled

    # ===== Sweep hand-off =====

    def _schedule_sweep(self, wallet: WalletSnapshot, token) -> bool:
        key = (wallet.user_id, token.key)
        with self._inflight_lock:
            if key in self._inflight:
                return False
            self._inflight.add(key)

        def run():
            try:
                self.sweep_engine.auto_sweep(wallet, token)
            except Exception as e:
                logger.error(f"❌ Sweep worker for {wallet.address} crashed: {e}")
                logger.error(traceback.format_exc())
            finally:
                with self._inflight_lock:
                    self._inflight.discard(key)
                self._remove_session()

        self.sweep_scheduler(run)
        return True

    # ===== Incidents =====

    def _record(self, error: Exception, entity_type: EntityType, entity_id, context: dict,
                retry_strategy: RetryStrategy = None):
        if not self.incidents:
            return
        self.incidents.record(
            error,
            entity_type=entity_type,
            entity_id=entity_id,
            context=context,
            error_type=ErrorType.RPC_ERROR,
            retry_strategy=retry_strategy,
        )

    def retry_incident(self, incident):
        """RetryScheduler handler for RPC_ERROR incidents: re-process the block"""
        block_number = (incident.context or {}).get("block_number")
        if block_number is None:
            raise RPCError("retry", f"incident {incident.id} has no block to re-process")
        logger.info(f"🔁 Re-processing block {block_number} for incident {incident.id}")
        self.process_block(int(block_number), strict=True)

    # ===== Threads =====

    def _remove_session(self):
        remove = getattr(self.session_factory, "remove", None)
        if remove:
            remove()

    def _poll_blocks(self):
        logger.info("📡 Block poller started")
        while not self.stop_event.is_set():
            try:
                head = self.client.get_block_number()
                if self.next_block is None:
                    resume = self.resume_block()
                    self._remove_session()
                    self.next_block = head if resume is None else min(resume, head + 1)
                    logger.info(f"📍 Scanning from block {self.next_block} (head {head})")
                queued = 0
                while self.next_block <= head and queued < self.settings.max_blocks_per_poll:
                    self.block_queue.put(self.next_block)
                    self.next_block += 1
                    queued += 1
            except SweeperError as e:
                logger.error(f"❌ Could not read chain head: {e}")
            self.stop_event.wait(self.settings.block_poll_interval)
        logger.info("🛑 Block poller stopped")

    def _consume_blocks(self):
        logger.info("⚙️ Block consumer started")
        while not self.stop_event.is_set():
            try:
                block_number = self.block_queue.get(timeout=1)
            except queue.Empty:
                continue
            try:
                self.on_new_block(block_number)
            except Exception as e:
                logger.error(f"❌ Unexpected error on block {block_number}: {e}")
                logger.error(traceback.format_exc())
            finally:
                self._remove_session()
                self.block_queue.task_done()
        logger.info("🛑 Block consumer stopped")

    def _backup_loop(self):
        logger.info(f"🔎 Backup scan every {self.settings.backup_scan_interval}s")
        while not self.stop_event.wait(self.settings.backup_scan_interval):
            try:
                self.backup_scan()
                self.sweep_engine.reconcile_processing_sweeps()
                if self.sweep_engine.gas_engine is not None:
                    self.sweep_engine.gas_engine.reconcile_pending_supplies()
            except Exception as e:
                logger.error(f"❌ Backup scan failed: {e}")
                logger.error(traceback.format_exc())
            finally:
                self._remove_session()

    def start(self, start_block: int = None):
        if self.is_running:
            return
        if start_block is not None:
            self.next_block = start_block
        self.is_running = True
        for name, target in (("block-poller", self._poll_blocks),
                             ("block-consumer", self._consume_blocks),
                             ("backup-scan", self._backup_loop)):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("🚀 Chain observer started")

    def stop(self, timeout: float = None):
        """Stop the threads; in-flight RPC calls finish or time out first"""
        self.stop_event.set()
        timeout = timeout if timeout is not None else self.settings.rpc_timeout + 5
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self.is_running = False
        logger.info("🛑 Chain observer stopped")

    def get_status(self) -> dict:
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {
            "listening": self.is_running,
            "dedup_cache_size": len(self.dedup_cache),
            "last_processed_block": self.last_processed_block,
            "next_block": self.next_block,
            "queued_blocks": self.block_queue.qsize(),
            "inflight_sweeps": inflight,
            "tokens": [token.symbol for token in self.tokens.values()],
        }
