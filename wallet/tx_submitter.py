"""
Transaction submitter.

Every outgoing transaction (sweeps from user wallets, gas top-ups from the
master wallet) is signed and broadcast here. Submissions from the same
address are serialized behind one lock so two workers never pick the same
nonce.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from eth_account import Account
from eth_utils import keccak, to_checksum_address, to_hex

from shared.exceptions import BroadcastTimeoutError, RPCError, RPCTimeoutError, TransactionFailedError
from shared.logger import setup_logging

logger = setup_logging(__name__)

_NONCE_ERROR_MARKERS = ("nonce too low", "nonce too high", "invalid nonce", "replacement transaction underpriced")
_KNOWN_TX_MARKERS = ("already known", "known transaction")


@dataclass
class SubmittedTransaction:
    tx_hash: str
    nonce: int
    from_address: str
    to: str
    value: int
    gas_limit: int
    gas_price: int


def is_nonce_error(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _NONCE_ERROR_MARKERS)


def is_known_transaction(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _KNOWN_TX_MARKERS)


class TransactionSubmitter:
    """
    Signs with eth_account and broadcasts through the RPC client, one nonce
    sequence per address.

    The locally tracked nonce covers a node whose pending count lags behind
    a fresh broadcast. Once ``stale_after`` seconds pass without the node
    catching up, the last transaction is assumed dropped and the node's
    count is used again, so one lost transaction cannot leave a permanent
    nonce gap.
    """

    def __init__(self, client, chain_id: int, stale_after: float = 120):
        self.client = client
        self.chain_id = chain_id
        self.stale_after = stale_after
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._last_nonce: Dict[str, int] = {}
        self._sent_at: Dict[str, float] = {}

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(address, threading.Lock())

    def _next_nonce(self, address: str) -> int:
        pending = self.client.get_transaction_count(address, "pending")
        last = self._last_nonce.get(address)
        if last is None or pending > last:
            return pending
        age = time.monotonic() - self._sent_at.get(address, 0)
        if age >= self.stale_after:
            logger.warning(
                f"⚠️ Node still reports nonce {pending} for {address} {age:.0f}s after nonce {last} "
                f"was sent; assuming it was dropped"
            )
            self.reset_nonce(address)
            return pending
        return last + 1

    def _mark_sent(self, address: str, nonce: int):
        self._last_nonce[address] = nonce
        self._sent_at[address] = time.monotonic()

    def reset_nonce(self, address: str):
        self._last_nonce.pop(address.lower(), None)
        self._sent_at.pop(address.lower(), None)

    def submit(self, private_key: str, from_address: str, tx: dict, gas_limit: int, gas_price: int,
               on_signed: Callable[[SubmittedTransaction], None] = None) -> SubmittedTransaction:
        """
        Sign and broadcast ``tx`` ({to, value[, data]}) from ``from_address``.

        The hash is known once the transaction is signed; ``on_signed`` gets
        it before anything is sent so the caller can persist it first.
        Raises RPCError if the node rejects the transaction (a nonce
        rejection also drops the cached nonce) and BroadcastTimeoutError
        when the broadcast times out and may still have gone through.
        """
        address = from_address.lower()
        with self._lock_for(address):
            nonce = self._next_nonce(address)
            transaction = {
                "to": tx["to"],
                "value": int(tx.get("value", 0)),
                "gas": int(gas_limit),
                "gasPrice": int(gas_price),
                "nonce": nonce,
                "chainId": self.chain_id,
            }
            if tx.get("data") and tx["data"] != "0x":
                transaction["data"] = tx["data"]

            signed = Account.sign_transaction(transaction, private_key)
            submitted = SubmittedTransaction(
                tx_hash=to_hex(keccak(signed.raw_transaction)),
                nonce=nonce,
                from_address=address,
                to=to_checksum_address(tx["to"]),
                value=transaction["value"],
                gas_limit=int(gas_limit),
                gas_price=int(gas_price),
            )
            if on_signed is not None:
                on_signed(submitted)

            try:
                self.client.send_raw_transaction(to_hex(signed.raw_transaction))
            except RPCTimeoutError as e:
                self._mark_sent(address, nonce)
                logger.warning(f"⏳ Broadcast of {submitted.tx_hash} timed out, it may still be mined: {e}")
                raise BroadcastTimeoutError(submitted.tx_hash, nonce, str(e)) from e
            except RPCError as e:
                if not self._already_sent(submitted, e):
                    if is_nonce_error(e):
                        logger.warning(f"⚠️ Nonce {nonce} rejected for {address}, resetting: {e}")
                        self.reset_nonce(address)
                    raise

            self._mark_sent(address, nonce)
            logger.info(f"📤 Broadcast {submitted.tx_hash} from {address} "
                        f"(nonce {nonce}, gas {gas_limit} @ {gas_price} wei)")
            return submitted

    def _already_sent(self, submitted: SubmittedTransaction, error: RPCError) -> bool:
        """A resent broadcast is rejected once the first copy reached the node"""
        if is_known_transaction(error):
            return True
        if is_nonce_error(error):
            return self.client.get_transaction_receipt(submitted.tx_hash) is not None
        return False

    def wait(self, tx_hash: str, timeout: int) -> dict:
        """Wait for the receipt; raises TransactionFailedError if it reverted"""
        receipt = self.client.wait_for_receipt(tx_hash, timeout=timeout)
        if receipt.get("status") != 1:
            raise TransactionFailedError(tx_hash, "transaction reverted on chain")
        return receipt


def checked_receipt(receipt: Optional[dict], tx_hash: str) -> Optional[dict]:
    """None while unmined; raises TransactionFailedError for a reverted receipt"""
    if receipt is None:
        return None
    if receipt.get("status") != 1:
        raise TransactionFailedError(tx_hash, "transaction reverted on chain")
    return receipt
