"""
Error taxonomy for the deposit / sweep pipeline.

Every exception carries the ``ErrorType`` under which it is persisted as a
SystemIncident, so callers can record failures without re-classifying them.
"""

import enum
from typing import Optional


class ErrorType(enum.Enum):
    RPC_ERROR = "RPC_ERROR"
    TX_FAIL = "TX_FAIL"
    SWEEP_FAIL = "SWEEP_FAIL"
    GAS_FAIL = "GAS_FAIL"
    WALLET_ERROR = "WALLET_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


class SweeperError(Exception):
    error_type = ErrorType.VALIDATION_ERROR
    # Whether the retry scheduler may replay the failed operation
    retryable = True


class ConfigurationError(SweeperError):
    retryable = False


class ValidationError(SweeperError):
    """Rejected input, e.g. an unknown wallet or an out-of-range amount"""
    retryable = False


class RPCError(SweeperError):
    error_type = ErrorType.RPC_ERROR

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class RPCTimeoutError(RPCError):
    error_type = ErrorType.TIMEOUT_ERROR


class BroadcastTimeoutError(RPCTimeoutError):
    """
    ``eth_sendRawTransaction`` timed out. The node may still have accepted
    the transaction, so its hash and nonce stay on the ledger row.
    """

    def __init__(self, tx_hash: str, nonce: int, message: str):
        super().__init__("eth_sendRawTransaction", f"{tx_hash} unconfirmed: {message}")
        self.tx_hash = tx_hash
        self.nonce = nonce


class TransactionFailedError(SweeperError):
    error_type = ErrorType.TX_FAIL

    def __init__(self, tx_hash: str, message: str = "transaction reverted"):
        super().__init__(f"{tx_hash}: {message}")
        self.tx_hash = tx_hash


class WalletError(SweeperError):
    """Key derivation or key material mismatch. Never retried blindly."""
    error_type = ErrorType.WALLET_ERROR
    retryable = False


class DecryptionError(WalletError):
    pass


class SweepError(SweeperError):
    error_type = ErrorType.SWEEP_FAIL


class InsufficientBalanceForGas(SweepError):
    """Balance cannot cover the sweep's gas. Triggers a gas top-up."""

    def __init__(self, address: str, balance: int, gas_cost: int):
        super().__init__(
            f"{address} holds {balance} wei, sweep needs {gas_cost} wei of gas"
        )
        self.address = address
        self.balance = balance
        self.gas_cost = gas_cost


class SweepSkipped(SweepError):
    """Cooldown or empty balance; not a failure."""


class GasTopUpError(SweeperError):
    error_type = ErrorType.GAS_FAIL
