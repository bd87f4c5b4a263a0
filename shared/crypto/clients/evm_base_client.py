import time
import logging
import itertools
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from shared.logger import setup_logging
from shared.exceptions import RPCError, RPCTimeoutError


@dataclass
class EVMConfig:
    """Configuration for EVM-compatible chains"""
    base_url: str
    network: str = "mainnet"
    timeout: int = 30
    chain_id: int = 56
    currency_symbol: str = "BNB"

    @classmethod
    def bnb_mainnet(cls, base_url: str = "https://bsc-dataseed1.binance.org/", timeout: int = 30) -> 'EVMConfig':
        return cls(
            base_url=base_url,
            network="mainnet",
            timeout=timeout,
            chain_id=56,
            currency_symbol="BNB"
        )

    @classmethod
    def bnb_testnet(cls, base_url: str = "https://data-seed-prebsc-1-s1.binance.org:8545/", timeout: int = 30) -> 'EVMConfig':
        return cls(
            base_url=base_url,
            network="testnet",
            timeout=timeout,
            chain_id=97,
            currency_symbol="BNB"
        )

    @classmethod
    def from_settings(cls, settings) -> 'EVMConfig':
        return cls(
            base_url=settings.rpc_url,
            network="mainnet" if settings.chain_id == 56 else "testnet",
            timeout=settings.rpc_timeout,
            chain_id=settings.chain_id,
            currency_symbol=settings.native_symbol
        )


def _to_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


class EVMRpcClient:
    """
    JSON-RPC client for an EVM chain. Every call is bounded by the configured
    timeout and raises RPCError / RPCTimeoutError instead of returning None.
    """

    def __init__(self, config: EVMConfig, logger: logging.Logger = None):
        self.config = config
        self.logger = logger or setup_logging(__name__)
        self._ids = itertools.count(1)

        # HTTP session for API requests
        self.session_request = requests.Session()
        self.session_request.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': f'{config.currency_symbol}DepositSweeper/1.0'
        })
        # Transport-level retries only; JSON-RPC errors are surfaced to the caller
        retry = Retry(total=2, backoff_factor=0.5, status_forcelist=[502, 503, 504],
                      allowed_methods=["POST"])
        self.session_request.mount("http://", HTTPAdapter(max_retries=retry))
        self.session_request.mount("https://", HTTPAdapter(max_retries=retry))

    def make_request(self, method: str, params: list = None) -> Any:
        """Make a JSON-RPC request and return its ``result``"""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or []
        }

        try:
            response = self.session_request.post(
                self.config.base_url,
                json=payload,
                timeout=self.config.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise RPCTimeoutError(method, f"timed out after {self.config.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise RPCError(method, str(e)) from e
        except ValueError as e:
            raise RPCError(method, f"invalid JSON response: {e}") from e

        if data.get("error"):
            error = data["error"]
            raise RPCError(method, error.get("message", "Unknown error"), code=error.get("code"))
        return data.get("result")

    # ===== Chain reads =====

    def get_block_number(self) -> int:
        return _to_int(self.make_request("eth_blockNumber"))

    def get_block(self, number: int, include_tx: bool = True) -> Optional[Dict]:
        block = self.make_request("eth_getBlockByNumber", [hex(number), include_tx])
        if block is None:
            return None
        transactions = block.get("transactions") or []
        if include_tx:
            transactions = [self._normalize_tx(tx) for tx in transactions]
        return {
            "number": _to_int(block.get("number")),
            "hash": block.get("hash"),
            "timestamp": _to_int(block.get("timestamp")),
            "transactions": transactions,
        }

    @staticmethod
    def _normalize_tx(tx: Dict) -> Dict:
        return {
            "hash": tx.get("hash"),
            "from": (tx.get("from") or "").lower(),
            "to": (tx.get("to") or "").lower() or None,
            "value": _to_int(tx.get("value")),
            "input": tx.get("input") or "0x",
            "block_number": _to_int(tx.get("blockNumber")),
        }

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict]:
        receipt = self.make_request("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return None
        return {
            "transaction_hash": receipt.get("transactionHash"),
            "block_number": _to_int(receipt.get("blockNumber")),
            "block_hash": receipt.get("blockHash"),
            "status": _to_int(receipt.get("status")),
            "gas_used": _to_int(receipt.get("gasUsed")),
            "effective_gas_price": _to_int(receipt.get("effectiveGasPrice")),
        }

    def get_balance(self, address: str) -> int:
        return _to_int(self.make_request("eth_getBalance", [address, "latest"]))

    def gas_price(self) -> int:
        return _to_int(self.make_request("eth_gasPrice"))

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(self.make_request("eth_getTransactionCount", [address, block]))

    def estimate_gas(self, from_address: str, to: str, value: int = 0, data: str = "0x") -> int:
        tx = {"from": from_address, "to": to, "value": hex(value), "data": data}
        return _to_int(self.make_request("eth_estimateGas", [tx]))

    def call(self, to: str, data: str) -> str:
        return self.make_request("eth_call", [{"to": to, "data": data}, "latest"])

    def get_logs(self, from_block: int, to_block: int, address=None, topics: list = None) -> List[Dict]:
        log_filter = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            log_filter["address"] = address
        if topics:
            log_filter["topics"] = topics
        logs = self.make_request("eth_getLogs", [log_filter]) or []
        return [{
            "address": (log.get("address") or "").lower(),
            "topics": log.get("topics") or [],
            "data": log.get("data") or "0x",
            "block_number": _to_int(log.get("blockNumber")),
            "transaction_hash": log.get("transactionHash"),
            "log_index": _to_int(log.get("logIndex")),
        } for log in logs]

    # ===== Writes =====

    def send_raw_transaction(self, raw_tx: str) -> str:
        return self.make_request("eth_sendRawTransaction", [raw_tx])

    def wait_for_receipt(self, tx_hash: str, timeout: int = 120, poll_interval: float = 2.0) -> Dict:
        """Poll for a receipt; raises RPCTimeoutError once ``timeout`` elapses"""
        deadline = time.monotonic() + timeout
        while True:
            receipt = self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise RPCTimeoutError("wait_for_receipt", f"no receipt for {tx_hash} after {timeout}s")
            time.sleep(poll_interval)

    def test_connection(self) -> bool:
        """Test the connection to the RPC endpoint"""
        self.logger.info("Testing RPC connection...")
        try:
            self.get_block_number()
            return True
        except RPCError as e:
            self.logger.error(f"❌ RPC connection failed: {e}")
            return False
