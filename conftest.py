import itertools
from decimal import Decimal

import pytest

from db.connection import init_db, make_engine, make_session_factory
from shared.crypto.HD import KeyDerivation
from shared.crypto.encryption import PrivateKeyCipher
from shared.crypto.tokens import (
    BALANCE_OF_SELECTOR,
    TRANSFER_EVENT_TOPIC,
    FungibleToken,
    NativeToken,
    decode_transfer_call,
)
from shared.currency_precision import AmountConverter
from shared.exceptions import BroadcastTimeoutError, RPCError, RPCTimeoutError, TransactionFailedError
from shared.settings import SweeperSettings, TokenContractConfig
from wallet.crypto_sweeper_service import SweepEngine
from wallet.gas_topup_service import GasTopUpEngine
from wallet.incident_service import IncidentService
from wallet.tx_submitter import SubmittedTransaction

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
APP_SECRET = "test-app-secret"
USDT_CONTRACT = "0x55d398326f99059ff775485246999027b3197955"
GAS_PRICE = 5 * 10 ** 9


def bnb(amount) -> int:
    return AmountConverter.to_smallest_units(Decimal(str(amount)))


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


class FakeChain:
    """In-memory chain exposing the EVMRpcClient interface"""

    def __init__(self, head: int = 100):
        self.head = head
        self.blocks = {}
        self.receipts = {}
        self.balances = {}
        self.token_balances = {}
        self.logs = {}
        self.gas_price_wei = GAS_PRICE
        self.nonces = {}
        self.failing_blocks = set()
        self.failing_methods = set()
        self._hashes = itertools.count(1)

    def new_hash(self) -> str:
        return "0x%064x" % next(self._hashes)

    def _maybe_fail(self, method: str):
        if method in self.failing_methods:
            raise RPCError(method, "connection refused")

    def _block(self, number: int) -> dict:
        return self.blocks.setdefault(number, {
            "number": number, "hash": "0x%064x" % (10 ** 6 + number), "timestamp": 0, "transactions": [],
        })

    def mine(self, count: int = 1):
        self.head += count

    # ===== Scenario helpers =====

    def add_native_transfer(self, to: str, value: int, block: int = None, status: int = 1,
                            from_address: str = "0x" + "ab" * 20) -> str:
        block = self.head if block is None else block
        tx_hash = self.new_hash()
        self._block(block)["transactions"].append({
            "hash": tx_hash, "from": from_address, "to": to.lower(), "value": value,
            "input": "0x", "block_number": block,
        })
        self.receipts[tx_hash] = {
            "transaction_hash": tx_hash, "block_number": block, "block_hash": None,
            "status": status, "gas_used": 21000, "effective_gas_price": self.gas_price_wei,
        }
        if status == 1:
            self.balances[to.lower()] = self.balances.get(to.lower(), 0) + value
        return tx_hash

    def add_token_transfer(self, contract: str, to: str, value: int, block: int = None,
                           from_address: str = "0x" + "cd" * 20) -> str:
        block = self.head if block is None else block
        tx_hash = self.new_hash()
        self._block(block)
        self.logs.setdefault(block, []).append({
            "address": contract.lower(),
            "topics": [TRANSFER_EVENT_TOPIC, _topic(from_address), _topic(to)],
            "data": "0x%064x" % value,
            "block_number": block,
            "transaction_hash": tx_hash,
            "log_index": 0,
        })
        self.receipts[tx_hash] = {
            "transaction_hash": tx_hash, "block_number": block, "block_hash": None,
            "status": 1, "gas_used": 52000, "effective_gas_price": self.gas_price_wei,
        }
        key = (contract.lower(), to.lower())
        self.token_balances[key] = self.token_balances.get(key, 0) + value
        return tx_hash

    # ===== RPC interface =====

    def get_block_number(self) -> int:
        self._maybe_fail("eth_blockNumber")
        return self.head

    def get_block(self, number: int, include_tx: bool = True):
        self._maybe_fail("eth_getBlockByNumber")
        if number in self.failing_blocks:
            raise RPCError("eth_getBlockByNumber", f"upstream error for block {number}")
        if number > self.head:
            return None
        return self._block(number)

    def get_transaction_receipt(self, tx_hash: str):
        self._maybe_fail("eth_getTransactionReceipt")
        return self.receipts.get(tx_hash)

    def get_balance(self, address: str) -> int:
        self._maybe_fail("eth_getBalance")
        return self.balances.get(address.lower(), 0)

    def gas_price(self) -> int:
        return self.gas_price_wei

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return self.nonces.get(address.lower(), 0)

    def estimate_gas(self, from_address: str, to: str, value: int = 0, data: str = "0x") -> int:
        return 21000 if data == "0x" else 60000

    def call(self, to: str, data: str) -> str:
        if data.startswith("0x" + BALANCE_OF_SELECTOR.hex()):
            holder = "0x" + data[-40:].lower()
            return "0x%064x" % self.token_balances.get((to.lower(), holder), 0)
        raise RPCError("eth_call", "execution reverted")

    def get_logs(self, from_block: int, to_block: int, address=None, topics: list = None):
        self._maybe_fail("eth_getLogs")
        addresses = {a.lower() for a in (address or [])}
        found = []
        for number in range(from_block, to_block + 1):
            for log in self.logs.get(number, []):
                if addresses and log["address"] not in addresses:
                    continue
                found.append(log)
        return found


class FakeSubmitter:
    """
    Applies transfers straight to the FakeChain instead of signing raw
    transactions. ``reject`` and ``revert`` make the next submissions fail;
    ``timeout`` withholds the receipt and ``broadcast_timeout`` applies the
    transfer but times out the broadcast call, as a node that accepted the
    transaction without answering would.
    """

    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.submitted = []
        self.reject = 0
        self.revert = 0
        self.timeout = 0
        self.broadcast_timeout = 0

    def submit(self, private_key, from_address, tx, gas_limit, gas_price, on_signed=None):
        address = from_address.lower()
        to = tx["to"].lower()
        value = int(tx.get("value", 0))
        submitted = SubmittedTransaction(
            tx_hash=self.chain.new_hash(), nonce=self.chain.nonces.get(address, 0), from_address=address,
            to=to, value=value, gas_limit=gas_limit, gas_price=gas_price,
        )
        if on_signed is not None:
            on_signed(submitted)

        if self.reject:
            self.reject -= 1
            raise RPCError("eth_sendRawTransaction", "nonce too low")

        gas_cost = gas_limit * gas_price
        if self.chain.balances.get(address, 0) < value + gas_cost:
            raise RPCError("eth_sendRawTransaction", "insufficient funds for gas * price + value")

        status = 1
        if self.revert:
            self.revert -= 1
            status = 0
        self.chain.balances[address] -= gas_cost
        if status == 1:
            data = tx.get("data")
            if data:
                transfer = decode_transfer_call(data)
                source = (to, address)
                self.chain.token_balances[source] -= transfer["amount"]
                target = (to, transfer["to"])
                self.chain.token_balances[target] = self.chain.token_balances.get(target, 0) + transfer["amount"]
            else:
                self.chain.balances[address] -= value
                self.chain.balances[to] = self.chain.balances.get(to, 0) + value

        self.chain.nonces[address] = submitted.nonce + 1
        if not self.timeout:
            self.chain.receipts[submitted.tx_hash] = {
                "transaction_hash": submitted.tx_hash, "block_number": self.chain.head, "block_hash": None,
                "status": status, "gas_used": gas_limit, "effective_gas_price": gas_price,
            }
        self.submitted.append(submitted)
        if self.broadcast_timeout:
            self.broadcast_timeout -= 1
            raise BroadcastTimeoutError(submitted.tx_hash, submitted.nonce, "read timed out")
        return submitted

    def wait(self, tx_hash, timeout):
        if self.timeout:
            self.timeout -= 1
            raise RPCTimeoutError("wait_for_receipt", f"no receipt for {tx_hash} after {timeout}s")
        receipt = self.chain.receipts[tx_hash]
        if receipt["status"] != 1:
            raise TransactionFailedError(tx_hash, "transaction reverted on chain")
        return receipt


@pytest.fixture(scope="session")
def key_derivation():
    return KeyDerivation(MNEMONIC, PrivateKeyCipher(APP_SECRET))


@pytest.fixture(scope="session")
def master_wallet(key_derivation):
    return key_derivation.master_wallet()


@pytest.fixture
def settings():
    return SweeperSettings(
        rpc_url="http://localhost:8545",
        master_seed_phrase=MNEMONIC,
        app_secret=APP_SECRET,
        token_contracts=[TokenContractConfig(symbol="USDT", address=USDT_CONTRACT, decimals=18)],
    )


@pytest.fixture
def db_session():
    engine = make_engine("sqlite://")
    init_db(engine)
    factory = make_session_factory(engine)
    session = factory()
    yield session
    factory.remove()
    engine.dispose()


@pytest.fixture
def session_factory(db_session):
    return lambda: db_session


@pytest.fixture
def chain(master_wallet):
    chain = FakeChain()
    chain.balances[master_wallet.address] = bnb(10)
    return chain


@pytest.fixture
def submitter(chain):
    return FakeSubmitter(chain)


@pytest.fixture
def native():
    return NativeToken(symbol="BNB")


@pytest.fixture
def usdt():
    return FungibleToken(contract=USDT_CONTRACT, symbol="USDT", decimals=18)


@pytest.fixture
def incidents(session_factory):
    return IncidentService(session_factory, max_retries=3)


@pytest.fixture
def gas_engine(session_factory, chain, submitter, master_wallet, settings, incidents):
    return GasTopUpEngine(session_factory, chain, submitter, master_wallet, settings, incidents=incidents)


@pytest.fixture
def sweep_engine(session_factory, chain, submitter, key_derivation, master_wallet, settings,
                 native, usdt, gas_engine, incidents):
    return SweepEngine(
        session_factory, chain, submitter, key_derivation, master_wallet, settings,
        tokens=[native, usdt], gas_engine=gas_engine, incidents=incidents,
    )
