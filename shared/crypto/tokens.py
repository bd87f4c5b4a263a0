"""
Assets the sweeper can move.

``NativeToken`` is the chain's gas currency; ``FungibleToken`` is an ERC-20 /
BEP-20 contract. Both expose the same small interface so the sweep and
observer code never branch on a token-type string.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional

from eth_abi import encode, decode
from eth_utils import keccak, to_checksum_address

from shared.exceptions import RPCError

NATIVE_ASSET_KEY = "native"
NATIVE_TRANSFER_GAS = 21000
# Used when a node refuses to estimate a token transfer
TOKEN_TRANSFER_GAS = 100000

TRANSFER_EVENT_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
TRANSFER_SELECTOR = keccak(text="transfer(address,uint256)")[:4]
BALANCE_OF_SELECTOR = keccak(text="balanceOf(address)")[:4]
DECIMALS_SELECTOR = keccak(text="decimals()")[:4]
SYMBOL_SELECTOR = keccak(text="symbol()")[:4]


class TokenType(enum.Enum):
    NATIVE = "native"
    TOKEN = "token"


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def _bytes(hex_data: str) -> bytes:
    return bytes.fromhex(hex_data[2:] if hex_data.startswith("0x") else hex_data)


def encode_transfer(to: str, amount: int) -> str:
    return _hex(TRANSFER_SELECTOR + encode(["address", "uint256"], [to_checksum_address(to), amount]))


def decode_transfer_call(data: str) -> Optional[Dict]:
    raw = _bytes(data)
    if raw[:4] != TRANSFER_SELECTOR:
        return None
    to, amount = decode(["address", "uint256"], raw[4:])
    return {"to": to.lower(), "amount": amount}


def decode_transfer_log(log: Dict) -> Optional[Dict]:
    """Decode a Transfer(from, to, value) log; None for anything else"""
    topics = log.get("topics") or []
    if len(topics) != 3 or topics[0].lower() != TRANSFER_EVENT_TOPIC:
        return None
    return {
        "contract": log["address"].lower(),
        "from": "0x" + topics[1][-40:].lower(),
        "to": "0x" + topics[2][-40:].lower(),
        "value": int(log.get("data") or "0x0", 16),
        "transaction_hash": log["transaction_hash"],
        "block_number": log["block_number"],
        "log_index": log.get("log_index", 0),
    }


@dataclass(frozen=True)
class NativeToken:
    symbol: str = "BNB"
    decimals: int = 18
    token_type = TokenType.NATIVE

    @property
    def key(self) -> str:
        return NATIVE_ASSET_KEY

    @property
    def contract_address(self) -> Optional[str]:
        return None

    def balance_of(self, client, address: str) -> int:
        return client.get_balance(address)

    def estimate_gas(self, client, from_address: str, to: str, amount: int) -> int:
        # A value transfer to an EOA has a fixed cost; estimate with zero value so the
        # node does not reject the call for lacking funds to cover value + gas
        try:
            return client.estimate_gas(from_address, to, value=0)
        except RPCError:
            return NATIVE_TRANSFER_GAS

    def build_transfer(self, to: str, amount: int) -> Dict:
        return {"to": to_checksum_address(to), "value": amount}


@dataclass(frozen=True)
class FungibleToken:
    contract: str
    symbol: str = "TOKEN"
    decimals: int = 18
    token_type = TokenType.TOKEN

    def __post_init__(self):
        object.__setattr__(self, "contract", self.contract.lower())

    @property
    def key(self) -> str:
        return self.contract

    @property
    def contract_address(self) -> Optional[str]:
        return self.contract

    def balance_of(self, client, address: str) -> int:
        data = _hex(BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(address)]))
        result = client.call(self.contract, data)
        return int(result or "0x0", 16)

    def estimate_gas(self, client, from_address: str, to: str, amount: int) -> int:
        try:
            return client.estimate_gas(from_address, self.contract, value=0, data=encode_transfer(to, amount))
        except RPCError:
            return TOKEN_TRANSFER_GAS

    def build_transfer(self, to: str, amount: int) -> Dict:
        return {"to": to_checksum_address(self.contract), "value": 0, "data": encode_transfer(to, amount)}

    @classmethod
    def load(cls, client, contract: str) -> 'FungibleToken':
        """Read symbol and decimals from the contract itself"""
        decimals = int(client.call(contract, _hex(DECIMALS_SELECTOR)), 16)
        (symbol,) = decode(["string"], _bytes(client.call(contract, _hex(SYMBOL_SELECTOR))))
        return cls(contract=contract, symbol=symbol, decimals=decimals)
