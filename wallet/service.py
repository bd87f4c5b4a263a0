from typing import Dict, Iterable

from sqlalchemy.orm import Session

from db.store import LedgerStore
from db.wallet import UserWallet
from shared.crypto.HD import KeyDerivation
from shared.currency_precision import AmountConverter
from shared.logger import setup_logging

logger = setup_logging(__name__)


def get_or_create_wallet(user_id, session: Session, key_derivation: KeyDerivation) -> UserWallet:
    """
    Return the user's deposit wallet, deriving and storing it on first use.
    Re-derivation is deterministic, so a lost insert race yields the same address.
    """
    store = LedgerStore(session)
    wallet = store.get_wallet_by_user(user_id)
    if wallet:
        return wallet

    derived = key_derivation.derive_wallet(user_id)
    wallet = store.add_wallet(derived)
    session.commit()
    logger.info(f"✅ Created deposit wallet {wallet.address} for user {user_id}")
    return wallet


def get_deposit_address(user_id, session: Session, key_derivation: KeyDerivation) -> str:
    return get_or_create_wallet(user_id, session, key_derivation).address


def get_on_chain_balance(address: str, client, tokens: Iterable) -> Dict[str, dict]:
    """
    Live balances of ``address`` for each asset, keyed by asset key
    ("native" or the token contract).
    """
    balances = {}
    for token in tokens:
        units = token.balance_of(client, address.lower())
        balances[token.key] = {
            "symbol": token.symbol,
            "decimals": token.decimals,
            "balance": units,
            "display": AmountConverter.from_smallest_units(units, token.decimals),
        }
    return balances
