import hashlib
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from eth_account import Account
from hdwallet import HDWallet
from hdwallet.hds import BIP32HD
from hdwallet.mnemonics import BIP39Mnemonic
from hdwallet.cryptocurrencies import Ethereum
from hdwallet.derivations import CustomDerivation
from hdwallet.consts import PUBLIC_KEY_TYPES

from shared.crypto.encryption import PrivateKeyCipher
from shared.exceptions import WalletError

# Each user path component is a 31-bit slice of sha256(user_id)
USER_INDEX_BITS = 31
MASTER_DERIVATION_PATH = "m/44'/60'/0'/0/0"


class EVMBase:
    """Base class for EVM-compatible chains that generate identical addresses for testnet/mainnet"""

    def __init__(self, cryptocurrency):
        self.cryptocurrency = cryptocurrency
        # EVM chains generate same addresses for testnet/mainnet, always use MAINNET
        self.network = cryptocurrency.NETWORKS.MAINNET
        self.wallet: HDWallet = None
        # HDWallet keeps the current derivation as mutable state
        self._lock = threading.Lock()

    def from_mnemonic(self, mnemonic: str, language: Optional[str] = "english", passphrase: Optional[str] = None):
        mnemonic_obj = BIP39Mnemonic(mnemonic=mnemonic)

        self.wallet = HDWallet(
            cryptocurrency=self.cryptocurrency,
            hd=BIP32HD,
            network=self.network,
            language=language or "english",
            public_key_type=PUBLIC_KEY_TYPES.COMPRESSED,
            passphrase=passphrase or ""
        ).from_mnemonic(mnemonic=mnemonic_obj)
        return self

    def clean_derivation(self):
        if self.wallet:
            self.wallet.clean_derivation()
        return self

    def derive(self, path: str) -> Tuple[str, str, str]:
        if not self.wallet:
            raise ValueError("Wallet not initialized. Call from_mnemonic() first.")

        with self._lock:
            self.clean_derivation()
            self.wallet.from_derivation(derivation=CustomDerivation(path=path))

            address = self.wallet.address()
            priv_key = self.wallet.private_key()
            pub_key = self.wallet.public_key()

            self.clean_derivation()

        # Normalize EVM addresses to lowercase for consistent database storage
        return address.lower(), priv_key, pub_key


class ETH(EVMBase):
    """Ethereum derivation (coin type 60), shared by BNB Smart Chain and other EVM chains"""

    def __init__(self):
        super().__init__(Ethereum)


@dataclass(frozen=True)
class DerivedWallet:
    user_id: str
    address: str
    public_key: str
    encrypted_private_key: str
    derivation_path: str


class MasterWallet:
    """
    The consolidation wallet. Built once at start-up and handed to the
    components that need it; the private key never leaves this object except
    through ``signing_key`` for the transaction submitter.
    """

    def __init__(self, address: str, public_key: str, private_key: str,
                 derivation_path: str = MASTER_DERIVATION_PATH):
        self.address = address.lower()
        self.public_key = public_key
        self.derivation_path = derivation_path
        self._private_key = private_key

    @property
    def signing_key(self) -> str:
        return self._private_key

    def __repr__(self):
        return f"<MasterWallet {self.address}>"


class KeyDerivation:
    """Deterministic per-user key derivation from the master seed"""

    def __init__(self, seed_phrase: str, cipher: PrivateKeyCipher, passphrase: str = ""):
        self.cipher = cipher
        try:
            self.hd = ETH().from_mnemonic(mnemonic=seed_phrase, passphrase=passphrase)
        except Exception as e:
            raise WalletError(f"Master seed cannot derive a wallet: {e}") from e

    @staticmethod
    def derivation_path_for(user_id) -> str:
        digest = hashlib.sha256(str(user_id).encode("utf-8")).digest()
        mask = (1 << USER_INDEX_BITS) - 1
        account, change, index = (
            int.from_bytes(digest[offset:offset + 4], "big") & mask
            for offset in (0, 4, 8)
        )
        return f"m/44'/60'/{account}'/{change}/{index}"

    def derive_wallet(self, user_id) -> DerivedWallet:
        path = self.derivation_path_for(user_id)
        try:
            address, priv_key, pub_key = self.hd.derive(path)
        except Exception as e:
            raise WalletError(f"Failed to derive wallet for user {user_id}: {e}") from e

        return DerivedWallet(
            user_id=str(user_id),
            address=address,
            public_key=pub_key,
            encrypted_private_key=self.cipher.encrypt(priv_key, context=str(user_id)),
            derivation_path=path,
        )

    def decrypt(self, encrypted_private_key: str, context: str) -> str:
        return self.cipher.decrypt(encrypted_private_key, context)

    def signing_key_for(self, user_id, address: str, encrypted_private_key: str) -> str:
        """Decrypt a stored key and check it still controls ``address``"""
        private_key = self.decrypt(encrypted_private_key, context=str(user_id))
        derived_address = Account.from_key(private_key).address.lower()
        if derived_address != address.lower():
            raise WalletError(
                f"Stored key for user {user_id} controls {derived_address}, expected {address}"
            )
        return private_key

    def master_wallet(self) -> MasterWallet:
        try:
            address, priv_key, pub_key = self.hd.derive(MASTER_DERIVATION_PATH)
        except Exception as e:
            raise WalletError(f"Master seed cannot derive the master wallet: {e}") from e
        return MasterWallet(address=address, public_key=pub_key, private_key=priv_key)
