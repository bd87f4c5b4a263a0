import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shared.exceptions import DecryptionError


class PrivateKeyCipher:
    """
    Encrypts private keys at rest.

    The Fernet key is derived from APP_SECRET and a per-record context (the
    owning user id), so a ciphertext only decrypts under the context it was
    written with.
    """

    def __init__(self, app_secret: str):
        if not app_secret:
            raise ValueError("app_secret is required")
        self.app_secret = app_secret.encode()

    def _cipher(self, context: str) -> Fernet:
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=f"wallet-key:{context}".encode(),
        ).derive(self.app_secret)
        return Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, private_key: str, context: str) -> str:
        return self._cipher(context).encrypt(private_key.encode()).decode()

    def decrypt(self, encrypted_private_key: str, context: str) -> str:
        try:
            return self._cipher(context).decrypt(encrypted_private_key.encode()).decode()
        except (InvalidToken, ValueError, TypeError) as e:
            raise DecryptionError(f"Cannot decrypt private key for context {context!r}") from e
