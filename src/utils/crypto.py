"""Field-level encryption for credentials stored in the database."""
import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class EncryptionService:
    """Encrypts and decrypts credential columns.

    The key is derived once at construction and never changes afterwards;
    pass the instance to whatever reads or writes encrypted columns.
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        # Derive a 32-byte key from the secret_key using SHA256
        key = hashlib.sha256(secret_key.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, value: str) -> str:
        """Encrypt a string value.

        Args:
            value: The plaintext string to encrypt.

        Returns:
            The encrypted value as a base64-encoded string.
        """
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """Decrypt an encrypted value.

        Raises:
            ValueError: If the value was not produced with this key.
        """
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Unable to decrypt value with the configured key") from e
