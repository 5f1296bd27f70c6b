"""
Credential providers.

Credentials arrive encrypted at rest; the trading core only ever sees the
decrypted values. A provider is injected into BrokerFactory so the key
never lives at module level.

Example:
    >>> from cryptography.fernet import Fernet
    >>> key = Fernet.generate_key().decode()
    >>> provider = FernetCredentialProvider(key)
    >>> token = provider.encrypt("my-api-secret")
    >>> provider.decrypt(token)
    'my-api-secret'
"""

from typing import Callable, Dict, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from stockbasket.execution.exceptions import ValidationError
from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)

DecryptFn = Callable[[str, str], str]


class CredentialProvider:
    """
    Wraps a ``decrypt(ciphertext, key) -> plaintext`` callable.

    Attributes:
        key: Decryption key handed to the callable
    """

    def __init__(self, decrypt: DecryptFn, key: str):
        self._decrypt = decrypt
        self.key = key

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a single value."""
        return self._decrypt(ciphertext, self.key)

    def decrypt_fields(self, fields: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
        """
        Decrypt every non-empty value of a mapping.

        Args:
            fields: Field name -> ciphertext (None/empty passed through)

        Returns:
            Field name -> plaintext

        Raises:
            ValidationError: If a value cannot be decrypted
        """
        decrypted: Dict[str, Optional[str]] = {}
        for name, value in fields.items():
            if not value:
                decrypted[name] = value
                continue
            try:
                decrypted[name] = self.decrypt(value)
            except (InvalidToken, ValueError) as e:
                logger.error(f"Failed to decrypt credential field '{name}'")
                raise ValidationError(f"Cannot decrypt credential field '{name}'") from e
        return decrypted

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key=***)"


def _fernet_decrypt(ciphertext: str, key: str) -> str:
    return Fernet(key.encode()).decrypt(ciphertext.encode()).decode()


class FernetCredentialProvider(CredentialProvider):
    """Credential provider backed by ``cryptography.fernet``."""

    def __init__(self, key: str):
        super().__init__(_fernet_decrypt, key)
        self._cipher = Fernet(key.encode())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a value with the provider key."""
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        return self._cipher.decrypt(ciphertext.encode()).decode()
