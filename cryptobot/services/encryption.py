"""At-rest protection for exchange API secrets stored in the credential table."""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from cryptobot.config import settings
from cryptobot.errors import ConfigurationError

KEY_HINT = "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""


@lru_cache(maxsize=4)
def _cipher(key: str) -> Fernet:
    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise ConfigurationError(f"CB_ENCRYPTION_KEY is not a valid Fernet key: {e}") from e


def _current_cipher() -> Fernet:
    if not settings.encryption_key:
        raise ConfigurationError(f"CB_ENCRYPTION_KEY not set. Generate one with: {KEY_HINT}")
    return _cipher(settings.encryption_key)


def encrypt_secret(api_secret: str) -> str:
    """Encrypt an API secret for storage in `credential.api_secret_encrypted`."""
    if not api_secret:
        raise ValueError("API secret cannot be empty")
    return _current_cipher().encrypt(api_secret.encode()).decode()


def decrypt_secret(token: str) -> str:
    """Recover a stored API secret.

    A token written under a different key means the stored credential is
    unusable; that is reported as a ConfigurationError so startup aborts.
    """
    try:
        return _current_cipher().decrypt(token.encode()).decode()
    except InvalidToken as e:
        raise ConfigurationError(
            "Stored API secret cannot be decrypted with CB_ENCRYPTION_KEY; re-run add-credential"
        ) from e


def mask_api_key(api_key: str) -> str:
    """Show only the edges of an API key, e.g. for CLI status output."""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"
