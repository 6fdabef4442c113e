"""
Secret resolution for provider credentials.

Client secrets and signing keys are looked up by key through a
``SecretResolver``. The environment resolver checks ``ACCESS_<KEY>`` first
and then an encrypted JSON secrets file. Resolved values are never logged.
"""

import os
import json
import base64
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.logging import get_logger

logger = get_logger("identity.secrets")

_SALT = b"identity_access_salt"


class SecretResolver(Protocol):
    """Anything that can look a secret up by key."""

    def get_secret(self, key: str) -> Optional[str]:
        ...


class StaticSecretResolver:
    """Resolver over a fixed mapping. Keys are case-insensitive."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = {key.lower(): value for key, value in (secrets or {}).items()}

    def get_secret(self, key: str) -> Optional[str]:
        return self._secrets.get(key.lower())


class EnvSecretResolver:
    """
    Resolves secrets from the environment, then from an encrypted file.

    The file is a JSON object mapping secret keys to Fernet tokens. The
    Fernet key is derived from the master key with PBKDF2-HMAC-SHA256.
    """

    def __init__(self, master_key: Optional[str] = None, secrets_file: Optional[str] = None,
                 env_prefix: str = "ACCESS_"):
        """
        Args:
            master_key: Master key for decrypting the secrets file
            secrets_file: Path of the encrypted JSON file
            env_prefix: Prefix for environment variable lookups
        """
        self.master_key = master_key or os.getenv("ACCESS_MASTER_KEY")
        self.secrets_file = secrets_file or os.getenv("ACCESS_SECRETS_FILE")
        self.env_prefix = env_prefix
        self._fernet = self._create_fernet() if self.master_key else None

    def _create_fernet(self) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_SALT,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self.master_key.encode()))
        return Fernet(key)

    def encrypt_secret(self, secret: str) -> str:
        if self._fernet is None:
            raise ValueError("Master key is required to encrypt secrets")
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt_secret(self, encrypted_secret: str) -> str:
        if self._fernet is None:
            raise ValueError("Master key is required to decrypt secrets")
        return self._fernet.decrypt(encrypted_secret.encode()).decode()

    def get_secret(self, key: str) -> Optional[str]:
        """
        Get a secret by key.

        Args:
            key: Secret key, e.g. ``google_client_secret``

        Returns:
            Secret value, or None when no source has it
        """
        env_key = f"{self.env_prefix}{key.upper()}"
        secret = os.getenv(env_key)
        if secret:
            return secret

        if not self.secrets_file or not os.path.exists(self.secrets_file):
            return None

        with open(self.secrets_file, "r") as f:
            secrets = json.load(f)

        encrypted = secrets.get(key)
        if encrypted is None:
            return None
        if self._fernet is None:
            logger.warning("Secrets file present but no master key configured", key=key)
            return None
        try:
            return self.decrypt_secret(encrypted)
        except InvalidToken:
            logger.error("Failed to decrypt secret", key=key)
            raise ValueError(f"Secret '{key}' could not be decrypted") from None

    def write_secret(self, key: str, value: str) -> None:
        """Encrypt ``value`` into the secrets file under ``key``."""
        if not self.secrets_file:
            raise ValueError("No secrets file configured")
        secrets: Dict[str, str] = {}
        if os.path.exists(self.secrets_file):
            with open(self.secrets_file, "r") as f:
                secrets = json.load(f)
        secrets[key] = self.encrypt_secret(value)
        with open(self.secrets_file, "w") as f:
            json.dump(secrets, f, indent=2)
        logger.info("Secret stored", key=key)
