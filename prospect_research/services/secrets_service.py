"""Encryption for per-job webhook signing secrets stored at rest."""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

DEV_MASTER_KEY = "dev-insecure-master-key"


class SecretDecryptError(Exception):
    """Stored ciphertext could not be decrypted with the current master key."""


def _derive_key(master_key: str) -> bytes:
    digest = hashlib.sha256(master_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SecretsService:
    """Encrypts/decrypts secrets using a master key."""

    def __init__(self, master_key: str) -> None:
        self.fernet = Fernet(_derive_key(master_key))

    def encrypt(self, plaintext: str) -> str:
        return self.fernet.encrypt((plaintext or "").encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self.fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretDecryptError("Could not decrypt stored secret") from exc


def build_secrets_service(master_key: Optional[str], debug: bool = False) -> Optional[SecretsService]:
    """
    Secrets service for the configured master key.

    In debug mode a fixed development key keeps webhooks usable without
    configuration. Otherwise None is returned and jobs cannot carry a
    webhook secret.
    """
    if master_key:
        return SecretsService(master_key)
    if debug:
        logger.warning("SECRETS_MASTER_KEY not set; using the development key for webhook secrets")
        return SecretsService(DEV_MASTER_KEY)
    return None
