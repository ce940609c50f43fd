"""
Credential vault for site connections.

Connections only ever carry an opaque ``credential_ref``. Transport adapters
call ``resolve`` at the start of each remote call and drop the result when the
call returns, so secrets are never cached on records or adapters.
"""

import os
import re
import json
import base64
import logging
from typing import Dict, List, Optional
from datetime import datetime
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from patchdeploy.core.config import settings
from patchdeploy.core.errors import CredentialResolutionError
from patchdeploy.models.deployment import Platform

logger = logging.getLogger(__name__)

ENV_PREFIX = "PATCHDEPLOY_CRED_"

# Any one of the alternatives must be fully present.
REQUIRED_FIELDS: Dict[Platform, List[List[str]]] = {
    Platform.CMS_API: [["access_token"], ["username", "password"]],
    Platform.FILE_TRANSFER: [["username", "password"]],
    Platform.SHELL_SESSION: [["username", "private_key"], ["username", "password"]],
}


def missing_fields(platform: Platform, credentials: Dict[str, str]) -> List[str]:
    """
    Return the fields missing for the closest matching credential shape.

    An empty list means the credentials are usable for the platform.
    """
    best: Optional[List[str]] = None
    for alternative in REQUIRED_FIELDS.get(platform, []):
        missing = [field for field in alternative if not credentials.get(field)]
        if not missing:
            return []
        if best is None or len(missing) < len(best):
            best = missing
    return best or []


class CredentialVault:
    """
    Encrypted credential storage keyed by credential reference.
    """

    def __init__(self, encryption_key: Optional[str] = None, credentials_dir: Optional[str] = None):
        """
        Initialize the vault.

        Args:
            encryption_key: Secret used to derive the Fernet key. Without it
                only environment-provided credentials can be resolved.
            credentials_dir: Directory holding encrypted credential files
        """
        encryption_key = encryption_key or settings.ENCRYPTION_KEY
        self.credentials_dir = credentials_dir or settings.CREDENTIALS_DIR
        self.cipher = Fernet(self._derive_key(encryption_key)) if encryption_key else None

    async def store(self, credential_ref: str, credentials: Dict[str, str]) -> Dict[str, str]:
        """
        Encrypt and store credentials under a reference.

        Returns:
            Metadata about the stored credential (never the secret itself)
        """
        if self.cipher is None:
            raise CredentialResolutionError(credential_ref, "vault has no encryption key")

        payload = {
            "created_at": datetime.now().isoformat(),
            "credentials": credentials,
        }
        os.makedirs(self.credentials_dir, exist_ok=True)
        with open(self._get_credentials_path(credential_ref), "wb") as f:
            f.write(self.cipher.encrypt(json.dumps(payload).encode()))

        logger.info(f"Stored credentials for reference {credential_ref}")
        return {"credential_ref": credential_ref, "created_at": payload["created_at"]}

    async def resolve(self, credential_ref: str) -> Dict[str, str]:
        """
        Resolve a reference to its secret values.

        Looks in the encrypted store first, then in the
        ``PATCHDEPLOY_CRED_<REF>`` environment variable (JSON object).

        Raises:
            CredentialResolutionError: if the reference cannot be resolved
        """
        file_path = self._get_credentials_path(credential_ref)
        if self.cipher is not None and os.path.exists(file_path):
            with open(file_path, "rb") as f:
                encrypted_data = f.read()
            try:
                payload = json.loads(self.cipher.decrypt(encrypted_data).decode())
            except InvalidToken:
                raise CredentialResolutionError(credential_ref, "stored credential cannot be decrypted")
            return dict(payload["credentials"])

        env_value = os.getenv(self._env_name(credential_ref))
        if env_value:
            try:
                credentials = json.loads(env_value)
            except ValueError:
                raise CredentialResolutionError(credential_ref, "environment credential is not valid JSON")
            if not isinstance(credentials, dict):
                raise CredentialResolutionError(credential_ref, "environment credential must be a JSON object")
            return {key: str(value) for key, value in credentials.items()}

        raise CredentialResolutionError(credential_ref, "not found")

    async def delete(self, credential_ref: str) -> bool:
        file_path = self._get_credentials_path(credential_ref)
        if not os.path.exists(file_path):
            return False
        os.remove(file_path)
        logger.info(f"Deleted credentials for reference {credential_ref}")
        return True

    async def validate(self, credential_ref: str, platform: Platform) -> List[str]:
        """
        Check that a reference resolves to credentials usable on a platform.

        Returns:
            A list of problems; empty when the credential is usable
        """
        try:
            credentials = await self.resolve(credential_ref)
        except CredentialResolutionError as e:
            return [str(e)]
        missing = missing_fields(platform, credentials)
        if missing:
            return [f"Credential {credential_ref} is missing: {', '.join(missing)}"]
        return []

    def _get_credentials_path(self, credential_ref: str) -> str:
        return os.path.join(self.credentials_dir, f"{self._safe_name(credential_ref)}.cred")

    def _env_name(self, credential_ref: str) -> str:
        return ENV_PREFIX + self._safe_name(credential_ref).upper()

    @staticmethod
    def _safe_name(credential_ref: str) -> str:
        return re.sub(r"[^A-Za-z0-9_]", "_", credential_ref)

    @staticmethod
    def _derive_key(secret_key: str) -> bytes:
        salt = b"patchdeploy_credentials"
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000
        )
        return base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
