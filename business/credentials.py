import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from business.sync.errors import ConfigurationError
from database.ledger import LedgerStore
from integrations.base import AggregatorClient, redact
from models.aggregator import Credential
from models.ledger import ConnectionStatus
from schemas.ledger import ConnectionPatch
from utils.constants import ENCRYPTION_KEY, TOKEN_EXPIRY_BUFFER_SECONDS
from utils.database import as_utc, utc_now

logger = logging.getLogger(__name__)


class CredentialDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted; ciphertext is never returned"""

    pass


class CredentialStore:
    """Encrypted-at-rest aggregator tokens, one live credential per connection"""

    def __init__(
        self,
        store: LedgerStore,
        client: AggregatorClient,
        encryption_key: Optional[str] = ENCRYPTION_KEY,
    ) -> None:
        if not encryption_key:
            raise ConfigurationError("ENCRYPTION_KEY environment variable not set")
        try:
            self.fernet = Fernet(
                encryption_key.encode() if isinstance(encryption_key, str) else encryption_key
            )
        except ValueError as e:
            raise ConfigurationError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e
        self.store = store
        self.client = client

    def encrypt_token(self, token: str) -> str:
        """Encrypt access token before storing"""
        return self.fernet.encrypt(token.encode()).decode()

    def decrypt_token(self, encrypted_token: str) -> str:
        """Decrypt access token from storage"""
        try:
            return self.fernet.decrypt(encrypted_token.encode()).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Failed to decrypt stored token")
            raise CredentialDecryptionError("Token decryption failed") from e

    def get(self, connection_id: str) -> Credential:
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ConfigurationError(f"Unknown connection {connection_id}")
        if not connection.access_token_encrypted:
            raise ConfigurationError(f"No credential stored for connection {connection_id}")

        token = self.decrypt_token(connection.access_token_encrypted)
        logger.debug(f"Loaded credential {redact(token)} for connection {connection_id}")
        return Credential(
            token=token,
            expires_at=connection.token_expires_at,
            external_user_ref=connection.external_user_ref,
        )

    def save(self, connection_id: str, credential: Credential) -> None:
        fields = {
            "access_token_encrypted": self.encrypt_token(credential.token),
            "token_expires_at": credential.expires_at,
            "status": ConnectionStatus.ACTIVE,
        }
        if credential.external_user_ref:
            fields["external_user_ref"] = credential.external_user_ref
        updated = self.store.update_connection(connection_id, ConnectionPatch(**fields))
        if updated is None:
            raise ConfigurationError(f"Unknown connection {connection_id}")
        logger.info(f"Stored credential {redact(credential.token)} for connection {connection_id}")

    def revoke(self, connection_id: str) -> None:
        self.store.update_connection(
            connection_id,
            ConnectionPatch(
                access_token_encrypted=None,
                token_expires_at=None,
                status=ConnectionStatus.INACTIVE,
            ),
        )
        logger.info(f"Revoked credential for connection {connection_id}")

    @staticmethod
    def is_expired(
        credential: Credential,
        now: Optional[datetime] = None,
        buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
    ) -> bool:
        """True when the credential expires within the buffer; no expiry never expires."""
        if credential.expires_at is None:
            return False
        now = as_utc(now) or utc_now()
        return credential.expires_at <= now + timedelta(seconds=buffer_seconds)

    @staticmethod
    def expires_within(
        credential: Credential, seconds: int, now: Optional[datetime] = None
    ) -> bool:
        return CredentialStore.is_expired(credential, now=now, buffer_seconds=seconds)

    async def refresh(self, connection_id: str) -> Credential:
        current = await asyncio.to_thread(self.get, connection_id)
        refreshed = await self.client.refresh_credential(current)
        if (
            refreshed.token != current.token
            or refreshed.expires_at != current.expires_at
            or refreshed.external_user_ref != current.external_user_ref
        ):
            await asyncio.to_thread(self.save, connection_id, refreshed)
            logger.info(f"Refreshed credential for connection {connection_id}")
        return refreshed
