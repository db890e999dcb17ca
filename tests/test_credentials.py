from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from business.credentials import CredentialDecryptionError, CredentialStore
from business.sync.errors import ConfigurationError
from conftest import run
from models.aggregator import Credential
from models.ledger import ConnectionStatus
from schemas.ledger import ConnectionPatch

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_missing_or_invalid_key_is_a_configuration_error(store, aggregator):
    with pytest.raises(ConfigurationError):
        CredentialStore(store, aggregator, encryption_key=None)
    with pytest.raises(ConfigurationError):
        CredentialStore(store, aggregator, encryption_key="not-a-fernet-key")


def test_token_is_encrypted_at_rest(store, credentials, make_connection):
    connection = make_connection(token="secret-token")

    stored = store.get_connection(connection.id)
    assert stored.access_token_encrypted != "secret-token"
    assert "secret-token" not in repr(stored)
    assert credentials.get(connection.id).token == "secret-token"


def test_decryption_fails_closed(store, aggregator, credentials, make_connection):
    connection = make_connection()
    other = CredentialStore(store, aggregator, Fernet.generate_key().decode())

    with pytest.raises(CredentialDecryptionError):
        other.get(connection.id)
    with pytest.raises(CredentialDecryptionError):
        credentials.decrypt_token("garbage")


def test_get_without_token_is_a_configuration_error(store, credentials, make_connection):
    connection = make_connection()
    store.update_connection(connection.id, ConnectionPatch(access_token_encrypted=None))

    with pytest.raises(ConfigurationError):
        credentials.get(connection.id)
    with pytest.raises(ConfigurationError):
        credentials.get("missing-connection")


def test_expiry_uses_safety_buffer():
    fresh = Credential(token="t", expires_at=NOW + timedelta(hours=1))
    nearly = Credential(token="t", expires_at=NOW + timedelta(minutes=5))
    never = Credential(token="t")

    assert CredentialStore.is_expired(fresh, now=NOW) is False
    assert CredentialStore.is_expired(nearly, now=NOW) is True
    assert CredentialStore.is_expired(never, now=NOW) is False
    assert CredentialStore.expires_within(fresh, 2 * 3600, now=NOW) is True


def test_refresh_persists_new_token(store, aggregator, credentials, make_connection):
    connection = make_connection(token="old-token")
    expires = NOW + timedelta(days=30)
    aggregator.refreshed = Credential(token="new-token", expires_at=expires, external_user_ref="42")

    refreshed = run(credentials.refresh(connection.id))

    assert refreshed.token == "new-token"
    assert "refresh_credential" in aggregator.calls
    assert credentials.get(connection.id).token == "new-token"
    assert store.get_connection(connection.id).token_expires_at == expires


def test_revoke_clears_token_and_deactivates(store, credentials, make_connection):
    connection = make_connection()

    credentials.revoke(connection.id)

    stored = store.get_connection(connection.id)
    assert stored.access_token_encrypted is None
    assert stored.status == ConnectionStatus.INACTIVE
