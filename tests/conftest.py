import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

from cryptography.fernet import Fernet

# Set test environment variables FIRST
TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
os.environ["TESTING"] = "true"
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["POWENS_CLIENT_ID"] = "test-client"
os.environ["POWENS_CLIENT_SECRET"] = "test-secret"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from business.credentials import CredentialStore  # noqa: E402
from business.sync.service import SyncOrchestrator  # noqa: E402
from database.supabase import orm  # noqa: E402
from database.supabase.ledger import SqlLedgerStore  # noqa: E402
from integrations.base import AggregatorAuthError, AggregatorClient, AggregatorTransientError  # noqa: E402
from models.aggregator import (  # noqa: E402
    Credential,
    RemoteAccount,
    RemoteConnection,
    RemoteTransaction,
    TransactionWindow,
)
from schemas.ledger import ConnectionCreate  # noqa: E402

USER_ID = "5b0e3c1a-7d1e-4a8e-9d55-3f2f1b8c9a01"


class FakeAggregator(AggregatorClient):
    """In-process aggregator: serves configured payloads and records every call."""

    def __init__(self) -> None:
        self.accounts: List[Dict[str, Any]] = []
        self.transactions: List[Dict[str, Any]] = []
        self.connections: List[Dict[str, Any]] = []
        self.enable_failures: set = set()
        self.valid_tokens: Optional[set] = None
        self.auth_failures_remaining = 0
        self.refreshed: Optional[Credential] = None
        self.accounts_delay = 0.0
        self.transactions_delay = 0.0
        self.transactions_error: Optional[Exception] = None
        self.calls: List[str] = []
        self.windows: List[TransactionWindow] = []
        self.tokens_used: List[str] = []

    def _check(self, credential: Credential) -> None:
        self.tokens_used.append(credential.token)
        if self.auth_failures_remaining:
            self.auth_failures_remaining -= 1
            raise AggregatorAuthError("token rejected", status_code=401)
        if self.valid_tokens is not None and credential.token not in self.valid_tokens:
            raise AggregatorAuthError("token rejected", status_code=401)

    async def authenticate(self, user_ref=None) -> Credential:
        self.calls.append("authenticate")
        return Credential(token="fresh-user-token", external_user_ref=user_ref)

    async def exchange_code(self, code: str) -> Credential:
        self.calls.append("exchange_code")
        return Credential(token=f"token-for-{code}", external_user_ref="42")

    async def list_connections(self, credential):
        self.calls.append("list_connections")
        return [RemoteConnection.model_validate(c) for c in self.connections]

    async def list_accounts(self, credential, external_user_ref=None, include_disabled=True):
        self.calls.append("list_accounts")
        if self.accounts_delay:
            await asyncio.sleep(self.accounts_delay)
        self._check(credential)
        return [RemoteAccount.model_validate(a) for a in self.accounts]

    async def enable_account(self, credential, external_user_ref, account_id):
        self.calls.append(f"enable_account:{account_id}")
        self._check(credential)
        if account_id in self.enable_failures:
            raise AggregatorTransientError("enable failed", status_code=503)
        for account in self.accounts:
            if account["id"] == account_id:
                account["disabled"] = None

    async def list_transactions(self, credential, external_user_ref, window):
        self.calls.append("list_transactions")
        self.windows.append(window)
        if self.transactions_delay:
            await asyncio.sleep(self.transactions_delay)
        self._check(credential)
        if self.transactions_error is not None:
            raise self.transactions_error
        return [RemoteTransaction.model_validate(t) for t in self.transactions]

    async def create_connection(self, credential, connector_id, fields):
        self.calls.append("create_connection")
        return RemoteConnection(id="new-connection", id_connector=connector_id)

    async def refresh_credential(self, credential):
        self.calls.append("refresh_credential")
        return self.refreshed or credential


def account_payload(account_id: str = "acc-1", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": account_id,
        "id_connection": "conn-ext-1",
        "name": f"Account {account_id}",
        "number": "0001",
        "iban": "FR7630006000011234567890189",
        "type": "checking",
        "currency": {"id": "EUR", "symbol": "€"},
        "balance": "1520.35",
        "coming": "-20.00",
        "disabled": None,
        "bank": {"name": "Test Bank"},
    }
    payload.update(overrides)
    return payload


def transaction_payload(
    transaction_id: str, account_id: str = "acc-1", **overrides: Any
) -> Dict[str, Any]:
    payload = {
        "id": transaction_id,
        "id_account": account_id,
        "date": "2026-10-01",
        "vdate": "2026-10-02",
        "value": -12.5,
        "wording": f"CARD PAYMENT {transaction_id}",
        "simplified_wording": f"Shop {transaction_id}",
        "type": "card",
        "coming": False,
        "deleted": None,
        "active": True,
        "last_update": "2026-10-01 10:00:00",
    }
    payload.update(overrides)
    return payload


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(scope="function")
def setup_test_db():
    """Set up a fresh SQLite database for each test."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    db_url = f"sqlite://{db_path}"
    orm.run_migrations(db_url)

    yield db_url

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def store(setup_test_db) -> SqlLedgerStore:
    return SqlLedgerStore(setup_test_db)


@pytest.fixture
def aggregator() -> FakeAggregator:
    fake = FakeAggregator()
    fake.accounts = [account_payload("acc-1")]
    return fake


@pytest.fixture
def credentials(store, aggregator) -> CredentialStore:
    return CredentialStore(store, aggregator, TEST_ENCRYPTION_KEY)


@pytest.fixture
def orchestrator(store, aggregator, credentials) -> SyncOrchestrator:
    return SyncOrchestrator(store, aggregator, credentials)


@pytest.fixture
def make_connection(store, credentials):
    def _make(
        external_connection_id: str = "conn-ext-1",
        token: str = "token-1",
        expires_at: Optional[datetime] = None,
        user_id: str = USER_ID,
    ):
        return store.create_connection(
            ConnectionCreate(
                user_id=user_id,
                external_connection_id=external_connection_id,
                external_user_ref="42",
                bank_name="Test Bank",
                access_token_encrypted=credentials.encrypt_token(token),
                token_expires_at=expires_at,
            )
        )

    return _make


@pytest.fixture
def soon() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.fixture(scope="function")
def client(store, aggregator) -> Generator:
    """Create a test client wired to the fake aggregator and a fresh database."""
    from main import build_services, create_app

    services = build_services(store, aggregator, TEST_ENCRYPTION_KEY)
    app = create_app(services=services, start_scheduler=False)
    with TestClient(app) as c:
        c.services = services
        yield c
