from datetime import datetime, timedelta, timezone

import pytest

from conftest import USER_ID
from database.ledger import PersistenceError, StoreUnavailableError
from database.supabase.ledger import SqlLedgerStore
from models.ledger import ConnectionStatus, SyncLog
from schemas.ledger import AccountUpsert, ConnectionCreate, ConnectionPatch

T0 = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)


def _account(connection_id: str, external_id: str, user_id: str = USER_ID) -> AccountUpsert:
    return AccountUpsert(
        user_id=user_id,
        connection_id=connection_id,
        external_account_id=external_id,
        account_name=f"Account {external_id}",
    )


def test_cursor_only_moves_forward(store, make_connection):
    connection = make_connection()

    assert store.get_cursor(connection.id) is None
    assert store.set_cursor(connection.id, T0) is True
    assert store.set_cursor(connection.id, T0 + timedelta(hours=1)) is True
    assert store.set_cursor(connection.id, T0) is False
    assert store.get_cursor(connection.id) == T0 + timedelta(hours=1)


def test_patch_writes_only_present_fields(store, make_connection):
    connection = make_connection()
    store.set_sync_status(connection.id, "failed", "boom", T0)

    store.update_connection(connection.id, ConnectionPatch(bank_name="Renamed"))
    stored = store.get_connection(connection.id)
    assert stored.bank_name == "Renamed"
    assert stored.last_error_message == "boom"
    assert stored.access_token_encrypted == connection.access_token_encrypted

    store.update_connection(connection.id, ConnectionPatch(last_error_message=None))
    assert store.get_connection(connection.id).last_error_message is None


def test_update_unknown_connection_returns_none(store):
    assert store.update_connection("missing", ConnectionPatch(bank_name="x")) is None


def test_create_connection_is_idempotent_per_user_and_external_id(store, make_connection):
    first = make_connection()
    store.update_connection(first.id, ConnectionPatch(status=ConnectionStatus.EXPIRED))

    again = store.create_connection(
        ConnectionCreate(user_id=USER_ID, external_connection_id="conn-ext-1", bank_name="Test Bank")
    )

    assert again.id == first.id
    assert again.status == ConnectionStatus.ACTIVE
    # A re-link without a token keeps the stored one
    assert again.access_token_encrypted == first.access_token_encrypted
    assert len(store.list_connections_for_user(USER_ID)) == 1


def test_list_connections_filters_inactive(store, make_connection):
    active = make_connection("conn-a")
    paused = make_connection("conn-b")
    store.update_connection(paused.id, ConnectionPatch(sync_enabled=False))

    assert [c.id for c in store.list_connections()] == [active.id]
    assert len(store.list_connections(active_only=False)) == 2


def test_set_primary_account_is_exclusive(store, make_connection):
    connection = make_connection()
    first, _ = store.upsert_account(_account(connection.id, "acc-1"))
    second, _ = store.upsert_account(_account(connection.id, "acc-2"))

    store.set_primary_account(USER_ID, first.id)
    updated = store.set_primary_account(USER_ID, second.id)

    assert updated.is_primary is True
    primaries = [a.id for a in store.list_accounts(connection.id) if a.is_primary]
    assert primaries == [second.id]


def test_set_primary_account_rejects_foreign_account(store, make_connection):
    connection = make_connection()
    account, _ = store.upsert_account(_account(connection.id, "acc-1"))

    assert store.set_primary_account("someone-else", account.id) is None
    assert store.set_primary_account(USER_ID, "missing") is None


def test_sync_logs_and_counts(store, make_connection):
    connection = make_connection()
    store.record_sync_log(
        SyncLog(
            id="log-1",
            user_id=USER_ID,
            connection_id=connection.id,
            sync_type="manual",
            status="success",
            started_at=T0,
            completed_at=T0 + timedelta(seconds=3),
            items_processed=4,
            items_succeeded=4,
            sync_metadata={"window_reason": "initial_backfill"},
        )
    )

    logs = store.list_sync_logs(connection.id)
    assert len(logs) == 1
    assert logs[0].sync_metadata == {"window_reason": "initial_backfill"}
    assert store.counts() == {
        "bank_connections": 1,
        "bank_accounts": 0,
        "transactions": 0,
        "sync_logs": 1,
    }


def test_constraint_violation_is_a_persistence_error(store):
    with pytest.raises(PersistenceError):
        store.upsert_account(_account("missing-connection", "acc-1"))


def test_unreachable_store_is_reported(tmp_path):
    unreachable = SqlLedgerStore(f"sqlite://{tmp_path}/missing/dir/ledger.db")

    with pytest.raises(StoreUnavailableError):
        unreachable.ping()
