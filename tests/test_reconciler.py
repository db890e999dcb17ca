from datetime import date, datetime, timedelta, timezone

from business.sync.reconciler import (
    ConflictPolicy,
    EntityReconciler,
    should_update_transaction,
)
from conftest import USER_ID
from models.ledger import Transaction, UpsertAction
from schemas.ledger import AccountUpsert, TransactionUpsert

T0 = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)


def _incoming(**overrides) -> TransactionUpsert:
    fields = dict(
        user_id=USER_ID,
        account_id="a-1",
        external_transaction_id="tx-1",
        transaction_date=date(2026, 10, 1),
        amount=-12.5,
        description="CARD PAYMENT",
        transaction_type="debit",
        remote_last_update=T0,
    )
    fields.update(overrides)
    return TransactionUpsert(**fields)


def _stored(**overrides) -> Transaction:
    data = _incoming().model_dump()
    data.update(id="t-1", created_at=T0, updated_at=T0)
    data.update(overrides)
    return Transaction(**data)


def test_identical_payload_is_not_an_update():
    assert should_update_transaction(_stored(), _incoming()) is False


def test_missing_stored_timestamp_forces_update():
    assert should_update_transaction(_stored(remote_last_update=None), _incoming()) is True


def test_newer_remote_timestamp_updates():
    assert should_update_transaction(
        _stored(), _incoming(remote_last_update=T0 + timedelta(minutes=1))
    ) is True


def test_changed_state_updates_even_with_older_timestamp():
    older = T0 - timedelta(days=1)
    assert should_update_transaction(_stored(), _incoming(remote_last_update=older, is_pending=True))
    assert should_update_transaction(_stored(), _incoming(remote_last_update=older, is_deleted=True))
    assert should_update_transaction(_stored(), _incoming(remote_last_update=older, amount=-13.0))
    assert should_update_transaction(_stored(), _incoming(remote_last_update=older, balance_after=10.0))
    assert should_update_transaction(_stored(), _incoming(remote_last_update=older, description="NEW"))


def test_strict_timestamp_policy_ignores_field_changes():
    policy = ConflictPolicy.STRICT_TIMESTAMP
    assert should_update_transaction(_stored(), _incoming(is_pending=True), policy) is False
    assert should_update_transaction(
        _stored(), _incoming(remote_last_update=T0 + timedelta(seconds=1)), policy
    ) is True


def _account(connection_id: str, **overrides) -> AccountUpsert:
    fields = dict(
        user_id=USER_ID,
        connection_id=connection_id,
        external_account_id="acc-1",
        account_name="Main",
        balance=100.0,
    )
    fields.update(overrides)
    return AccountUpsert(**fields)


def test_account_upsert_overwrites_unconditionally(store, make_connection):
    connection = make_connection()
    reconciler = EntityReconciler(store)

    first, created = reconciler.reconcile_account(_account(connection.id))
    second, created_again = reconciler.reconcile_account(
        _account(connection.id, balance=50.0, account_name="Renamed", disabled=True)
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.balance == 50.0
    assert second.account_name == "Renamed"
    assert second.disabled is True
    assert len(store.list_accounts(connection.id)) == 1


def test_transaction_upsert_is_idempotent(store, make_connection):
    connection = make_connection()
    reconciler = EntityReconciler(store)
    account, _ = reconciler.reconcile_account(_account(connection.id))

    created, action = reconciler.reconcile_transaction(_incoming(account_id=account.id))
    again, second_action = reconciler.reconcile_transaction(_incoming(account_id=account.id))

    assert action == UpsertAction.CREATED
    assert second_action == UpsertAction.UNCHANGED
    assert again.id == created.id
    assert again.updated_at == created.updated_at
    assert store.count_transactions(connection.id) == 1


def test_transaction_upsert_applies_changes(store, make_connection):
    connection = make_connection()
    reconciler = EntityReconciler(store)
    account, _ = reconciler.reconcile_account(_account(connection.id))
    reconciler.reconcile_transaction(_incoming(account_id=account.id, is_pending=True))

    updated, action = reconciler.reconcile_transaction(
        _incoming(
            account_id=account.id,
            is_pending=False,
            remote_last_update=T0 + timedelta(hours=1),
        )
    )

    assert action == UpsertAction.UPDATED
    assert updated.is_pending is False
    assert updated.remote_last_update == T0 + timedelta(hours=1)
