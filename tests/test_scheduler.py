import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from business.scheduler import Scheduler
from business.sync.models import SyncOptions
from conftest import run, transaction_payload
from models.aggregator import Credential
from models.ledger import SyncStatus
from schemas.ledger import ConnectionPatch


@pytest.fixture
def scheduler(orchestrator, store, credentials) -> Scheduler:
    return Scheduler(
        orchestrator,
        store,
        credentials,
        sync_interval=0.05,
        health_check_interval=3600,
        token_refresh_interval=3600,
        housekeeping_interval=3600,
    )


def test_token_refresh_sweep_then_data_run_uses_new_token(
    store, aggregator, credentials, orchestrator, scheduler, make_connection, soon
):
    expiring = make_connection("conn-ext-1", token="token-1", expires_at=soon)
    make_connection("conn-ext-2", token="token-other", expires_at=soon + timedelta(days=10))
    aggregator.refreshed = Credential(
        token="token-2", expires_at=soon + timedelta(days=30), external_user_ref="42"
    )

    results = run(scheduler.run_job("token_refresh"))

    assert [r.connection_id for r in results] == [expiring.id]
    assert results[0].status == SyncStatus.SUCCESS
    assert results[0].sync_type == "refresh"
    assert store.get_cursor(expiring.id) is None
    assert credentials.get(expiring.id).token == "token-2"

    aggregator.valid_tokens = {"token-2"}
    aggregator.tokens_used.clear()
    aggregator.transactions = [transaction_payload("tx-1")]
    summary = run(orchestrator.run(expiring.id))

    assert summary.status == SyncStatus.SUCCESS
    assert set(aggregator.tokens_used) == {"token-2"}
    assert "authenticate" not in aggregator.calls


def test_token_refresh_skips_unusable_credentials(store, aggregator, scheduler, make_connection, soon):
    connection = make_connection(expires_at=soon)
    store.update_connection(connection.id, ConnectionPatch(access_token_encrypted="garbage"))

    assert run(scheduler.run_job("token_refresh")) == []
    assert aggregator.calls == []


def test_full_sync_runs_every_active_connection(store, scheduler, make_connection):
    first = make_connection("conn-ext-1")
    paused = make_connection("conn-ext-2")
    store.update_connection(paused.id, ConnectionPatch(sync_enabled=False))

    results = run(scheduler.run_job("full_sync"))

    assert [r.connection_id for r in results] == [first.id]
    assert results[0].sync_type == "scheduled"


def test_health_check_flags_failed_and_resyncs_stale(store, scheduler, make_connection):
    stale = make_connection("conn-ext-1")
    failed = make_connection("conn-ext-2")
    now = datetime.now(timezone.utc)
    store.set_sync_status(stale.id, "success", None, now - timedelta(days=2))
    store.set_sync_status(failed.id, "success", None, now - timedelta(hours=1))
    store.set_sync_status(failed.id, "failed", "bank unreachable", now)

    flagged = run(scheduler.run_job("health_check"))

    reasons = {(f["connection_id"], f["reason"]) for f in flagged}
    assert reasons == {(stale.id, "stale"), (failed.id, "failed")}
    resync = next(f for f in flagged if f["reason"] == "stale")
    assert resync["resync_status"] == "success"
    assert store.get_connection(stale.id).last_sync_at > now - timedelta(minutes=1)
    assert store.get_connection(failed.id).last_success_at == now - timedelta(hours=1)


def test_refresh_only_run_keeps_failed_and_stale_signals(
    store, orchestrator, scheduler, make_connection
):
    connection = make_connection()
    now = datetime.now(timezone.utc)
    store.set_sync_status(connection.id, "failed", "bank unreachable", now - timedelta(days=2))

    refresh = run(
        orchestrator.run(
            connection.id,
            SyncOptions(include_transactions=False, refresh_credential=True, sync_type="refresh"),
        )
    )
    assert refresh.status == SyncStatus.SUCCESS
    stored = store.get_connection(connection.id)
    assert stored.last_sync_status == "failed"
    assert stored.last_sync_at == now - timedelta(days=2)

    flagged = run(scheduler.health_check())

    reasons = {(f["connection_id"], f["reason"]) for f in flagged}
    assert reasons == {(connection.id, "failed"), (connection.id, "stale")}
    assert store.get_connection(connection.id).last_sync_status == "success"


def test_housekeeping_reports_counts(scheduler, make_connection):
    make_connection()

    report = run(scheduler.run_job("housekeeping"))

    assert report["counts"]["bank_connections"] == 1
    assert report["stats"]["total_runs"] == 0


def test_unknown_and_duplicate_jobs(scheduler):
    with pytest.raises(KeyError):
        run(scheduler.run_job("nope"))
    with pytest.raises(ValueError):
        scheduler.add_job("full_sync", 10, scheduler.full_sync)


def test_failing_job_is_recorded_and_scheduler_keeps_going(scheduler):
    async def broken():
        raise RuntimeError("boom")

    scheduler.add_job("broken", 3600, broken)

    assert run(scheduler.run_job("broken")) is None
    job = scheduler.jobs["broken"]
    assert job.runs == 1
    assert job.failures == 1
    assert job.last_error == "boom"


def test_start_and_stop(scheduler, make_connection):
    make_connection()

    async def lifecycle():
        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.3)
        await scheduler.stop()

    run(lifecycle())

    assert scheduler.running is False
    status = scheduler.status()
    full_sync = next(j for j in status["jobs"] if j["name"] == "full_sync")
    assert full_sync["runs"] >= 1
    assert full_sync["failures"] == 0
