from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from business.credentials import CredentialDecryptionError, CredentialStore
from business.sync import mappers
from business.sync.errors import (
    ConfigurationError,
    ErrorKind,
    ItemError,
    SyncAbort,
    error_kind,
)
from business.sync.models import SyncOptions, SyncStats, SyncSummary
from business.sync.policy import evaluate_sync_need
from business.sync.reconciler import EntityReconciler
from business.sync.window import select_transaction_window
from database.ledger import LedgerStore, PersistenceError, StoreUnavailableError
from integrations.base import (
    AggregatorAuthError,
    AggregatorClient,
    AggregatorConfigurationError,
    AggregatorError,
)
from models.aggregator import Credential, RemoteAccount, RemoteConnection
from models.ledger import (
    Connection,
    ConnectionStatus,
    SyncLog,
    SyncStatus,
    UpsertAction,
)
from schemas.ledger import ConnectionCreate, ConnectionPatch
from utils.constants import CALLBACK_DEADLINE_SECONDS
from utils.database import utc_now

logger = logging.getLogger(__name__)


@dataclass
class _RunContext:
    connection: Connection
    options: SyncOptions
    summary: SyncSummary
    credential: Optional[Credential] = None
    reauthenticated: bool = False


def _log(level: int, event: str, **fields: Any) -> None:
    logger.log(level, json.dumps({"event": f"sync.{event}", **fields}, default=str))


class SyncOrchestrator:
    """Drives one connection's sync end to end and reports the outcome.

    Runs for different connections may overlap; a second run for a connection
    that is already syncing returns a ``skipped`` summary.
    """

    def __init__(
        self,
        store: LedgerStore,
        client: AggregatorClient,
        credentials: CredentialStore,
        reconciler: Optional[EntityReconciler] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.client = client
        self.credentials = credentials
        self.reconciler = reconciler or EntityReconciler(store)
        self.clock = clock
        self._active: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._stats = SyncStats()

    # Entry points

    async def run(
        self, connection_id: str, options: Optional[SyncOptions] = None
    ) -> SyncSummary:
        options = options or SyncOptions()
        summary = SyncSummary(
            connection_id=connection_id,
            sync_type=options.sync_type,
            started_at=self.clock(),
        )
        if connection_id in self._active:
            _log(logging.INFO, "skipped", connection_id=connection_id, reason="already_running")
            summary.status = SyncStatus.SKIPPED
            summary.reason = "already_running"
            summary.finished_at = self.clock()
            return summary

        self._active.add(connection_id)
        abort: Optional[SyncAbort] = None
        connection: Optional[Connection] = None
        try:
            _log(
                logging.INFO,
                "started",
                connection_id=connection_id,
                sync_type=options.sync_type,
                full_history=options.full_history,
                include_transactions=options.include_transactions,
            )
            connection = await self._load_connection(connection_id)
            summary.user_id = connection.user_id
            ctx = _RunContext(connection=connection, options=options, summary=summary)
            await self._execute(ctx)
        except SyncAbort as e:
            abort = e
        except Exception as e:
            logger.exception(f"Unexpected error while syncing connection {connection_id}")
            abort = SyncAbort(error_kind(e), str(e))
        finally:
            self._active.discard(connection_id)
            self._cancelled.discard(connection_id)

        if abort is not None:
            summary.errors.append(ItemError(abort.kind, "connection", abort.message, connection_id))
            _log(
                logging.ERROR,
                "aborted",
                connection_id=connection_id,
                kind=abort.kind.value,
                error=abort.message,
            )

        summary.status = self.classify(summary, aborted=abort is not None)
        summary.message = self._status_message(summary, abort)
        summary.finished_at = self.clock()
        if connection is not None:
            await self._finalize(connection, options, summary, abort)
        self._record_stats(summary)

        _log(
            logging.INFO,
            "completed",
            connection_id=connection_id,
            status=summary.status.value,
            items_fetched=summary.items_fetched,
            items_failed=summary.items_failed,
            transactions_created=summary.transactions_created,
            transactions_updated=summary.transactions_updated,
            cursor_advanced=summary.cursor_advanced,
        )
        return summary

    async def request_sync(
        self, connection_id: str, options: Optional[SyncOptions] = None
    ) -> Optional[SyncSummary]:
        """Run unless rate-limited or inactive; None for an unknown connection."""
        options = options or SyncOptions()
        connection = await self._store_call(self.store.get_connection, connection_id)
        if connection is None:
            return None
        decision = evaluate_sync_need(connection, self.clock(), force=options.force)
        if not decision.should_sync:
            now = self.clock()
            return SyncSummary(
                connection_id=connection_id,
                user_id=connection.user_id,
                sync_type=options.sync_type,
                started_at=now,
                finished_at=now,
                status=SyncStatus.SKIPPED,
                reason=decision.reason,
            )
        return await self.run(connection_id, options)

    async def run_for_user(
        self, user_id: str, options: Optional[SyncOptions] = None
    ) -> List[SyncSummary]:
        """Sync each active connection of the user sequentially."""
        connections = await self._store_call(self.store.list_connections_for_user, user_id)
        results: List[SyncSummary] = []
        for connection in connections:
            if connection.status != ConnectionStatus.ACTIVE or not connection.sync_enabled:
                continue
            results.append(await self.run(connection.id, options))
        return results

    async def run_with_deadline(
        self,
        connection_id: str,
        options: Optional[SyncOptions] = None,
        deadline_seconds: float = CALLBACK_DEADLINE_SECONDS,
    ) -> SyncSummary:
        """Answer within the deadline; the run itself keeps going in the background."""
        task = asyncio.ensure_future(self.run(connection_id, options))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=deadline_seconds)
        except asyncio.TimeoutError:
            _log(
                logging.WARNING,
                "deadline_exceeded",
                connection_id=connection_id,
                deadline_seconds=deadline_seconds,
            )
            now = self.clock()
            return SyncSummary(
                connection_id=connection_id,
                sync_type=(options or SyncOptions()).sync_type,
                started_at=now,
                finished_at=now,
                status=SyncStatus.TIMED_OUT,
                reason="deadline_exceeded",
                message="Sync continues in the background",
            )

    async def drain(self) -> None:
        """Wait for runs that outlived their deadline."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel(self, connection_id: str) -> bool:
        """Ask a running sync to stop issuing network calls."""
        if connection_id not in self._active:
            return False
        self._cancelled.add(connection_id)
        return True

    def is_running(self, connection_id: str) -> bool:
        return connection_id in self._active

    async def connect(
        self,
        user_id: str,
        credential: Credential,
        remote_connection: RemoteConnection,
    ) -> Connection:
        """Persist a freshly authorized connection and its encrypted credential."""
        data = ConnectionCreate(
            user_id=user_id,
            external_connection_id=remote_connection.id,
            external_user_ref=credential.external_user_ref or remote_connection.id_user,
            bank_name=remote_connection.display_name(),
            access_token_encrypted=self.credentials.encrypt_token(credential.token),
            token_expires_at=credential.expires_at,
        )
        connection = await self._store_call(self.store.create_connection, data)
        _log(
            logging.INFO,
            "connection_stored",
            connection_id=connection.id,
            external_connection_id=connection.external_connection_id,
            user_id=user_id,
        )
        return connection

    async def status(self, connection_id: str) -> Optional[Dict[str, Any]]:
        connection = await self._store_call(self.store.get_connection, connection_id)
        if connection is None:
            return None
        decision = evaluate_sync_need(connection, self.clock())
        return {
            "connection_id": connection.id,
            "bank_name": connection.bank_name,
            "status": connection.status.value,
            "sync_enabled": connection.sync_enabled,
            "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
            "last_success_at": connection.last_success_at.isoformat()
            if connection.last_success_at
            else None,
            "last_sync_status": connection.last_sync_status,
            "last_error_message": connection.last_error_message,
            "sync_cursor": connection.sync_cursor.isoformat() if connection.sync_cursor else None,
            "is_running": self.is_running(connection.id),
            "decision": decision.to_dict(),
        }

    def stats(self) -> SyncStats:
        return SyncStats(
            total_runs=self._stats.total_runs,
            successful_runs=self._stats.successful_runs,
            failed_runs=self._stats.failed_runs,
            last_run_at=self._stats.last_run_at,
            active_runs=len(self._active),
        )

    @staticmethod
    def classify(summary: SyncSummary, aborted: bool = False) -> SyncStatus:
        """Transactions and accounts are judged apart so neither dilutes the other's ratio."""
        if aborted:
            return SyncStatus.FAILED
        tx_failed = summary.transactions_failed
        if tx_failed and tx_failed * 2 >= summary.transactions_fetched:
            return SyncStatus.FAILED
        acc_failed = summary.accounts_failed
        if acc_failed and acc_failed == summary.accounts_fetched:
            return SyncStatus.FAILED
        if (
            acc_failed
            and not summary.transactions_fetched
            and acc_failed * 2 >= summary.accounts_fetched
        ):
            return SyncStatus.FAILED
        if summary.items_failed:
            return SyncStatus.PARTIAL_SUCCESS
        return SyncStatus.SUCCESS

    # Steps

    async def _execute(self, ctx: _RunContext) -> None:
        ctx.credential = await self._acquire_credential(ctx)

        remote_accounts = await self._fetch_accounts(ctx)
        remote_accounts = await self._enable_accounts(ctx, remote_accounts)
        account_ids = await self._persist_accounts(ctx, remote_accounts)

        if not ctx.options.include_transactions:
            return

        await self._fetch_and_reconcile_transactions(ctx, account_ids)

    async def _load_connection(self, connection_id: str) -> Connection:
        connection = await self._store_call(self.store.get_connection, connection_id)
        if connection is None:
            raise SyncAbort(ErrorKind.CONFIGURATION, f"Unknown connection {connection_id}")
        return connection

    async def _acquire_credential(self, ctx: _RunContext) -> Credential:
        try:
            credential = await self._store_call(self.credentials.get, ctx.connection.id)
        except (ConfigurationError, CredentialDecryptionError) as e:
            raise SyncAbort(ErrorKind.CONFIGURATION, str(e)) from e

        if ctx.options.refresh_credential or self.credentials.is_expired(
            credential, now=self.clock()
        ):
            _log(logging.INFO, "credential_refresh", connection_id=ctx.connection.id)
            credential = await self._refresh_credential(ctx)
        return credential

    async def _refresh_credential(self, ctx: _RunContext) -> Credential:
        self._check_cancelled(ctx)
        try:
            return await self.credentials.refresh(ctx.connection.id)
        except (StoreUnavailableError, PersistenceError) as e:
            raise SyncAbort(error_kind(e), str(e)) from e
        except (ConfigurationError, CredentialDecryptionError, AggregatorConfigurationError) as e:
            raise SyncAbort(ErrorKind.CONFIGURATION, str(e)) from e
        except AggregatorError as e:
            raise SyncAbort(error_kind(e), f"Credential refresh failed: {e}") from e

    async def _call_aggregator(
        self, ctx: _RunContext, call: Callable[[Credential], Awaitable[Any]]
    ) -> Any:
        """Issue one aggregator call, re-authenticating at most once per run."""
        self._check_cancelled(ctx)
        try:
            return await call(ctx.credential)
        except AggregatorAuthError:
            if ctx.reauthenticated:
                raise SyncAbort(ErrorKind.AUTH, "Aggregator rejected the refreshed credential")
            ctx.reauthenticated = True
            _log(logging.WARNING, "reauthenticating", connection_id=ctx.connection.id)
            ctx.credential = await self._refresh_credential(ctx)

        self._check_cancelled(ctx)
        try:
            return await call(ctx.credential)
        except AggregatorAuthError as e:
            raise SyncAbort(ErrorKind.AUTH, f"Aggregator rejected credential: {e}") from e

    async def _fetch_accounts(self, ctx: _RunContext) -> List[RemoteAccount]:
        try:
            accounts = await self._call_aggregator(
                ctx,
                partial(
                    self._list_accounts_call,
                    external_user_ref=ctx.connection.external_user_ref,
                ),
            )
        except AggregatorError as e:
            raise SyncAbort(error_kind(e), f"Fetching accounts failed: {e}") from e
        # The aggregator lists every account of the user; keep this connection's.
        return [
            a
            for a in accounts
            if not a.id_connection or a.id_connection == ctx.connection.external_connection_id
        ]

    async def _list_accounts_call(
        self, credential: Credential, external_user_ref: Optional[str]
    ) -> List[RemoteAccount]:
        return await self.client.list_accounts(
            credential, external_user_ref, include_disabled=True
        )

    async def _enable_accounts(
        self, ctx: _RunContext, accounts: List[RemoteAccount]
    ) -> List[RemoteAccount]:
        disabled = [a for a in accounts if a.is_disabled]
        if not disabled:
            return accounts

        _log(
            logging.INFO,
            "enabling_accounts",
            connection_id=ctx.connection.id,
            disabled=[a.id for a in disabled],
        )
        for account in disabled:
            try:
                await self._call_aggregator(
                    ctx,
                    partial(
                        self._enable_account_call,
                        external_user_ref=ctx.connection.external_user_ref,
                        account_id=account.id,
                    ),
                )
                ctx.summary.accounts_enabled += 1
            except AggregatorError as e:
                ctx.summary.accounts_enable_failed += 1
                ctx.summary.errors.append(ItemError(error_kind(e), "account", str(e), account.id))
                _log(
                    logging.WARNING,
                    "account_enable_failed",
                    connection_id=ctx.connection.id,
                    account_id=account.id,
                    error=str(e),
                )

        # The re-fetch is authoritative for which accounts are now enabled.
        return await self._fetch_accounts(ctx)

    async def _enable_account_call(
        self, credential: Credential, external_user_ref: Optional[str], account_id: str
    ) -> None:
        await self.client.enable_account(credential, external_user_ref, account_id)

    async def _persist_accounts(
        self, ctx: _RunContext, accounts: List[RemoteAccount]
    ) -> Dict[str, str]:
        summary = ctx.summary
        summary.accounts_fetched = len(accounts)
        account_ids: Dict[str, str] = {}
        for remote in accounts:
            try:
                data = mappers.map_account(
                    user_id=ctx.connection.user_id,
                    connection_id=ctx.connection.id,
                    account=remote,
                    default_bank_name=ctx.connection.bank_name,
                )
                account, created = await self._store_call(
                    self.reconciler.reconcile_account, data
                )
            except (PersistenceError, ValueError) as e:
                summary.accounts_failed += 1
                summary.errors.append(ItemError(error_kind(e), "account", str(e), remote.id))
                _log(
                    logging.ERROR,
                    "item_failed",
                    connection_id=ctx.connection.id,
                    entity="account",
                    external_id=remote.id,
                    error=str(e),
                )
                continue

            account_ids[account.external_account_id] = account.id
            if created:
                summary.accounts_created += 1
            else:
                summary.accounts_updated += 1
        return account_ids

    async def _fetch_and_reconcile_transactions(
        self, ctx: _RunContext, account_ids: Dict[str, str]
    ) -> None:
        summary = ctx.summary
        connection = ctx.connection
        cursor = await self._store_call(self.store.get_cursor, connection.id)
        local_count = 0
        if cursor is None and not ctx.options.full_history:
            local_count = await self._store_call(self.store.count_transactions, connection.id)

        decision = select_transaction_window(
            now=summary.started_at,
            cursor=cursor,
            local_transaction_count=local_count,
            full_history=ctx.options.full_history,
        )
        summary.window = decision.window.describe()
        summary.window_reason = decision.reason
        summary.window_fallback = decision.fallback
        _log(
            logging.WARNING if decision.fallback else logging.INFO,
            "window_selected",
            connection_id=connection.id,
            reason=decision.reason,
            window=summary.window,
        )

        try:
            transactions = await self._call_aggregator(
                ctx,
                partial(
                    self._list_transactions_call,
                    external_user_ref=connection.external_user_ref,
                    window=decision.window,
                ),
            )
        except AggregatorError as e:
            raise SyncAbort(error_kind(e), f"Fetching transactions failed: {e}") from e

        summary.transactions_fetched = len(transactions)
        for remote in transactions:
            account_id = await self._resolve_account(ctx, account_ids, remote.id_account)
            if account_id is None:
                summary.transactions_skipped += 1
                _log(
                    logging.INFO,
                    "item_skipped",
                    connection_id=connection.id,
                    entity="transaction",
                    external_id=remote.id,
                    account_id=remote.id_account,
                    reason="unknown_account",
                )
                continue

            try:
                data = mappers.map_transaction(
                    user_id=connection.user_id, account_id=account_id, transaction=remote
                )
                _, action = await self._store_call(self.reconciler.reconcile_transaction, data)
            except (PersistenceError, ValueError) as e:
                summary.transactions_failed += 1
                summary.errors.append(ItemError(error_kind(e), "transaction", str(e), remote.id))
                _log(
                    logging.ERROR,
                    "item_failed",
                    connection_id=connection.id,
                    entity="transaction",
                    external_id=remote.id,
                    error=str(e),
                )
                continue

            if action == UpsertAction.CREATED:
                summary.transactions_created += 1
            elif action == UpsertAction.UPDATED:
                summary.transactions_updated += 1
            else:
                summary.transactions_unchanged += 1

    async def _list_transactions_call(self, credential, external_user_ref, window):
        return await self.client.list_transactions(credential, external_user_ref, window)

    async def _resolve_account(
        self, ctx: _RunContext, account_ids: Dict[str, Optional[str]], external_account_id: Optional[str]
    ) -> Optional[str]:
        if not external_account_id:
            return None
        if external_account_id not in account_ids:
            # Accounts persisted by earlier runs but absent from this fetch
            account = await self._store_call(
                self.store.find_account_by_external_id,
                ctx.connection.user_id,
                external_account_id,
            )
            account_ids[external_account_id] = account.id if account else None
        return account_ids[external_account_id]

    async def _finalize(
        self,
        connection: Connection,
        options: SyncOptions,
        summary: SyncSummary,
        abort: Optional[SyncAbort],
    ) -> None:
        try:
            if options.include_transactions:
                await asyncio.to_thread(
                    self.store.set_sync_status,
                    connection.id,
                    summary.status.value,
                    summary.message,
                    summary.finished_at,
                )
            elif abort is not None:
                # Refresh-only runs leave the data sync health fields alone.
                await asyncio.to_thread(
                    self.store.update_connection,
                    connection.id,
                    ConnectionPatch(last_error_message=summary.message),
                )
            if (
                options.include_transactions
                and summary.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL_SUCCESS)
            ):
                summary.cursor_advanced = await asyncio.to_thread(
                    self.store.set_cursor, connection.id, summary.started_at
                )
            if abort is not None and abort.kind == ErrorKind.AUTH:
                # Needs the user to re-consent before scheduled runs pick it up again.
                await asyncio.to_thread(
                    self.store.update_connection,
                    connection.id,
                    ConnectionPatch(status=ConnectionStatus.EXPIRED),
                )
            await asyncio.to_thread(self.store.record_sync_log, self._sync_log(summary))
        except PersistenceError as e:
            summary.errors.append(ItemError(error_kind(e), "connection", str(e), connection.id))
            _log(
                logging.ERROR,
                "finalize_failed",
                connection_id=connection.id,
                error=str(e),
            )

    # Helpers

    async def _store_call(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call off the event loop; an unreachable store aborts the run."""
        try:
            return await asyncio.to_thread(func, *args)
        except StoreUnavailableError as e:
            raise SyncAbort(ErrorKind.STORE_UNAVAILABLE, str(e)) from e

    def _check_cancelled(self, ctx: _RunContext) -> None:
        if ctx.connection.id in self._cancelled:
            raise SyncAbort(ErrorKind.CANCELLED, "cancelled")

    @staticmethod
    def _status_message(summary: SyncSummary, abort: Optional[SyncAbort]) -> Optional[str]:
        if abort is not None:
            return abort.message
        if summary.items_failed:
            return f"{summary.items_failed} of {summary.items_fetched} items failed"
        return None

    @staticmethod
    def _sync_log(summary: SyncSummary) -> SyncLog:
        return SyncLog(
            id=str(uuid.uuid4()),
            user_id=summary.user_id,
            connection_id=summary.connection_id,
            sync_type=summary.sync_type,
            status=summary.status.value,
            started_at=summary.started_at,
            completed_at=summary.finished_at,
            items_processed=summary.items_fetched,
            items_succeeded=summary.items_succeeded,
            items_failed=summary.items_failed,
            error_message=summary.message,
            sync_metadata={
                "window": summary.window,
                "window_reason": summary.window_reason,
                "window_fallback": summary.window_fallback,
                "accounts_enabled": summary.accounts_enabled,
                "accounts_enable_failed": summary.accounts_enable_failed,
                "transactions_skipped": summary.transactions_skipped,
                "cursor_advanced": summary.cursor_advanced,
            },
        )

    def _record_stats(self, summary: SyncSummary) -> None:
        self._stats.total_runs += 1
        self._stats.last_run_at = summary.finished_at
        if summary.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL_SUCCESS):
            self._stats.successful_runs += 1
        else:
            self._stats.failed_runs += 1
