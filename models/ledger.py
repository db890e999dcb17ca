from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from utils.database import as_utc, load_json


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    # Never persisted: returned when a run is refused or answered before it finished
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    ERROR = "error"


class UpsertAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class Connection(BaseModel):
    id: str
    user_id: str
    external_connection_id: str
    external_user_ref: Optional[str] = None
    bank_name: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    sync_enabled: bool = True
    access_token_encrypted: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_success_at: Optional[datetime] = None  # last success or partial_success
    last_error_message: Optional[str] = None
    sync_cursor: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "token_expires_at", "last_sync_at", "last_success_at", "sync_cursor", "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class Account(BaseModel):
    id: str
    user_id: str
    connection_id: str
    external_account_id: str
    account_name: str
    account_number: Optional[str] = None
    iban: Optional[str] = None
    bic: Optional[str] = None
    account_type: str = "checking"
    currency: str = "EUR"
    balance: float = 0.0
    available_balance: Optional[float] = None
    bank_name: Optional[str] = None
    disabled: bool = False
    is_primary: bool = False
    account_metadata: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    @field_validator("account_metadata", mode="before")
    @classmethod
    def _json(cls, value: Any) -> Any:
        return load_json(value)

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Transaction(BaseModel):
    id: str
    user_id: str
    account_id: str
    external_transaction_id: str
    transaction_date: date
    processed_date: Optional[date] = None
    amount: float
    currency: str = "EUR"
    description: str
    transaction_type: str
    category: Optional[str] = None
    merchant_name: Optional[str] = None
    balance_after: Optional[float] = None
    is_pending: bool = False
    is_deleted: bool = False
    is_active: bool = True
    remote_last_update: Optional[datetime] = None
    transaction_metadata: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    @field_validator("transaction_metadata", mode="before")
    @classmethod
    def _json(cls, value: Any) -> Any:
        return load_json(value)

    @field_validator("remote_last_update", "created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SyncLog(BaseModel):
    id: str
    user_id: str
    connection_id: str
    sync_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    error_message: Optional[str] = None
    sync_metadata: Dict[str, Any] = {}

    @field_validator("sync_metadata", mode="before")
    @classmethod
    def _json(cls, value: Any) -> Any:
        return load_json(value)

    @field_validator("started_at", "completed_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)
