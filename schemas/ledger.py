from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from models.ledger import ConnectionStatus
from utils.database import as_utc


class ConnectionCreate(BaseModel):
    user_id: str
    external_connection_id: str
    external_user_ref: Optional[str] = None
    bank_name: str = "Unknown Bank"
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    sync_enabled: bool = True
    access_token_encrypted: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None

    @field_validator("token_expires_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class ConnectionPatch(BaseModel):
    """Partial update of a connection.

    Presence is explicit: only fields that were set when the patch was built
    are written, so ``ConnectionPatch(last_error_message=None)`` clears the
    message while ``ConnectionPatch()`` leaves it alone.
    """

    external_user_ref: Optional[str] = None
    bank_name: Optional[str] = None
    status: Optional[ConnectionStatus] = None
    sync_enabled: Optional[bool] = None
    access_token_encrypted: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_error_message: Optional[str] = None

    @field_validator("token_expires_at", "last_sync_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def changes(self) -> Dict[str, Any]:
        values = self.model_dump(exclude_unset=True)
        if isinstance(values.get("status"), ConnectionStatus):
            values["status"] = values["status"].value
        return values


class AccountUpsert(BaseModel):
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
    account_metadata: Dict[str, Any] = {}


class TransactionUpsert(BaseModel):
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

    @field_validator("remote_last_update", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)
