from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.database import as_utc


class Credential(BaseModel):
    """Aggregator-issued token authorizing calls on a user's behalf."""

    token: str = Field(repr=False)
    expires_at: Optional[datetime] = None
    external_user_ref: Optional[str] = None
    token_type: Optional[str] = None

    @field_validator("expires_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class TransactionWindow(BaseModel):
    mode: Literal["full_history", "since", "date_range"]
    since: Optional[datetime] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def full_history(cls) -> "TransactionWindow":
        return cls(mode="full_history")

    @classmethod
    def since_cursor(cls, cursor: datetime) -> "TransactionWindow":
        return cls(mode="since", since=as_utc(cursor))

    @classmethod
    def date_range(cls, start: datetime, end: datetime) -> "TransactionWindow":
        return cls(mode="date_range", start=as_utc(start), end=as_utc(end))

    @property
    def include_deleted(self) -> bool:
        # Incremental fetches must see soft-deleted items to mirror them locally.
        return self.mode == "since"

    def describe(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "since": self.since.isoformat() if self.since else None,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


class _RemoteEntity(BaseModel):
    # Raw aggregator payloads: keep unknown keys so they can be stored as metadata.
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class RemoteConnection(_RemoteEntity):
    id: str
    id_user: Optional[str] = None
    id_connector: Optional[str] = None
    state: Optional[str] = None
    active: Optional[bool] = None
    connector: Optional[Dict[str, Any]] = None
    bank_name: Optional[str] = None

    def display_name(self) -> str:
        if self.bank_name:
            return self.bank_name
        if self.connector and self.connector.get("name"):
            return str(self.connector["name"])
        return "Unknown Bank"


class RemoteAccount(_RemoteEntity):
    id: str
    id_connection: Optional[str] = None
    name: Optional[str] = None
    original_name: Optional[str] = None
    number: Optional[str] = None
    iban: Optional[str] = None
    bic: Optional[str] = None
    type: Optional[str] = None
    currency: Any = None
    balance: Any = None
    coming: Any = None
    disabled: Any = None
    bank: Optional[Dict[str, Any]] = None

    @property
    def is_disabled(self) -> bool:
        # Powens reports a timestamp (or true) for disabled accounts and null otherwise.
        return bool(self.disabled)


class RemoteTransaction(_RemoteEntity):
    id: Optional[str] = None
    id_account: Optional[str] = None
    date: Optional[str] = None
    vdate: Optional[str] = None
    value: Any = None
    wording: Optional[str] = None
    original_wording: Optional[str] = None
    simplified_wording: Optional[str] = None
    original_currency: Any = None
    type: Optional[str] = None
    coming: Any = None
    deleted: Any = None
    active: Any = None
    last_update: Optional[str] = None
    balance_after: Any = None
