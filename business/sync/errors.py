from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from database.ledger import PersistenceError, StoreUnavailableError
from integrations.base import (
    AggregatorAuthError,
    AggregatorConfigurationError,
    AggregatorTransientError,
)


class ErrorKind(str, Enum):
    AUTH = "auth"
    TRANSIENT_NETWORK = "transient_network"
    AGGREGATOR = "aggregator"
    DATA_VALIDATION = "data_validation"
    PERSISTENCE = "persistence"
    STORE_UNAVAILABLE = "store_unavailable"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"


class ConfigurationError(Exception):
    """Raised when a run cannot start: missing credential, key or settings"""

    pass


class DataValidationError(ValueError):
    """Raised when an aggregator payload cannot be mapped to a ledger record"""

    pass


class SyncAbort(Exception):
    """Whole-run fatal condition; per-item problems never raise this."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass
class ItemError:
    kind: ErrorKind
    entity: str  # 'account' | 'transaction' | 'connection'
    message: str
    external_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity": self.entity,
            "external_id": self.external_id,
            "message": self.message,
        }


def error_kind(exc: BaseException) -> ErrorKind:
    # StoreUnavailableError first: it is a PersistenceError too
    if isinstance(exc, StoreUnavailableError):
        return ErrorKind.STORE_UNAVAILABLE
    if isinstance(exc, PersistenceError):
        return ErrorKind.PERSISTENCE
    # pydantic's ValidationError is a ValueError as well
    if isinstance(exc, (DataValidationError, ValueError)):
        return ErrorKind.DATA_VALIDATION
    if isinstance(exc, (ConfigurationError, AggregatorConfigurationError)):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, AggregatorAuthError):
        return ErrorKind.AUTH
    if isinstance(exc, AggregatorTransientError):
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.AGGREGATOR
