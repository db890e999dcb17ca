from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from models.aggregator import (
    Credential,
    RemoteAccount,
    RemoteConnection,
    RemoteTransaction,
    TransactionWindow,
)


class AggregatorError(Exception):
    """Base exception for aggregator integration errors"""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AggregatorConfigurationError(AggregatorError):
    """Raised when aggregator configuration is missing or invalid"""

    pass


class AggregatorAuthError(AggregatorError):
    """Raised when the aggregator rejects the credential (401/403)"""

    pass


class AggregatorTransientError(AggregatorError):
    """Raised on timeouts, transport failures, throttling and 5xx responses"""

    pass


class AggregatorClientError(AggregatorError):
    """Raised on other 4xx responses or unreadable payloads"""

    pass


def redact(token: Optional[str]) -> str:
    if not token:
        return "none"
    return f"{token[:6]}..."


class AggregatorClient(ABC):
    """Outbound contract to the financial-data aggregator.

    Every call is bounded by a timeout. ``external_user_ref`` is the
    aggregator-side user id; ``"me"`` addresses the credential's own user.
    """

    @abstractmethod
    async def authenticate(self, user_ref: Optional[str] = None) -> Credential:
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> Credential:
        pass

    @abstractmethod
    async def list_connections(self, credential: Credential) -> List[RemoteConnection]:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        credential: Credential,
        external_user_ref: Optional[str] = None,
        include_disabled: bool = True,
    ) -> List[RemoteAccount]:
        pass

    @abstractmethod
    async def enable_account(
        self,
        credential: Credential,
        external_user_ref: Optional[str],
        account_id: str,
    ) -> None:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        credential: Credential,
        external_user_ref: Optional[str],
        window: TransactionWindow,
    ) -> List[RemoteTransaction]:
        pass

    @abstractmethod
    async def create_connection(
        self, credential: Credential, connector_id: str, fields: Dict[str, Any]
    ) -> RemoteConnection:
        pass

    @abstractmethod
    async def refresh_credential(self, credential: Credential) -> Credential:
        pass

    async def aclose(self) -> None:
        pass
