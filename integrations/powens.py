import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from integrations.base import (
    AggregatorAuthError,
    AggregatorClient,
    AggregatorClientError,
    AggregatorConfigurationError,
    AggregatorTransientError,
    redact,
)
from models.aggregator import (
    Credential,
    RemoteAccount,
    RemoteConnection,
    RemoteTransaction,
    TransactionWindow,
)
from utils.constants import (
    AGGREGATOR_MAX_RETRIES,
    AGGREGATOR_RETRY_BACKOFF_SECONDS,
    AGGREGATOR_TIMEOUT_SECONDS,
    POWENS_API_URL,
    POWENS_CLIENT_ID,
    POWENS_CLIENT_SECRET,
    POWENS_PAGE_SIZE,
)
from utils.database import utc_now

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


class PowensClient(AggregatorClient):
    """Powens (biapi.pro 2.0) client with bounded timeouts and retry on transient failures"""

    def __init__(
        self,
        base_url: str = POWENS_API_URL,
        client_id: Optional[str] = POWENS_CLIENT_ID,
        client_secret: Optional[str] = POWENS_CLIENT_SECRET,
        timeout: float = AGGREGATOR_TIMEOUT_SECONDS,
        max_retries: int = AGGREGATOR_MAX_RETRIES,
        backoff_seconds: float = AGGREGATOR_RETRY_BACKOFF_SECONDS,
        page_size: int = POWENS_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.page_size = page_size
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        logger.info(f"Powens client initialized for {self.base_url}")

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        credential: Optional[Credential] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {}
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.token}"

        last_error: Optional[AggregatorTransientError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._http.request(
                    method, path, params=params, json=json, headers=headers
                )
            except httpx.TimeoutException as e:
                last_error = AggregatorTransientError(f"{method} {path} timed out: {e}")
            except httpx.TransportError as e:
                last_error = AggregatorTransientError(f"{method} {path} failed: {e}")
            else:
                status = response.status_code
                if status in (401, 403):
                    raise AggregatorAuthError(
                        f"{method} {path} rejected credential {redact(credential.token if credential else None)}",
                        status_code=status,
                    )
                if status in TRANSIENT_STATUS_CODES or status >= 500:
                    last_error = AggregatorTransientError(
                        f"{method} {path} returned {status}", status_code=status
                    )
                elif status >= 400:
                    raise AggregatorClientError(
                        f"{method} {path} returned {status}: {response.text[:200]}",
                        status_code=status,
                    )
                else:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise AggregatorClientError(
                            f"{method} {path} returned invalid JSON: {e}",
                            status_code=status,
                        ) from e

            if attempt < self.max_retries:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Powens call {method} {path} attempt {attempt}/{self.max_retries} failed: {last_error}; retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        raise last_error

    def _require_app_credentials(self) -> None:
        if not all([self.client_id, self.client_secret]):
            raise AggregatorConfigurationError(
                "Missing Powens client credentials in environment variables"
            )

    @staticmethod
    def _user_path(external_user_ref: Optional[str]) -> str:
        return f"/users/{external_user_ref or 'me'}"

    async def authenticate(self, user_ref: Optional[str] = None) -> Credential:
        """Create a Powens user and return its permanent token (POST /auth/init)."""
        self._require_app_credentials()
        data = await self._request(
            "POST",
            "/auth/init",
            json={"client_id": self.client_id, "client_secret": self.client_secret},
        )
        token = data.get("auth_token")
        if not token:
            raise AggregatorClientError("Powens /auth/init returned no auth_token")
        expires_in = data.get("expires_in")
        credential = Credential(
            token=token,
            token_type=data.get("type"),
            external_user_ref=str(data["id_user"]) if data.get("id_user") else user_ref,
            expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )
        logger.info(
            f"Powens user initialized: user_ref={credential.external_user_ref} token={redact(token)}"
        )
        return credential

    async def exchange_code(self, code: str) -> Credential:
        """Trade a webview authorization code for an access token."""
        self._require_app_credentials()
        data = await self._request(
            "POST",
            "/auth/token/access",
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
            },
        )
        token = data.get("access_token")
        if not token:
            raise AggregatorClientError("Powens /auth/token/access returned no access_token")
        return Credential(token=token, token_type=data.get("token_type"))

    async def list_connections(self, credential: Credential) -> List[RemoteConnection]:
        data = await self._request(
            "GET",
            f"{self._user_path(credential.external_user_ref)}/connections",
            credential=credential,
            params={"expand": "connector"},
        )
        return [RemoteConnection.model_validate(c) for c in data.get("connections", [])]

    async def list_accounts(
        self,
        credential: Credential,
        external_user_ref: Optional[str] = None,
        include_disabled: bool = True,
    ) -> List[RemoteAccount]:
        params = {"all": ""} if include_disabled else None
        data = await self._request(
            "GET",
            f"{self._user_path(external_user_ref)}/accounts",
            credential=credential,
            params=params,
        )
        return [RemoteAccount.model_validate(a) for a in data.get("accounts", [])]

    async def enable_account(
        self,
        credential: Credential,
        external_user_ref: Optional[str],
        account_id: str,
    ) -> None:
        await self._request(
            "POST",
            f"{self._user_path(external_user_ref)}/accounts/{account_id}",
            credential=credential,
            params={"all": ""},
            json={"disabled": False},
        )
        logger.info(f"Powens account {account_id} enabled")

    async def list_transactions(
        self,
        credential: Credential,
        external_user_ref: Optional[str],
        window: TransactionWindow,
    ) -> List[RemoteTransaction]:
        params: Dict[str, Any] = {"limit": self.page_size}
        if window.mode == "since":
            params["last_update"] = window.since.strftime("%Y-%m-%d %H:%M:%S")
        elif window.mode == "date_range":
            params["min_date"] = window.start.date().isoformat()
            params["max_date"] = window.end.date().isoformat()
        if window.include_deleted:
            params["all"] = ""

        transactions: List[RemoteTransaction] = []
        offset = 0
        while True:
            data = await self._request(
                "GET",
                f"{self._user_path(external_user_ref)}/transactions",
                credential=credential,
                params={**params, "offset": offset},
            )
            page = data.get("transactions", [])
            transactions.extend(RemoteTransaction.model_validate(t) for t in page)
            if len(page) < self.page_size:
                break
            offset += len(page)

        logger.info(
            f"Fetched {len(transactions)} Powens transactions ({window.mode}) for user {external_user_ref or 'me'}"
        )
        return transactions

    async def create_connection(
        self, credential: Credential, connector_id: str, fields: Dict[str, Any]
    ) -> RemoteConnection:
        data = await self._request(
            "POST",
            "/users/me/connections",
            credential=credential,
            params={"expand": "all_accounts"},
            json={"id_connector": connector_id, **fields},
        )
        return RemoteConnection.model_validate(data)

    async def refresh_credential(self, credential: Credential) -> Credential:
        """Powens tokens are permanent: verify it, and re-initialize only when rejected."""
        try:
            await self.list_connections(credential)
            return credential
        except AggregatorAuthError:
            logger.warning(
                f"Powens token {redact(credential.token)} rejected; re-initializing user {credential.external_user_ref}"
            )
            return await self.authenticate(credential.external_user_ref)
