from typing import Optional

from pydantic import BaseModel


class SyncRequest(BaseModel):
    full_history: bool = False
    include_transactions: bool = True
    force: bool = False


class CallbackRequest(BaseModel):
    user_id: str
    connection_id: str  # aggregator-side connection id from the webview redirect
    code: str
    external_user_ref: Optional[str] = None


class PrimaryAccountRequest(BaseModel):
    user_id: str
