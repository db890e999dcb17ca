from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Optional

from business.sync.errors import DataValidationError
from models.aggregator import RemoteAccount, RemoteTransaction
from schemas.ledger import AccountUpsert, TransactionUpsert
from utils.database import as_utc

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "EUR"
DESCRIPTION_MAX_LENGTH = 500
MERCHANT_MAX_LENGTH = 255

ACCOUNT_TYPES = {
    "checking": "checking",
    "savings": "savings",
    "card": "checking",
    "loan": "loan",
    "mortgage": "loan",
    "investment": "investment",
    "insurance": "investment",
}

TRANSACTION_CATEGORIES = {
    "transfer": "Transfer",
    "order": "Payment",
    "check": "Check",
    "deposit": "Income",
    "payback": "Refund",
    "withdrawal": "Cash Withdrawal",
    "loan_repayment": "Loan Payment",
    "bank": "Bank Fees",
    "card": "Card Payment",
    "deferred_card": "Card Payment",
    "summary_card": "Card Payment",
    "market_order": "Investment",
    "market_fee": "Investment Fees",
    "profit": "Income",
    "refund": "Refund",
    "payment": "Payment",
    "fee": "Fees",
}

# Checked in order when the aggregator type is unknown
CATEGORY_KEYWORDS = (
    (("salary", "salaire"), "Income"),
    (("supermarket", "grocery"), "Food & Dining"),
    (("gas", "fuel"), "Transportation"),
    (("restaurant", "cafe"), "Food & Dining"),
    (("transfer", "virement"), "Transfer"),
    (("fee", "commission"), "Fees"),
)


def currency_code(value: Any) -> str:
    """Powens sends currencies either as 'EUR' or as {'id': 'EUR', ...}."""
    code = None
    if isinstance(value, str):
        code = value
    elif isinstance(value, dict):
        code = value.get("id") or value.get("name")
    if isinstance(code, str) and len(code.strip()) == 3:
        return code.strip().upper()
    return DEFAULT_CURRENCY


def _parse_amount(value: Any, field: str, external_id: Any) -> float:
    if value is None or value == "":
        logger.warning(f"Transaction {external_id} has no {field}; using 0")
        return 0.0
    if isinstance(value, bool):
        raise DataValidationError(f"Invalid {field} for {external_id}: {value!r}")
    try:
        return round(float(value), 2)
    except (TypeError, ValueError) as e:
        raise DataValidationError(f"Invalid {field} for {external_id}: {value!r}") from e


def _parse_optional_amount(value: Any, field: str, external_id: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return _parse_amount(value, field, external_id)


def _parse_date(value: Any, field: str, external_id: Any) -> date:
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise DataValidationError(f"Invalid {field} for {external_id}: {value!r}") from e


def _parse_timestamp(value: Optional[str], external_id: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError as e:
        raise DataValidationError(f"Invalid last_update for {external_id}: {value!r}") from e


def map_account_type(remote_type: Optional[str]) -> str:
    return ACCOUNT_TYPES.get(remote_type or "", "checking")


def categorize_transaction(transaction: RemoteTransaction) -> str:
    category = TRANSACTION_CATEGORIES.get(transaction.type or "")
    if category:
        return category

    description = (
        transaction.wording
        or transaction.original_wording
        or transaction.simplified_wording
        or ""
    ).lower()
    for keywords, keyword_category in CATEGORY_KEYWORDS:
        if any(k in description for k in keywords):
            return keyword_category
    return "Other"


def map_account(
    *,
    user_id: str,
    connection_id: str,
    account: RemoteAccount,
    default_bank_name: Optional[str] = None,
) -> AccountUpsert:
    """Map a Powens account payload to bank_accounts columns."""
    bank = account.bank or {}
    try:
        balance = round(float(account.balance or 0), 2)
        available = round(float(account.coming or 0), 2)
    except (TypeError, ValueError) as e:
        raise DataValidationError(f"Invalid balance for account {account.id}") from e

    return AccountUpsert(
        user_id=user_id,
        connection_id=connection_id,
        external_account_id=account.id,
        account_name=account.name or account.original_name or f"Account {account.id}",
        account_number=account.number,
        iban=account.iban,
        bic=account.bic,
        account_type=map_account_type(account.type),
        currency=currency_code(account.currency),
        balance=balance,
        available_balance=available,
        bank_name=bank.get("name") or default_bank_name or "Unknown Bank",
        disabled=account.is_disabled,
        account_metadata=account.payload(),
    )


def map_transaction(
    *,
    user_id: str,
    account_id: str,
    transaction: RemoteTransaction,
) -> TransactionUpsert:
    """Map a Powens transaction payload to transactions columns.

    Raises DataValidationError when the id or date is missing or the amount
    cannot be read.
    """
    if not transaction.id:
        raise DataValidationError("Transaction missing required field: id")
    if not transaction.date:
        raise DataValidationError(f"Transaction {transaction.id} missing required field: date")

    amount = _parse_amount(transaction.value, "value", transaction.id)
    transaction_date = _parse_date(transaction.date, "date", transaction.id)
    processed_date = (
        _parse_date(transaction.vdate, "vdate", transaction.id)
        if transaction.vdate
        else transaction_date
    )

    description = (
        transaction.wording
        or transaction.original_wording
        or transaction.simplified_wording
        or f"Transaction {transaction.id}"
    )
    if len(description) > DESCRIPTION_MAX_LENGTH:
        description = description[: DESCRIPTION_MAX_LENGTH - 3] + "..."

    merchant = (transaction.simplified_wording or transaction.wording or "")[:MERCHANT_MAX_LENGTH]

    return TransactionUpsert(
        user_id=user_id,
        account_id=account_id,
        external_transaction_id=transaction.id,
        transaction_date=transaction_date,
        processed_date=processed_date,
        amount=amount,
        currency=currency_code(transaction.original_currency),
        description=description,
        transaction_type="credit" if amount >= 0 else "debit",
        category=categorize_transaction(transaction),
        merchant_name=merchant or None,
        balance_after=_parse_optional_amount(
            transaction.balance_after, "balance_after", transaction.id
        ),
        is_pending=bool(transaction.coming),
        is_deleted=bool(transaction.deleted),
        is_active=transaction.active is not False,
        remote_last_update=_parse_timestamp(transaction.last_update, transaction.id),
        transaction_metadata=transaction.payload(),
    )
