import json
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


def row_to_model(row: tuple, model_class: type[T], column_names: list[str]) -> T:
    """
    Convert a database row tuple to a Pydantic BaseModel instance.

    Args:
        row: Database row tuple
        model_class: Pydantic BaseModel class
        column_names: List of column names in the same order as the row tuple

    Returns:
        Instance of the specified model class
    """
    row_dict = dict(zip(column_names, row))
    return model_class(**row_dict)


def row_to_model_with_cursor(row: tuple, model_class: type[T], cursor) -> T:
    """
    Convert a database row tuple to a Pydantic BaseModel instance using cursor description.
    """
    column_names = [desc[0] for desc in cursor.description]

    return row_to_model(row, model_class, column_names)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC value; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_json(value: Any) -> Any:
    """JSON columns come back as text from SQLite and as objects from PostgreSQL."""
    if value is None or value == "":
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    if isinstance(value, str):
        return json.loads(value)
    return value
