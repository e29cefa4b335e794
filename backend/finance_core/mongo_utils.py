"""
Helpers for MongoDB documents: id parsing and JSON-safe serialization.
"""

from bson import ObjectId, Decimal128
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from finance_core.financial_errors import ValidationError


def as_object_id(value: Any, field_name: str = "id") -> ObjectId:
    """Parse an id, raising ValidationError for malformed input"""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {field_name}: {value}", {"field": field_name, "value": str(value)})
    return ObjectId(value)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    return {key: _serialize_value(value) for key, value in doc.items()}
