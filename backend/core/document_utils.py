"""
MongoDB document helpers shared by the engines and the API layer.
"""

from bson import ObjectId, Decimal128
from datetime import datetime, date, time
from typing import Dict, Any, Union

from core.errors import NotFoundError


def to_object_id(value: Union[str, ObjectId], entity: str) -> ObjectId:
    """Parse an id, reporting malformed ids as NOT_FOUND."""
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise NotFoundError(entity, str(value))
    return ObjectId(value)


def to_datetime(value: Union[date, datetime, None]) -> Union[datetime, None]:
    """BSON has no date type; store calendar dates as midnight datetimes."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            key = "id"
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else float(item.to_decimal()) if isinstance(item, Decimal128)
                else str(item) if isinstance(item, ObjectId)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result
