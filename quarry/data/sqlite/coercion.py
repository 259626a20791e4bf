from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import json

from quarry.types import DataType


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def now_ms() -> int:
    return epoch_ms(datetime.now())


class TypeCoercion:
    """Converts application values to SQLite-native values and back.

    Writes: bool -> 0/1, Enum -> its value, datetime/date -> integer epoch
    milliseconds, dict/list/tuple/set -> JSON text, Decimal -> float or text
    depending on the declared column type.

    Reads are driven by a column's ``python_type`` hint, the same way a model
    converts raw rows into typed attributes.
    """

    def coerce(self, value: Any, declared_type: Optional[DataType] = None) -> Any:
        if value is None:
            return None
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, datetime):
            return epoch_ms(value)
        if isinstance(value, date):
            return epoch_ms(datetime.combine(value, time(), tzinfo=timezone.utc))
        if isinstance(value, Decimal):
            if declared_type in (DataType.REAL, DataType.INTEGER):
                return float(value)
            return str(value)
        if isinstance(value, (dict, list, tuple, set)):
            if isinstance(value, set):
                value = sorted(value, key=repr)
            return json.dumps(value, default=str)
        if isinstance(value, (bytearray, memoryview)):
            return bytes(value)
        if declared_type == DataType.TEXT and isinstance(value, (int, float)):
            return str(value)
        return value

    def decode(self, value: Any, python_type: Any = None) -> Any:
        if value is None or python_type is None:
            return value
        if isinstance(python_type, type) and isinstance(value, python_type):
            return value
        if python_type is bool:
            return bool(value)
        if python_type in (dict, list):
            if isinstance(value, (str, bytes)):
                return json.loads(value)
            return value
        if python_type is datetime:
            if isinstance(value, (int, float)):
                return datetime.fromtimestamp(value / 1000)
            return datetime.fromisoformat(str(value))
        if python_type is date:
            if isinstance(value, (int, float)):
                return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
            return date.fromisoformat(str(value))
        if python_type is Decimal:
            return Decimal(str(value))
        try:
            return python_type(value)
        except Exception:
            return value
