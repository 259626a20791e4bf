"""
Shared value types for quarry.

Storage types, association kinds, merge strategies and the result object every
mutating operation hands back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class DataType(str, Enum):
    INTEGER = "INTEGER"
    REAL = "REAL"
    TEXT = "TEXT"
    BLOB = "BLOB"
    NUMERIC = "NUMERIC"


NUMERIC_TYPES = (DataType.INTEGER, DataType.REAL, DataType.NUMERIC)


class AssociationKind(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"


class MergeStrategy(str, Enum):
    REPLACE = "replace"
    PRESERVE = "preserve"
    APPEND = "append"
    NUMERIC = "numeric"


@dataclass
class OperationResult:
    changes: int = 0
    last_id: Any = None
    rows: List[Dict[str, Any]] = field(default_factory=list)
    # Only set by upserts.
    is_new: Optional[bool] = None

    @property
    def record(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


__all__ = [
    "DataType",
    "NUMERIC_TYPES",
    "AssociationKind",
    "MergeStrategy",
    "OperationResult",
]
