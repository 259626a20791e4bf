"""
quarry: an async mapping layer over SQLite.

    from quarry import Engine, SchemaRegistry, Column, DataType

    registry = SchemaRegistry()
    registry.define("User", [
        Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True),
        Column("email", unique=True),
    ])
    engine = Engine("app.db", registry)
    await engine.model("User").create({"email": "a@x.com"})
"""

from quarry.config import (
    DatabaseConfig,
    ExecutionOptions,
    Include,
    RetryPolicy,
    UpdateUpsert,
    UpsertPlan,
)
from quarry.data.sqlite import (
    Column,
    Engine,
    Model,
    ModelOptions,
    References,
    SchemaRegistry,
    col,
    fn,
    literal,
)
from quarry.errors import (
    ConstraintViolation,
    MalformedCondition,
    NonRetryableError,
    NoUpdatableFields,
    QuarryError,
    RequiredFieldMissing,
    RestoreNotSupported,
    RetryExhausted,
    TimedOut,
)
from quarry.types import AssociationKind, DataType, MergeStrategy, OperationResult

__all__ = [
    "DatabaseConfig",
    "ExecutionOptions",
    "Include",
    "RetryPolicy",
    "UpdateUpsert",
    "UpsertPlan",
    "Column",
    "Engine",
    "Model",
    "ModelOptions",
    "References",
    "SchemaRegistry",
    "col",
    "fn",
    "literal",
    "ConstraintViolation",
    "MalformedCondition",
    "NonRetryableError",
    "NoUpdatableFields",
    "QuarryError",
    "RequiredFieldMissing",
    "RestoreNotSupported",
    "RetryExhausted",
    "TimedOut",
    "AssociationKind",
    "DataType",
    "MergeStrategy",
    "OperationResult",
]
