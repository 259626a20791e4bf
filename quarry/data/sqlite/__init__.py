"""
SQLite mapping layer.

Condition compiler, per-model operation builders, the execution wrapper
(transaction, timeout, retry), the upsert merge resolver and the association
resolver, all running on aiosqlite.
"""

from .associations import AssociationResolver
from .coercion import TypeCoercion
from .conditions import (
    And,
    ColumnRef,
    CompiledQuery,
    ConditionCompiler,
    Equality,
    FunctionCall,
    JsonPath,
    OperatorMap,
    Or,
    Raw,
    col,
    fn,
    literal,
    parse_condition,
)
from .engine import Engine
from .execution import execute_operation
from .manager import DatabaseManager
from .merge import MergeResolver
from .models import Column, ModelDefinition, ModelOptions, References, SchemaRegistry
from .operations import Model

__all__ = [
    "AssociationResolver",
    "TypeCoercion",
    "And",
    "ColumnRef",
    "CompiledQuery",
    "ConditionCompiler",
    "Equality",
    "FunctionCall",
    "JsonPath",
    "OperatorMap",
    "Or",
    "Raw",
    "col",
    "fn",
    "literal",
    "parse_condition",
    "Engine",
    "execute_operation",
    "DatabaseManager",
    "MergeResolver",
    "Column",
    "ModelDefinition",
    "ModelOptions",
    "References",
    "SchemaRegistry",
    "Model",
]
