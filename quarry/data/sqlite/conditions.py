"""
Condition compiler.

Turns a declarative condition tree into a SQL boolean expression plus the ordered
parameters for its ``?`` placeholders. Plain nested mappings are accepted and parsed
into the node types below first:

    {"age": {"gt": 18}, "or": [{"name": "a"}, {"name": {"like": "b%"}}]}

Every scalar becomes a placeholder. ``Raw``, ``ColumnRef`` and ``FunctionCall``
are inlined as written and are the caller's responsibility.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging

from quarry.data.sqlite.coercion import TypeCoercion
from quarry.errors import MalformedCondition

logger = logging.getLogger(__name__)

OPERATORS = (
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "notIn",
    "like",
    "notLike",
    "between",
    "notBetween",
    "isNull",
)

_COMPARISONS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
    "notLike": "NOT LIKE",
}


# ---------- escape markers usable as values ----------


@dataclass(frozen=True)
class Col:
    name: str


@dataclass(frozen=True)
class Fn:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Literal:
    sql: str


def col(name: str) -> Col:
    return Col(name)


def fn(name: str, *args: Any) -> Fn:
    return Fn(name, tuple(args))


def literal(sql: str) -> Literal:
    return Literal(sql)


# ---------- condition nodes ----------


@dataclass(frozen=True)
class Equality:
    field: str
    value: Any


@dataclass(frozen=True)
class OperatorMap:
    field: str
    operators: Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class And:
    children: Tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Condition", ...]


@dataclass(frozen=True)
class Raw:
    sql: str


@dataclass(frozen=True)
class ColumnRef:
    field: str
    column: str


@dataclass(frozen=True)
class FunctionCall:
    field: str
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class JsonPath:
    field: str
    path: str
    value: Any


Condition = Union[
    Equality, OperatorMap, And, Or, Raw, ColumnRef, FunctionCall, JsonPath
]
_NODE_TYPES = (Equality, OperatorMap, And, Or, Raw, ColumnRef, FunctionCall, JsonPath)


@dataclass(frozen=True)
class CompiledQuery:
    sql: str
    params: Tuple[Any, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.sql)


# ---------- parsing ----------


def parse_condition(where: Any) -> Optional[Condition]:
    """Parse the nested-mapping wire shape into condition nodes. ``{}`` and None parse to None."""
    if where is None:
        return None
    if isinstance(where, _NODE_TYPES):
        return where
    if isinstance(where, Literal):
        return Raw(where.sql)
    if not isinstance(where, Mapping):
        raise MalformedCondition(
            f"Condition must be a mapping or condition node, got {type(where).__name__}"
        )

    children: List[Condition] = []
    for key, val in where.items():
        if key in ("and", "or"):
            if not isinstance(val, (list, tuple)):
                raise MalformedCondition(f"'{key}' expects a list of conditions")
            parsed = [parse_condition(v) for v in val]
            nodes = tuple(p for p in parsed if p is not None)
            if not nodes:
                raise MalformedCondition(f"'{key}' needs at least one condition")
            children.append(And(nodes) if key == "and" else Or(nodes))
        else:
            children.append(_parse_field(str(key), val))

    if not children:
        return None
    if len(children) == 1:
        return children[0]
    return And(tuple(children))


def _parse_field(field: str, val: Any) -> Condition:
    if isinstance(val, Col):
        return ColumnRef(field, val.name)
    if isinstance(val, Fn):
        return FunctionCall(field, val.name, val.args)
    if isinstance(val, Literal):
        return Raw(val.sql)
    if isinstance(val, Mapping):
        if not val:
            raise MalformedCondition(f"Empty operator map for field '{field}'")
        if "literal" in val:
            return Raw(str(val["literal"]))
        if "col" in val or "__col__" in val:
            return ColumnRef(field, str(val.get("col", val.get("__col__"))))
        if "fn" in val or "__fn__" in val:
            name = val.get("fn", val.get("__fn__"))
            return FunctionCall(field, str(name), tuple(val.get("args", ())))
        if "json" in val:
            pair = val["json"]
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise MalformedCondition("'json' expects a [path, value] pair")
            return JsonPath(field, str(pair[0]), pair[1])
        for op in val:
            if op not in OPERATORS:
                raise MalformedCondition(f"Unsupported operator: {op}")
        return OperatorMap(field, tuple(val.items()))
    if isinstance(val, (list, tuple, set, frozenset)):
        return OperatorMap(field, (("in", list(val)),))
    return Equality(field, val)


def references_field(node: Optional[Condition], names: Sequence[str]) -> bool:
    """True when any leaf of the tree filters on one of the given field/column names."""
    if node is None:
        return False
    if isinstance(node, (And, Or)):
        return any(references_field(child, names) for child in node.children)
    if isinstance(node, Raw):
        return any(name in node.sql for name in names)
    return node.field in names


def simple_equalities(where: Any) -> Dict[str, Any]:
    """Plain ``field = value`` pairs at the top level of a condition (used to seed inserts)."""
    node = parse_condition(where)
    leaves: Sequence[Any] = (
        node.children if isinstance(node, And) else [node] if node else []
    )
    return {
        leaf.field: leaf.value
        for leaf in leaves
        if isinstance(leaf, Equality) and leaf.value is not None
    }


# ---------- compiling ----------


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def render_function(call: Fn, quote=quote_identifier) -> str:
    args = []
    for arg in call.args:
        if isinstance(arg, Col):
            args.append(quote(arg.name))
        elif isinstance(arg, Fn):
            args.append(render_function(arg, quote))
        elif isinstance(arg, Literal):
            args.append(arg.sql)
        elif arg is None:
            args.append("NULL")
        elif isinstance(arg, bool):
            args.append("1" if arg else "0")
        elif isinstance(arg, (int, float)):
            args.append(repr(arg))
        else:
            args.append("'" + str(arg).replace("'", "''") + "'")
    return f"{call.name}({', '.join(args)})"


def join_conditions(parts: Sequence[CompiledQuery], op: str = "AND") -> CompiledQuery:
    parts = [p for p in parts if p]
    if not parts:
        return CompiledQuery("")
    if len(parts) == 1:
        return parts[0]
    params: List[Any] = []
    for p in parts:
        params.extend(p.params)
    return CompiledQuery(f" {op} ".join(p.sql for p in parts), tuple(params))


class ConditionCompiler:
    def __init__(
        self,
        definition: Any = None,
        coercion: Optional[TypeCoercion] = None,
        table: Optional[str] = None,
    ):
        # definition is a ModelDefinition; typed loosely to keep this module a leaf.
        self.definition = definition
        self.coercion = coercion or TypeCoercion()
        self.table = table

    def column(self, field: str) -> str:
        if self.definition is not None and self.definition.column(field) is None:
            if "." in field:
                return ".".join(quote_identifier(p) for p in field.split(".", 1))
        db_name = self.definition.db_name(field) if self.definition else field
        if self.table:
            return f"{quote_identifier(self.table)}.{quote_identifier(db_name)}"
        return quote_identifier(db_name)

    def value(self, field: str, value: Any) -> Any:
        declared = self.definition.declared_type(field) if self.definition else None
        return self.coercion.coerce(value, declared)

    def compile(self, where: Any) -> CompiledQuery:
        node = parse_condition(where)
        if node is None:
            return CompiledQuery("")
        params: List[Any] = []
        sql = self._compile(node, params)
        return CompiledQuery(sql, tuple(params))

    def _compile(self, node: Condition, params: List[Any]) -> str:
        if isinstance(node, (And, Or)):
            if not node.children:
                raise MalformedCondition(
                    f"'{type(node).__name__.lower()}' needs at least one condition"
                )
            joiner = " AND " if isinstance(node, And) else " OR "
            return "(" + joiner.join(self._compile(c, params) for c in node.children) + ")"

        if isinstance(node, Equality):
            column = self.column(node.field)
            if node.value is None:
                return f"{column} IS NULL"
            if isinstance(node.value, Col):
                return f"{column} = {self.column(node.value.name)}"
            params.append(self.value(node.field, node.value))
            return f"{column} = ?"

        if isinstance(node, OperatorMap):
            if not node.operators:
                raise MalformedCondition(f"Empty operator map for field '{node.field}'")
            clauses = [
                self._compile_operator(node.field, op, value, params)
                for op, value in node.operators
            ]
            if len(clauses) == 1:
                return clauses[0]
            return "(" + " AND ".join(clauses) + ")"

        if isinstance(node, Raw):
            return node.sql

        if isinstance(node, ColumnRef):
            return f"{self.column(node.field)} = {self.column(node.column)}"

        if isinstance(node, FunctionCall):
            rendered = render_function(Fn(node.name, node.args), self._quote_arg)
            return f"{self.column(node.field)} = {rendered}"

        if isinstance(node, JsonPath):
            path = node.path.replace("'", "''")
            params.append(self.coercion.coerce(node.value))
            return f"json_extract({self.column(node.field)}, '$.{path}') = ?"

        raise MalformedCondition(f"Unknown condition node: {node!r}")

    def _quote_arg(self, name: str) -> str:
        return self.column(name)

    def _compile_operator(
        self, field: str, op: str, value: Any, params: List[Any]
    ) -> str:
        column = self.column(field)

        if op in _COMPARISONS:
            if value is None:
                if op == "eq":
                    return f"{column} IS NULL"
                if op == "ne":
                    return f"{column} IS NOT NULL"
                raise MalformedCondition(f"Operator '{op}' cannot compare with None")
            if isinstance(value, Col):
                return f"{column} {_COMPARISONS[op]} {self.column(value.name)}"
            params.append(self.value(field, value))
            return f"{column} {_COMPARISONS[op]} ?"

        if op in ("in", "notIn"):
            if isinstance(value, (str, bytes)) or not isinstance(
                value, (list, tuple, set, frozenset)
            ):
                raise MalformedCondition(f"Value for '{op}' must be a list")
            items = list(value)
            for item in items:
                params.append(self.value(field, item))
            keyword = "IN" if op == "in" else "NOT IN"
            return f"{column} {keyword} ({', '.join('?' for _ in items)})"

        if op in ("between", "notBetween"):
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise MalformedCondition(
                    f"'{op}' requires exactly two values, got {value!r}"
                )
            params.append(self.value(field, value[0]))
            params.append(self.value(field, value[1]))
            keyword = "BETWEEN" if op == "between" else "NOT BETWEEN"
            return f"{column} {keyword} ? AND ?"

        if op == "isNull":
            return f"{column} IS NULL" if value else f"{column} IS NOT NULL"

        raise MalformedCondition(f"Unsupported operator: {op}")
