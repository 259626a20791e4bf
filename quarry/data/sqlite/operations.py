from __future__ import annotations

import inspect
import json
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from quarry.config import ExecutionOptions, UpdateUpsert, UpsertPlan
from quarry.data.sqlite.coercion import TypeCoercion, now_ms
from quarry.data.sqlite.conditions import (
    Col,
    CompiledQuery,
    ConditionCompiler,
    Fn,
    Literal,
    join_conditions,
    parse_condition,
    quote_identifier,
    references_field,
    render_function,
    simple_equalities,
)
from quarry.data.sqlite.execution import execute_operation
from quarry.data.sqlite.manager import DatabaseManager
from quarry.data.sqlite.merge import MergeResolver
from quarry.data.sqlite.models import (
    CREATED_AT,
    DELETED_AT,
    MISSING,
    UPDATED_AT,
    Column,
    ModelDefinition,
)
from quarry.errors import NoUpdatableFields, RequiredFieldMissing, RestoreNotSupported
from quarry.types import NUMERIC_TYPES, OperationResult

if TYPE_CHECKING:
    from quarry.data.sqlite.associations import AssociationResolver

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER on older builds.
MAX_BOUND_PARAMETERS = 999
DEFAULT_BATCH_SIZE = 500

Record = Dict[str, Any]
OrderSpec = Union[str, Tuple[Any, str], Fn, Literal]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Model:
    """
    Operation builders for one model.

    Every verb comes in two halves: a pure ``build_*`` method returning the
    ``CompiledQuery`` it would run, and an async method that executes it through the
    transaction/timeout/retry wrapper and returns plain dict records keyed by
    python field names.

    Instances are handed out by ``Engine.model(name)``.
    """

    def __init__(
        self,
        definition: ModelDefinition,
        db: DatabaseManager,
        coercion: Optional[TypeCoercion] = None,
        resolver: Optional["AssociationResolver"] = None,
    ):
        self.definition = definition
        self.db = db
        self.coercion = coercion or TypeCoercion()
        self.resolver = resolver
        self.compiler = ConditionCompiler(definition, self.coercion)
        self._by_db_name: Dict[str, Column] = {
            c.db_name: c for c in definition.columns.values() if not c.virtual  # type: ignore[misc]
        }

    def __repr__(self) -> str:
        return f"Model({self.definition.name!r})"

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def table(self) -> str:
        return quote_identifier(self.definition.table_name)

    # ---------- helpers ----------

    def _col(self, field_name: str) -> str:
        return quote_identifier(self.definition.db_name(field_name))

    def _has(self, field_name: str) -> bool:
        return self.definition.column(field_name) is not None

    def _paranoid_filter(self, where: Any, paranoid: bool = True) -> CompiledQuery:
        if not (self.definition.paranoid and paranoid):
            return CompiledQuery("")
        names = [DELETED_AT, self.definition.db_name(DELETED_AT)]
        if references_field(parse_condition(where), names):
            return CompiledQuery("")
        return CompiledQuery(f"{self._col(DELETED_AT)} IS NULL")

    def _where(self, where: Any, paranoid: bool = True) -> CompiledQuery:
        return join_conditions(
            [self.compiler.compile(where), self._paranoid_filter(where, paranoid)]
        )

    @staticmethod
    def _where_sql(compiled: CompiledQuery) -> str:
        return f" WHERE {compiled.sql}" if compiled else ""

    def _require_where(self, where: Any, verb: str) -> None:
        if where is None:
            raise ValueError(
                f"{self.name}.{verb} requires a where condition; pass {{}} to target every row"
            )

    def _write_value(self, column: Column, value: Any) -> Any:
        if column.setter is not None:
            value = column.setter(value)
        if column.transform is not None:
            value = column.transform(value)
        return self.coercion.coerce(value, column.type)

    def _expression(self, value: Any) -> Optional[str]:
        """Inline SQL for Col/Fn/Literal markers used as assigned values."""
        if isinstance(value, Col):
            return self._col(value.name)
        if isinstance(value, Fn):
            return render_function(value, self._col)
        if isinstance(value, Literal):
            return value.sql
        return None

    def shape(self, row: Mapping[str, Any]) -> Record:
        """Map a raw row to python field names, decoding values and applying getters."""
        record: Record = {}
        for key, value in row.items():
            column = self._by_db_name.get(key)
            if column is None:
                record[key] = value
                continue
            value = self.coercion.decode(value, column.python_type)
            if column.getter is not None:
                value = column.getter(value)
            record[column.python_name] = value
        for column in self.definition.columns.values():
            if column.virtual and column.getter is not None:
                record[column.python_name] = column.getter(record)
        return record

    async def _run_hooks(self, event: str, *args: Any) -> None:
        for hook in self.definition.hooks_for(event):
            await _maybe_await(hook(*args))

    async def _run(
        self,
        verb: str,
        op,
        execution: Optional[ExecutionOptions],
        *,
        mutating: bool = True,
        empty=None,
    ):
        return await execute_operation(
            f"{self.definition.table_name}.{verb}",
            op,
            self.db,
            execution,
            mutating=mutating,
            empty=empty,
            attributes={"quarry.table": self.definition.table_name, "quarry.verb": verb},
        )

    async def _fetch(self, query: CompiledQuery) -> List[Record]:
        rows = await self.db.execute_query(query.sql, query.params)
        return [self.shape(r) for r in rows]

    # ---------- create ----------

    def prepare_insert(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Resolve every writable column for an insert and return db column -> stored value.

        Raises ValueError for unknown fields and RequiredFieldMissing when a non-null,
        non-auto-increment column ends up without a value.
        """
        unknown = [k for k in values if not self._has(k)]
        if unknown:
            raise ValueError(
                f"Unknown field(s) for {self.name}: {', '.join(sorted(unknown))}"
            )

        now = now_ms()
        row: Dict[str, Any] = {}
        missing: List[str] = []
        for column in self.definition.columns.values():
            if not column.writable:
                continue
            name = column.python_name
            if name in values:
                value = values[name]
            elif column.default_fn is not None:
                value = column.default_fn()
            elif column.default is not MISSING:
                value = column.default
            elif self.definition.timestamps and name in (CREATED_AT, UPDATED_AT):
                value = now
            elif self.definition.paranoid and name == DELETED_AT:
                value = None
            else:
                value = MISSING

            if value is MISSING or value is None:
                if not column.nullable and not column.auto_increment:
                    missing.append(name)
                if value is MISSING:
                    continue
                row[column.db_name] = None  # type: ignore[index]
                continue
            row[column.db_name] = self._write_value(column, value)  # type: ignore[index]

        if missing:
            raise RequiredFieldMissing(self.name, missing)
        return row

    def _insert_sql(
        self,
        columns: Sequence[str],
        row_count: int = 1,
        *,
        or_ignore: bool = False,
        returning: bool = True,
    ) -> str:
        verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
        if not columns:
            sql = f"{verb} INTO {self.table} DEFAULT VALUES"
        else:
            placeholders = "(" + ", ".join("?" for _ in columns) + ")"
            sql = (
                f"{verb} INTO {self.table} ({', '.join(quote_identifier(c) for c in columns)}) "
                f"VALUES {', '.join(placeholders for _ in range(row_count))}"
            )
        return sql + (" RETURNING *" if returning else "")

    def build_create(self, values: Mapping[str, Any]) -> CompiledQuery:
        row = self.prepare_insert(values)
        return CompiledQuery(self._insert_sql(list(row)), tuple(row.values()))

    async def _unique_conflict(self, row: Mapping[str, Any]) -> Optional[str]:
        """Best-effort pre-check: the first unique column whose value is already stored."""
        for column in self.definition.unique_columns:
            value = row.get(column.db_name)  # type: ignore[arg-type]
            if value is None:
                continue
            hit = await self.db.execute_and_fetch_one(
                f"SELECT 1 FROM {self.table} WHERE {quote_identifier(column.db_name)} = ? LIMIT 1",  # type: ignore[arg-type]
                (value,),
            )
            if hit is not None:
                return column.python_name
        return None

    def _last_id(self, rows: List[Record], fallback: Any) -> Any:
        pk = self.definition.primary_key
        if pk and rows and rows[0].get(pk) is not None:
            return rows[0][pk]
        return fallback

    async def _insert(self, values: Mapping[str, Any], *, precheck: bool) -> OperationResult:
        row = self.prepare_insert(values)
        if precheck:
            conflict = await self._unique_conflict(row)
            if conflict is not None:
                logger.info(
                    "Skipping insert into %s: %s=%r already exists",
                    self.definition.table_name,
                    conflict,
                    values.get(conflict),
                )
                return OperationResult()
        result = await self.db.execute(self._insert_sql(list(row)), tuple(row.values()))
        rows = [self.shape(r) for r in result.rows]
        return OperationResult(
            changes=result.changes or len(rows),
            last_id=self._last_id(rows, result.last_id),
            rows=rows,
        )

    async def create(
        self, values: Mapping[str, Any], execution: Optional[ExecutionOptions] = None
    ) -> OperationResult:
        async def op() -> OperationResult:
            data = dict(values)
            await self._run_hooks("before_create", data)
            result = await self._insert(data, precheck=True)
            if result.changes:
                await self._run_hooks("after_create", result)
            return result

        return await self._run("create", op, execution, empty=OperationResult)

    # ---------- bulk create ----------

    def _prepare_unique(
        self, records: Sequence[Mapping[str, Any]], ignore_duplicates: bool
    ) -> List[Dict[str, Any]]:
        """Drop repeated input records, then prepare the survivors for insertion."""
        unique = [c.python_name for c in self.definition.unique_columns]
        seen = set()
        kept = []
        for record in records:
            if ignore_duplicates:
                key: Any = json.dumps(dict(record), sort_keys=True, default=str)
            elif unique:
                key = tuple(record.get(name) for name in unique)
                if all(v is None for v in key):
                    kept.append(record)
                    continue
            else:
                kept.append(record)
                continue
            if key in seen:
                continue
            seen.add(key)
            kept.append(record)
        return [self.prepare_insert(record) for record in kept]

    def _chunk_queries(
        self,
        rows: List[Dict[str, Any]],
        batch_size: int,
        or_ignore: bool,
    ) -> List[CompiledQuery]:
        if not rows:
            return []
        columns: List[str] = []
        for row in rows:
            for c in row:
                if c not in columns:
                    columns.append(c)
        size = max(1, min(batch_size, MAX_BOUND_PARAMETERS // max(1, len(columns))))
        queries = []
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            params: List[Any] = []
            for row in chunk:
                params.extend(row.get(c) for c in columns)
            queries.append(
                CompiledQuery(
                    self._insert_sql(columns, len(chunk), or_ignore=or_ignore),
                    tuple(params),
                )
            )
        return queries

    def build_bulk_create(
        self,
        records: Sequence[Mapping[str, Any]],
        ignore_duplicates: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> List[CompiledQuery]:
        rows = self._prepare_unique(records, ignore_duplicates)
        return self._chunk_queries(rows, batch_size, ignore_duplicates)

    async def _existing_unique_values(
        self, rows: List[Dict[str, Any]]
    ) -> Dict[str, set]:
        existing: Dict[str, set] = {}
        for column in self.definition.unique_columns:
            db_name: str = column.db_name  # type: ignore[assignment]
            wanted = sorted(
                {r[db_name] for r in rows if r.get(db_name) is not None}, key=repr
            )
            found: set = set()
            for start in range(0, len(wanted), MAX_BOUND_PARAMETERS):
                chunk = wanted[start : start + MAX_BOUND_PARAMETERS]
                hits = await self.db.execute_query(
                    f"SELECT {quote_identifier(db_name)} AS v FROM {self.table} "
                    f"WHERE {quote_identifier(db_name)} IN ({', '.join('?' for _ in chunk)})",
                    tuple(chunk),
                )
                found.update(h["v"] for h in hits)
            existing[db_name] = found
        return existing

    async def bulk_create(
        self,
        records: Sequence[Mapping[str, Any]],
        ignore_duplicates: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        execution: Optional[ExecutionOptions] = None,
    ) -> OperationResult:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        async def op() -> OperationResult:
            rows = self._prepare_unique(records, ignore_duplicates)
            existing = await self._existing_unique_values(rows)
            fresh = [
                r
                for r in rows
                if not any(r.get(c) in values for c, values in existing.items())
            ]
            if len(fresh) < len(rows):
                logger.info(
                    "Skipping %d record(s) already present in %s",
                    len(rows) - len(fresh),
                    self.definition.table_name,
                )

            total = OperationResult()
            for query in self._chunk_queries(fresh, batch_size, ignore_duplicates):
                result = await self.db.execute(query.sql, query.params)
                total.rows.extend(self.shape(r) for r in result.rows)
                total.changes += result.changes
                total.last_id = self._last_id(total.rows[-1:], result.last_id)
            return total

        return await self._run("bulk_create", op, execution, empty=OperationResult)

    # ---------- find ----------

    def _select_list(self, attributes: Optional[Sequence[Any]]) -> str:
        if not attributes:
            return "*"
        parts = []
        for attr in attributes:
            if isinstance(attr, (tuple, list)):
                expr, alias = attr
                rendered = self._expression(expr) or self._col(expr)
                parts.append(f"{rendered} AS {quote_identifier(alias)}")
            else:
                parts.append(self._expression(attr) or self._col(attr))
        return ", ".join(parts)

    def _order_sql(self, order: Union[OrderSpec, Sequence[OrderSpec], None]) -> str:
        if not order:
            return ""
        if isinstance(order, (str, Fn, Literal)):
            items = [order]
        elif (
            isinstance(order, tuple)
            and len(order) == 2
            and isinstance(order[1], str)
            and order[1].upper() in ("ASC", "DESC")
        ):
            items = [order]
        else:
            items = list(order)
        parts = []
        for item in items:
            direction = "ASC"
            if isinstance(item, (tuple, list)):
                item, direction = item
                direction = direction.upper()
                if direction not in ("ASC", "DESC"):
                    raise ValueError(f"Invalid sort direction: {direction}")
            parts.append(f"{self._expression(item) or self._col(item)} {direction}")
        return " ORDER BY " + ", ".join(parts)

    def build_find_all(
        self,
        where: Any = None,
        order: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        attributes: Optional[Sequence[Any]] = None,
        group_by: Union[str, Sequence[str], None] = None,
        having: Any = None,
        paranoid: bool = True,
    ) -> CompiledQuery:
        compiled = self._where(where, paranoid)
        sql = f"SELECT {self._select_list(attributes)} FROM {self.table}"
        sql += self._where_sql(compiled)
        params = list(compiled.params)

        if group_by:
            groups = [group_by] if isinstance(group_by, str) else list(group_by)
            sql += " GROUP BY " + ", ".join(self._col(g) for g in groups)
        if having:
            having_sql = self.compiler.compile(having)
            sql += f" HAVING {having_sql.sql}"
            params.extend(having_sql.params)

        sql += self._order_sql(order)

        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        if offset is not None:
            if limit is None:
                sql += " LIMIT -1"
            sql += " OFFSET ?"
            params.append(int(offset))
        return CompiledQuery(sql, tuple(params))

    async def find_all(
        self,
        where: Any = None,
        order: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        attributes: Optional[Sequence[Any]] = None,
        group_by: Union[str, Sequence[str], None] = None,
        having: Any = None,
        include: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> List[Record]:
        query = self.build_find_all(
            where, order, limit, offset, attributes, group_by, having, paranoid
        )

        async def op() -> List[Record]:
            records = await self._fetch(query)
            if include and records:
                if self.resolver is None:
                    raise ValueError(f"{self.name} has no association resolver")
                await self.resolver.resolve(self, records, include)
            return records

        return await self._run("find_all", op, execution, mutating=False, empty=list)

    async def find_one(
        self,
        where: Any = None,
        order: Any = None,
        attributes: Optional[Sequence[Any]] = None,
        include: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Optional[Record]:
        rows = await self.find_all(
            where=where,
            order=order,
            limit=1,
            attributes=attributes,
            include=include,
            paranoid=paranoid,
            execution=execution,
        )
        return rows[0] if rows else None

    async def find_by_pk(
        self,
        pk: Any,
        attributes: Optional[Sequence[Any]] = None,
        include: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Optional[Record]:
        key = self.definition.primary_key_column.python_name
        return await self.find_one(
            where={key: pk},
            attributes=attributes,
            include=include,
            paranoid=paranoid,
            execution=execution,
        )

    async def find_and_count_all(
        self,
        where: Any = None,
        order: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        attributes: Optional[Sequence[Any]] = None,
        include: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Dict[str, Any]:
        """Rows for one page plus the total number of rows matching ``where``."""
        rows = await self.find_all(
            where=where,
            order=order,
            limit=limit,
            offset=offset,
            attributes=attributes,
            include=include,
            paranoid=paranoid,
            execution=execution,
        )
        count = await self.count(where, paranoid=paranoid, execution=execution)
        return {"count": count, "rows": rows}

    async def find_or_create(
        self,
        where: Any,
        defaults: Optional[Mapping[str, Any]] = None,
        execution: Optional[ExecutionOptions] = None,
    ) -> Tuple[Optional[Record], bool]:
        """
        Return ``(record, created)``. The insert uses the plain equalities of ``where``
        overlaid with ``defaults``.
        """

        async def op() -> Tuple[Optional[Record], bool]:
            found = await self.find_one(where)
            if found is not None:
                return found, False
            result = await self.create({**simple_equalities(where), **(defaults or {})})
            if result.changes:
                return result.record, True
            return await self.find_one(where), False

        return await self._run("find_or_create", op, execution, empty=lambda: (None, False))

    # ---------- update ----------

    def _assignments(
        self, values: Mapping[str, Any], stored: bool = False
    ) -> Tuple[List[str], List[Any]]:
        """SET clauses for ``values``; with ``stored`` the values are already in stored form."""
        clauses: List[str] = []
        params: List[Any] = []
        missing: List[str] = []
        for name, value in values.items():
            column = self.definition.column(name)
            if column is None or not column.writable:
                logger.debug("Ignoring non-updatable field %s on %s", name, self.name)
                continue
            if value is None and not column.nullable:
                missing.append(name)
                continue
            expression = self._expression(value)
            if expression is not None:
                clauses.append(f"{self._col(name)} = {expression}")
                continue
            clauses.append(f"{self._col(name)} = ?")
            if value is not None and not stored:
                value = self._write_value(column, value)
            params.append(value)

        if missing:
            raise RequiredFieldMissing(self.name, missing)
        if not clauses:
            raise NoUpdatableFields(f"No updatable fields supplied for {self.name}")
        if self.definition.timestamps and UPDATED_AT not in values:
            clauses.append(f"{self._col(UPDATED_AT)} = ?")
            params.append(now_ms())
        return clauses, params

    def _limited(self, compiled: CompiledQuery, limit: Optional[int]) -> CompiledQuery:
        if limit is None:
            return compiled
        inner = f"SELECT rowid FROM {self.table}{self._where_sql(compiled)} LIMIT ?"
        return CompiledQuery(f"rowid IN ({inner})", compiled.params + (int(limit),))

    def build_update(
        self,
        values: Mapping[str, Any],
        where: Any = None,
        limit: Optional[int] = None,
        returning: bool = False,
        upsert: Optional[UpdateUpsert] = None,
    ) -> CompiledQuery:
        if upsert is not None:
            return self._build_update_upsert(values, upsert, returning)
        self._require_where(where, "update")

        clauses, params = self._assignments(values)
        compiled = self._limited(self._where(where), limit)
        sql = f"UPDATE {self.table} SET {', '.join(clauses)}{self._where_sql(compiled)}"
        if returning:
            sql += " RETURNING *"
        return CompiledQuery(sql, tuple(params) + compiled.params)

    def _build_update_upsert(
        self, values: Mapping[str, Any], upsert: UpdateUpsert, returning: bool
    ) -> CompiledQuery:
        targets = upsert.conflict_columns
        for name in targets:
            if not self._has(name):
                raise ValueError(f"Unknown conflict column {name!r} on {self.name}")
        row = self.prepare_insert({**upsert.conflict_values, **values})

        updates = [
            self.definition.db_name(name)
            for name in values
            if name not in targets
            and self._has(name)
            and self.definition.columns[name].writable
        ]
        if self.definition.timestamps and UPDATED_AT not in values:
            updates.append(self.definition.db_name(UPDATED_AT))

        sql = self._insert_sql(list(row), returning=False)
        sql += f" ON CONFLICT({', '.join(self._col(t) for t in targets)})"
        if updates:
            sql += " DO UPDATE SET " + ", ".join(
                f"{quote_identifier(c)} = excluded.{quote_identifier(c)}" for c in updates
            )
        else:
            sql += " DO NOTHING"
        if returning:
            sql += " RETURNING *"
        return CompiledQuery(sql, tuple(row.values()))

    async def update(
        self,
        values: Mapping[str, Any],
        where: Any = None,
        limit: Optional[int] = None,
        returning: bool = False,
        upsert: Optional[UpdateUpsert] = None,
        execution: Optional[ExecutionOptions] = None,
    ) -> OperationResult:
        async def op() -> OperationResult:
            data = dict(values)
            await self._run_hooks("before_update", data)
            query = self.build_update(data, where, limit, returning, upsert)
            result = await self.db.execute(query.sql, query.params)
            rows = [self.shape(r) for r in result.rows]
            out = OperationResult(
                changes=result.changes, last_id=self._last_id(rows, None), rows=rows
            )
            await self._run_hooks("after_update", out)
            return out

        return await self._run("update", op, execution, empty=OperationResult)

    # ---------- upsert ----------

    def conflict_target(self, values: Mapping[str, Any], plan: UpsertPlan) -> List[str]:
        if plan.conflict_target:
            for name in plan.conflict_target:
                if name not in values:
                    raise ValueError(
                        f"Conflict column {name!r} is missing from the upsert values"
                    )
            return list(plan.conflict_target)
        pk = self.definition.primary_key
        if pk is not None and values.get(pk) is not None:
            return [pk]
        for column in self.definition.unique_columns:
            if values.get(column.python_name) is not None:
                return [column.python_name]
        raise ValueError(
            f"Cannot resolve a conflict target for {self.name}: "
            "no primary key or unique value supplied"
        )

    def _stored_value(self, field_name: str, value: Any) -> Any:
        """Incoming value in the form it would be written: setter, transform, coercion."""
        if value is None or self._expression(value) is not None:
            return value
        return self._write_value(self.definition.columns[field_name], value)

    def _stored_row(self, row: Mapping[str, Any]) -> Record:
        """A raw row keyed by python names, values exactly as stored."""
        return {
            (self._by_db_name[k].python_name if k in self._by_db_name else k): v
            for k, v in row.items()
        }

    def build_stored_update(
        self, values: Mapping[str, Any], key: Mapping[str, Any]
    ) -> CompiledQuery:
        """
        UPDATE ... RETURNING * for values already in stored form, keyed by stored values.

        Upsert merges are written through here so that neither the merged values nor the
        key pass through setters a second time.
        """
        clauses, params = self._assignments(values, stored=True)
        compiled = self._where(key)
        return CompiledQuery(
            f"UPDATE {self.table} SET {', '.join(clauses)}{self._where_sql(compiled)} RETURNING *",
            tuple(params) + compiled.params,
        )

    async def _upsert_one(self, values: Mapping[str, Any], plan: UpsertPlan) -> OperationResult:
        unknown = [k for k in values if not self._has(k)]
        if unknown:
            raise ValueError(
                f"Unknown field(s) for {self.name}: {', '.join(sorted(unknown))}"
            )
        target = self.conflict_target(values, plan)
        key = {name: self._stored_value(name, values[name]) for name in target}
        lookup = {"and": [key, plan.where]} if plan.where else key

        query = self.build_find_all(where=lookup, limit=1)
        matches = await self.db.execute_query(query.sql, query.params)
        pk = self.definition.primary_key

        if not matches:
            if plan.dry_run:
                preview = self.shape(self.prepare_insert(values))
                return OperationResult(rows=[preview], is_new=True)
            # No pre-check here: a racing insert surfaces as ConstraintViolation.
            result = await self._insert(values, precheck=False)
            result.is_new = True
        else:
            stored = matches[0]
            existing = self._stored_row(stored)
            incoming = {
                k: self._stored_value(k, v)
                for k, v in values.items()
                if self.definition.columns[k].writable
            }
            skip = set(target) | {CREATED_AT}
            if pk is not None:
                skip.add(pk)
            merged = MergeResolver(plan.merge_strategy).merge(existing, incoming, skip)
            if self.definition.timestamps and UPDATED_AT not in incoming:
                merged[UPDATED_AT] = now_ms()

            if plan.dry_run:
                preview = dict(stored)
                preview.update((self.definition.db_name(k), v) for k, v in merged.items())
                return OperationResult(rows=[self.shape(preview)], is_new=False)
            if not merged:
                return OperationResult(
                    rows=[self.shape(stored)],
                    last_id=existing.get(pk) if pk else None,
                    is_new=False,
                )

            query = self.build_stored_update(
                merged, {name: existing[name] for name in target}
            )
            raw = await self.db.execute(query.sql, query.params)
            rows = [self.shape(r) for r in raw.rows]
            result = OperationResult(
                changes=raw.changes,
                last_id=self._last_id(rows, existing.get(pk) if pk else None),
                rows=rows,
                is_new=False,
            )

        if plan.after_upsert is not None and result.changes:
            await _maybe_await(plan.after_upsert(result.last_id, result.record, result.is_new))
        if not plan.returning:
            result.rows = []
        return result

    async def upsert(
        self,
        values: Mapping[str, Any],
        plan: Optional[UpsertPlan] = None,
        execution: Optional[ExecutionOptions] = None,
    ) -> OperationResult:
        plan = plan or UpsertPlan()

        async def op() -> OperationResult:
            return await self._upsert_one(values, plan)

        return await self._run("upsert", op, execution, empty=OperationResult)

    async def bulk_upsert(
        self,
        records: Sequence[Mapping[str, Any]],
        plan: Optional[UpsertPlan] = None,
        execution: Optional[ExecutionOptions] = None,
    ) -> OperationResult:
        plan = plan or UpsertPlan()
        size = plan.batch_size or max(1, len(records))

        async def op() -> OperationResult:
            total = OperationResult()
            for start in range(0, len(records), size):
                chunk = records[start : start + size]
                logger.debug(
                    "Upserting %d record(s) into %s", len(chunk), self.definition.table_name
                )
                for values in chunk:
                    result = await self._upsert_one(values, plan)
                    total.changes += result.changes
                    total.rows.extend(result.rows)
                    if result.last_id is not None:
                        total.last_id = result.last_id
            return total

        return await self._run("bulk_upsert", op, execution, empty=OperationResult)

    # ---------- destroy / restore ----------

    def build_destroy(self, where: Any, force: bool = False) -> CompiledQuery:
        self._require_where(where, "destroy")
        if self.definition.paranoid and not force:
            compiled = self._where(where)
            return CompiledQuery(
                f"UPDATE {self.table} SET {self._col(DELETED_AT)} = ?{self._where_sql(compiled)}",
                (now_ms(),) + compiled.params,
            )
        compiled = self.compiler.compile(where)
        return CompiledQuery(
            f"DELETE FROM {self.table}{self._where_sql(compiled)}", compiled.params
        )

    async def destroy(
        self,
        where: Any,
        force: bool = False,
        execution: Optional[ExecutionOptions] = None,
    ) -> int:
        async def op() -> int:
            await self._run_hooks("before_destroy", where)
            query = self.build_destroy(where, force)
            result = await self.db.execute(query.sql, query.params)
            await self._run_hooks("after_destroy", result.changes)
            return result.changes

        return await self._run("destroy", op, execution, empty=int)

    def build_restore(self, where: Any) -> CompiledQuery:
        if not self.definition.paranoid:
            raise RestoreNotSupported(
                f"{self.name} is not paranoid; there is nothing to restore"
            )
        self._require_where(where, "restore")
        compiled = join_conditions(
            [
                self.compiler.compile(where),
                CompiledQuery(f"{self._col(DELETED_AT)} IS NOT NULL"),
            ]
        )
        clauses = [f"{self._col(DELETED_AT)} = NULL"]
        params: List[Any] = []
        if self.definition.timestamps:
            clauses.append(f"{self._col(UPDATED_AT)} = ?")
            params.append(now_ms())
        return CompiledQuery(
            f"UPDATE {self.table} SET {', '.join(clauses)}{self._where_sql(compiled)}",
            tuple(params) + compiled.params,
        )

    async def restore(
        self, where: Any, execution: Optional[ExecutionOptions] = None
    ) -> int:
        async def op() -> int:
            query = self.build_restore(where)
            result = await self.db.execute(query.sql, query.params)
            return result.changes

        return await self._run("restore", op, execution, empty=int)

    # ---------- increment / decrement ----------

    def build_increment(
        self,
        fields: Union[str, Sequence[str], Mapping[str, Any]],
        where: Any = None,
        pk: Any = None,
        by: Union[int, float] = 1,
    ) -> CompiledQuery:
        if isinstance(fields, str):
            amounts: Dict[str, Any] = {fields: by}
        elif isinstance(fields, Mapping):
            amounts = {name: amount * by for name, amount in fields.items()}
        else:
            amounts = {name: by for name in fields}
        if not amounts:
            raise NoUpdatableFields(f"No fields to increment on {self.name}")

        for name in amounts:
            column = self.definition.column(name)
            if column is None or column.type not in NUMERIC_TYPES:
                raise ValueError(
                    f"Field {name} is not numeric and cannot be incremented"
                )

        if pk is not None:
            key = {self.definition.primary_key_column.python_name: pk}
            where = {"and": [key, where]} if where else key
        self._require_where(where, "increment")

        clauses = [f"{self._col(n)} = {self._col(n)} + ?" for n in amounts]
        params: List[Any] = list(amounts.values())
        if self.definition.timestamps and UPDATED_AT not in amounts:
            clauses.append(f"{self._col(UPDATED_AT)} = ?")
            params.append(now_ms())

        compiled = self._where(where)
        return CompiledQuery(
            f"UPDATE {self.table} SET {', '.join(clauses)}{self._where_sql(compiled)}",
            tuple(params) + compiled.params,
        )

    async def increment(
        self,
        fields: Union[str, Sequence[str], Mapping[str, Any]],
        where: Any = None,
        pk: Any = None,
        by: Union[int, float] = 1,
        execution: Optional[ExecutionOptions] = None,
    ) -> None:
        query = self.build_increment(fields, where, pk, by)

        async def op() -> None:
            await self.db.execute(query.sql, query.params)

        await self._run("increment", op, execution)

    async def decrement(
        self,
        fields: Union[str, Sequence[str], Mapping[str, Any]],
        where: Any = None,
        pk: Any = None,
        by: Union[int, float] = 1,
        execution: Optional[ExecutionOptions] = None,
    ) -> None:
        query = self.build_increment(fields, where, pk, -by)

        async def op() -> None:
            await self.db.execute(query.sql, query.params)

        await self._run("decrement", op, execution)

    # ---------- aggregates ----------

    def build_aggregate(
        self, function: str, field_name: Optional[str] = None, where: Any = None, paranoid: bool = True
    ) -> CompiledQuery:
        if field_name is None:
            target = "*"
        else:
            column = self.definition.column(field_name)
            if column is None or column.type not in NUMERIC_TYPES:
                raise ValueError(f"Column {field_name} is not a numeric type")
            target = self._col(field_name)
        compiled = self._where(where, paranoid)
        return CompiledQuery(
            f"SELECT {function}({target}) AS result FROM {self.table}{self._where_sql(compiled)}",
            compiled.params,
        )

    async def _aggregate(
        self,
        verb: str,
        function: str,
        field_name: Optional[str],
        where: Any,
        paranoid: bool,
        execution: Optional[ExecutionOptions],
    ) -> Any:
        query = self.build_aggregate(function, field_name, where, paranoid)

        async def op() -> Any:
            row = await self.db.execute_and_fetch_one(query.sql, query.params)
            return row["result"] if row is not None else None

        return await self._run(verb, op, execution, mutating=False)

    async def count(
        self, where: Any = None, paranoid: bool = True, execution: Optional[ExecutionOptions] = None
    ) -> int:
        return int(await self._aggregate("count", "COUNT", None, where, paranoid, execution) or 0)

    async def sum(
        self,
        field_name: str,
        where: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Union[int, float]:
        value = await self._aggregate("sum", "SUM", field_name, where, paranoid, execution)
        return 0 if value is None else value

    async def min(
        self,
        field_name: str,
        where: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Optional[Union[int, float]]:
        return await self._aggregate("min", "MIN", field_name, where, paranoid, execution)

    async def max(
        self,
        field_name: str,
        where: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Optional[Union[int, float]]:
        return await self._aggregate("max", "MAX", field_name, where, paranoid, execution)

    async def average(
        self,
        field_name: str,
        where: Any = None,
        paranoid: bool = True,
        execution: Optional[ExecutionOptions] = None,
    ) -> Optional[float]:
        return await self._aggregate("average", "AVG", field_name, where, paranoid, execution)

    # ---------- truncate ----------

    async def truncate(
        self, restart_identity: bool = False, execution: Optional[ExecutionOptions] = None
    ) -> int:
        """Delete every row, soft-deleted ones included; optionally reset the autoincrement counter."""

        async def op() -> int:
            result = await self.db.execute(f"DELETE FROM {self.table}")
            if restart_identity:
                has_sequence = await self.db.execute_and_fetch_one(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'sqlite_sequence'"
                )
                if has_sequence is not None:
                    await self.db.execute(
                        "DELETE FROM sqlite_sequence WHERE name = ?",
                        (self.definition.table_name,),
                    )
            return result.changes

        return await self._run("truncate", op, execution, empty=int)
