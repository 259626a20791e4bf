from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from quarry.config import Include
from quarry.data.sqlite.conditions import (
    CompiledQuery,
    ConditionCompiler,
    join_conditions,
    quote_identifier,
)
from quarry.data.sqlite.models import DELETED_AT, Association, References
from quarry.types import AssociationKind

if TYPE_CHECKING:
    from quarry.data.sqlite.engine import Engine
    from quarry.data.sqlite.operations import Model, Record

logger = logging.getLogger(__name__)

PreloadPath = List[str]
PreloadTree = Dict[str, "PreloadTree"]

THROUGH_KEY = "__through_key"


def parse_preload_paths(preload: Sequence[str]) -> Dict[str, List[PreloadPath]]:
    """Parse include strings into structured paths.

    Args:
        preload: List of include strings like ["author > profile", "comments"]

    Returns:
        Dictionary mapping root aliases to their nested paths
        e.g., {"author": [["author", "profile"]], "comments": [["comments"]]}
    """
    paths_by_root: Dict[str, List[PreloadPath]] = {}

    for preload_str in preload:
        parts = [part.strip() for part in preload_str.split(">")]
        if not parts or not parts[0]:
            continue
        paths_by_root.setdefault(parts[0], []).append(parts)

    return paths_by_root


def build_preload_tree(paths: Sequence[PreloadPath]) -> PreloadTree:
    """Convert a list of paths to a tree.

    [["author", "profile"], ["author", "posts"]] -> {"author": {"profile": {}, "posts": {}}}
    """
    tree: PreloadTree = {}
    for path in paths:
        current = tree
        for part in path:
            current = current.setdefault(part, {})
    return tree


def _tree_to_includes(tree: PreloadTree) -> List[Include]:
    return [
        Include(association=alias, include=_tree_to_includes(subtree))  # type: ignore[arg-type]
        for alias, subtree in tree.items()
    ]


def normalize_includes(include: Any) -> List[Include]:
    """
    Accept an alias, an ``"a > b"`` path, an ``Include``, a dict with ``as`` /
    ``where`` / ``attributes`` / ``include`` keys, or a list mixing any of those.
    """
    if include is None:
        return []
    items = include if isinstance(include, (list, tuple)) else [include]

    strings: List[str] = []
    result: List[Include] = []
    for item in items:
        if isinstance(item, str):
            strings.append(item)
        elif isinstance(item, Include):
            result.append(item)
        elif isinstance(item, dict):
            result.append(Include.model_validate(item))
        else:
            raise ValueError(f"Unsupported include: {item!r}")

    if strings:
        paths: List[PreloadPath] = []
        for root_paths in parse_preload_paths(strings).values():
            paths.extend(root_paths)
        result = _tree_to_includes(build_preload_tree(paths)) + result
    return result


class AssociationResolver:
    """
    Stitches associated rows onto already-fetched records, one secondary query per
    association and level, joined back in memory by key equality.

    Nested includes recurse one level at a time. Self-referential chains are not
    detected; ``max_depth`` (None means unlimited) bounds how deep nesting may go.
    """

    def __init__(self, engine: "Engine", max_depth: Optional[int] = None):
        self.engine = engine
        self.max_depth = max_depth

    def association_for(self, model: "Model", alias: str) -> Association:
        association = self.engine.registry.get_association(model.name, alias)
        if association is not None:
            return association

        # Fall back to a column whose foreign-key reference names the included model.
        for column in model.definition.columns.values():
            ref: Optional[References] = column.references
            if ref is not None and ref.model == alias:
                return Association(
                    AssociationKind.BELONGS_TO,
                    model.name,
                    alias,
                    column.python_name,
                    alias,
                    target_key=ref.key,
                )
        raise ValueError(f"{model.name} has no association named {alias!r}")

    async def resolve(
        self,
        model: "Model",
        records: List["Record"],
        include: Any,
        depth: int = 1,
    ) -> List["Record"]:
        includes = normalize_includes(include)
        if not includes or not records:
            return records
        if self.max_depth is not None and depth > self.max_depth:
            raise ValueError(
                f"Include nesting on {model.name} exceeds max_include_depth={self.max_depth}"
            )

        for inc in includes:
            association = self.association_for(model, inc.association)
            target = self.engine.model(association.target)
            logger.debug(
                "Resolving %s.%s (%s) for %d record(s)",
                model.name,
                association.alias,
                association.kind.value,
                len(records),
            )

            if association.kind == AssociationKind.BELONGS_TO:
                await self._belongs_to(model, target, association, inc, records)
            elif association.kind == AssociationKind.BELONGS_TO_MANY:
                await self._belongs_to_many(model, target, association, inc, records)
            else:
                await self._has(model, target, association, inc, records)

            if inc.include:
                children: List["Record"] = []
                for record in records:
                    value = record.get(association.alias)
                    if isinstance(value, list):
                        children.extend(value)
                    elif value is not None:
                        children.append(value)
                await self.resolve(target, children, inc.include, depth + 1)

        return records

    @staticmethod
    def _attributes(inc: Include, required: str) -> Optional[List[str]]:
        if not inc.attributes:
            return None
        if required in inc.attributes:
            return list(inc.attributes)
        return list(inc.attributes) + [required]

    @staticmethod
    def _keys(records: List["Record"], name: str) -> List[Any]:
        keys: List[Any] = []
        for record in records:
            value = record.get(name)
            if value is not None and value not in keys:
                keys.append(value)
        return keys

    @staticmethod
    def _scoped(condition: Dict[str, Any], extra: Any) -> Any:
        return {"and": [condition, extra]} if extra else condition

    async def _has(
        self,
        model: "Model",
        target: "Model",
        association: Association,
        inc: Include,
        records: List["Record"],
    ) -> None:
        source_key = association.source_key or model.definition.primary_key_column.python_name
        fk = association.foreign_key
        keys = self._keys(records, source_key)

        grouped: Dict[Any, List["Record"]] = {}
        if keys:
            rows = await target.find_all(
                where=self._scoped({fk: {"in": keys}}, inc.where),
                attributes=self._attributes(inc, fk),
            )
            for row in rows:
                grouped.setdefault(row.get(fk), []).append(row)

        for record in records:
            matches = grouped.get(record.get(source_key), [])
            if association.kind == AssociationKind.HAS_ONE:
                record[association.alias] = matches[0] if matches else None
            else:
                record[association.alias] = list(matches)

    async def _belongs_to(
        self,
        model: "Model",
        target: "Model",
        association: Association,
        inc: Include,
        records: List["Record"],
    ) -> None:
        target_key = association.target_key or target.definition.primary_key_column.python_name
        fk = association.foreign_key
        keys = self._keys(records, fk)

        index: Dict[Any, "Record"] = {}
        if keys:
            rows = await target.find_all(
                where=self._scoped({target_key: {"in": keys}}, inc.where),
                attributes=self._attributes(inc, target_key),
            )
            for row in rows:
                index.setdefault(row.get(target_key), row)

        for record in records:
            record[association.alias] = index.get(record.get(fk))

    def build_belongs_to_many(
        self,
        model: "Model",
        target: "Model",
        association: Association,
        inc: Include,
        keys: Sequence[Any],
    ) -> CompiledQuery:
        registry = self.engine.registry
        through = association.through or ""
        junction = registry.models.get(through)
        if junction is not None:
            through_table = junction.table_name
            fk = junction.db_name(association.foreign_key)
            other = junction.db_name(association.other_key or "")
        else:
            through_table = through
            fk = association.foreign_key
            other = association.other_key or ""

        target_key = association.target_key or target.definition.primary_key_column.python_name
        compiler = ConditionCompiler(target.definition, target.coercion, table="r")

        if inc.attributes:
            select = ", ".join(compiler.column(a) for a in inc.attributes)
        else:
            select = "r.*"

        params = [model.coercion.coerce(k) for k in keys]
        membership = CompiledQuery(
            f"j.{quote_identifier(fk)} IN ({', '.join('?' for _ in keys)})", tuple(params)
        )
        parts = [membership, compiler.compile(inc.where)]
        if target.definition.paranoid:
            parts.append(CompiledQuery(f"{compiler.column(DELETED_AT)} IS NULL"))
        where = join_conditions(parts)

        sql = (
            f"SELECT {select}, j.{quote_identifier(fk)} AS {quote_identifier(THROUGH_KEY)} "
            f"FROM {target.table} r "
            f"JOIN {quote_identifier(through_table)} j "
            f"ON j.{quote_identifier(other)} = {compiler.column(target_key)} "
            f"WHERE {where.sql}"
        )
        return CompiledQuery(sql, where.params)

    async def _belongs_to_many(
        self,
        model: "Model",
        target: "Model",
        association: Association,
        inc: Include,
        records: List["Record"],
    ) -> None:
        source_key = association.source_key or model.definition.primary_key_column.python_name
        keys = self._keys(records, source_key)

        grouped: Dict[Any, List["Record"]] = {}
        if keys:
            query = self.build_belongs_to_many(model, target, association, inc, keys)
            rows = await model.db.execute_query(query.sql, query.params)
            for row in rows:
                owner = row.pop(THROUGH_KEY)
                grouped.setdefault(owner, []).append(target.shape(row))

        for record in records:
            record[association.alias] = list(grouped.get(record.get(source_key), []))
