from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Union,
)
import copy
import re

from quarry.types import AssociationKind, DataType

CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"
DELETED_AT = "deletedAt"

HOOK_EVENTS = (
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_destroy",
    "after_destroy",
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def underscore(name: str) -> str:
    return re.sub(r"([A-Z])", r"_\1", name).lower().lstrip("_")


@dataclass(frozen=True)
class References:
    model: str
    key: str = "id"


class Column:
    def __init__(
        self,
        python_name: str,
        db_name: Optional[str] = None,
        type: DataType = DataType.TEXT,
        nullable: bool = False,
        *,
        primary_key: bool = False,
        auto_increment: bool = False,
        unique: bool = False,
        default: Any = MISSING,
        default_fn: Optional[Callable[[], Any]] = None,
        transform: Optional[Callable[[Any], Any]] = None,
        getter: Optional[Callable[[Any], Any]] = None,
        setter: Optional[Callable[[Any], Any]] = None,
        references: Optional[References] = None,
        python_type: Any = None,
        virtual: bool = False,
        read_only: bool = False,
        generated: bool = False,
    ):
        self.python_name = python_name
        self.db_name = db_name
        self.type = DataType(type)
        self.nullable = nullable
        self.primary_key = primary_key
        self.auto_increment = auto_increment
        self.unique = unique
        self.default = default
        self.default_fn = default_fn
        self.transform = transform
        self.getter = getter
        self.setter = setter
        self.references = references
        self.python_type = python_type
        self.virtual = virtual
        self.read_only = read_only
        self.generated = generated

    @property
    def writable(self) -> bool:
        return not (self.virtual or self.read_only or self.generated)

    def __repr__(self) -> str:
        return f"Column({self.python_name!r}, {self.db_name!r}, {self.type.value})"


@dataclass
class ModelOptions:
    timestamps: bool = True
    paranoid: bool = False
    underscored: bool = False
    hooks: Dict[str, List[Callable[..., Any]]] = field(default_factory=dict)


class ModelDefinition:
    """
    Table metadata for one model: the table name, its ordered columns and behavioural options.

    Bookkeeping columns (createdAt/updatedAt when timestamps are on, deletedAt when paranoid)
    are added automatically unless the caller declared them.
    """

    def __init__(
        self,
        name: str,
        columns: Union[Mapping[str, Column], List[Column]],
        options: Optional[ModelOptions] = None,
        table_name: Optional[str] = None,
    ):
        self.name = name
        self.table_name = table_name or name
        self.options = options or ModelOptions()

        if isinstance(columns, Mapping):
            column_list = list(columns.values())
        else:
            column_list = list(columns)

        self.columns: Dict[str, Column] = {}
        for col in column_list:
            # Copied so a column shared between models keeps its own db name in each.
            col = copy.copy(col)
            if col.db_name is None:
                col.db_name = (
                    underscore(col.python_name)
                    if self.options.underscored
                    else col.python_name
                )
            self.columns[col.python_name] = col

        for event in self.options.hooks:
            if event not in HOOK_EVENTS:
                raise ValueError(f"Unknown hook '{event}' on model {self.name}")

        self._add_bookkeeping_columns()
        self._check_auto_increment()

    def _add_bookkeeping_columns(self) -> None:
        names: List[str] = []
        if self.options.timestamps:
            names += [CREATED_AT, UPDATED_AT]
        if self.options.paranoid:
            names.append(DELETED_AT)
        for name in names:
            if name not in self.columns:
                db_name = underscore(name) if self.options.underscored else name
                self.columns[name] = Column(name, db_name, DataType.INTEGER, True)

    def _check_auto_increment(self) -> None:
        auto = [c for c in self.columns.values() if c.auto_increment]
        if len(auto) > 1:
            raise ValueError(
                f"Model {self.name} declares more than one auto-increment column"
            )
        if auto and not auto[0].primary_key:
            raise ValueError(
                f"Auto-increment column '{auto[0].python_name}' on {self.name} must be the primary key"
            )

    @property
    def primary_key(self) -> Optional[str]:
        return next(
            (c.python_name for c in self.columns.values() if c.primary_key), None
        )

    @property
    def primary_key_column(self) -> Column:
        pk = self.primary_key
        if pk is None:
            raise ValueError(f"No primary key defined on model {self.name}")
        return self.columns[pk]

    @property
    def unique_columns(self) -> List[Column]:
        return [c for c in self.columns.values() if c.unique]

    @property
    def selectable_columns(self) -> List[Column]:
        return [c for c in self.columns.values() if not c.virtual]

    @property
    def timestamps(self) -> bool:
        return self.options.timestamps

    @property
    def paranoid(self) -> bool:
        return self.options.paranoid

    def column(self, name: str) -> Optional[Column]:
        return self.columns.get(name)

    def db_name(self, field_name: str) -> str:
        col = self.columns.get(field_name)
        if col is not None:
            return col.db_name  # type: ignore[return-value]
        # Fields can also be given by their db name.
        for col in self.columns.values():
            if col.db_name == field_name:
                return field_name
        return field_name

    def python_name(self, db_name: str) -> str:
        for col in self.columns.values():
            if col.db_name == db_name:
                return col.python_name
        return db_name

    def declared_type(self, field_name: str) -> Optional[DataType]:
        col = self.columns.get(field_name)
        if col is None:
            col = next(
                (c for c in self.columns.values() if c.db_name == field_name), None
            )
        return col.type if col is not None else None

    def hooks_for(self, event: str) -> List[Callable[..., Any]]:
        return list(self.options.hooks.get(event, []))

    def __repr__(self) -> str:
        return f"ModelDefinition({self.name!r}, table={self.table_name!r})"


@dataclass(frozen=True)
class Association:
    kind: AssociationKind
    source: str
    target: str
    foreign_key: str
    alias: str
    source_key: Optional[str] = None
    target_key: Optional[str] = None
    through: Optional[str] = None
    other_key: Optional[str] = None

    @property
    def many(self) -> bool:
        return self.kind in (AssociationKind.HAS_MANY, AssociationKind.BELONGS_TO_MANY)


class SchemaRegistry:
    """
    Holds model definitions and their associations.

    Passed explicitly to an Engine. Associations reference their target by name and are
    resolved when a query runs, so models may refer to each other before both exist.
    """

    def __init__(self) -> None:
        self.models: Dict[str, ModelDefinition] = {}
        self.associations: Dict[str, Dict[str, Association]] = {}

    def define(
        self,
        name: str,
        columns: Union[Mapping[str, Column], List[Column]],
        options: Optional[ModelOptions] = None,
        table_name: Optional[str] = None,
    ) -> ModelDefinition:
        definition = ModelDefinition(name, columns, options, table_name=table_name)
        self.register_model(definition)
        return definition

    def register_model(self, definition: ModelDefinition) -> None:
        self.models[definition.name] = definition
        self.associations.setdefault(definition.name, {})

    def delete_model(self, name: str) -> None:
        del self.models[name]
        self.associations.pop(name, None)

    def get_model(self, name: str) -> ModelDefinition:
        try:
            return self.models[name]
        except KeyError:
            raise KeyError(f"Model '{name}' is not registered") from None

    def get_columns(self, name: str) -> Dict[str, Column]:
        return self.get_model(name).columns

    def get_primary_key(self, name: str) -> Optional[str]:
        return self.get_model(name).primary_key

    def get_associations(self, name: str) -> Dict[str, Association]:
        return dict(self.associations.get(name, {}))

    def get_association(self, name: str, alias: str) -> Optional[Association]:
        return self.associations.get(name, {}).get(alias)

    # ---------- association registration ----------

    def _add(self, association: Association) -> Association:
        self.associations.setdefault(association.source, {})[
            association.alias
        ] = association
        return association

    def belongs_to(
        self,
        source: str,
        target: str,
        foreign_key: str,
        target_key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> Association:
        return self._add(
            Association(
                AssociationKind.BELONGS_TO,
                source,
                target,
                foreign_key,
                as_ or target,
                target_key=target_key,
            )
        )

    def has_one(
        self,
        source: str,
        target: str,
        foreign_key: str,
        source_key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> Association:
        return self._add(
            Association(
                AssociationKind.HAS_ONE,
                source,
                target,
                foreign_key,
                as_ or target,
                source_key=source_key,
            )
        )

    def has_many(
        self,
        source: str,
        target: str,
        foreign_key: str,
        source_key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> Association:
        return self._add(
            Association(
                AssociationKind.HAS_MANY,
                source,
                target,
                foreign_key,
                as_ or target,
                source_key=source_key,
            )
        )

    def belongs_to_many(
        self,
        source: str,
        target: str,
        through: str,
        foreign_key: str,
        other_key: str,
        source_key: Optional[str] = None,
        target_key: Optional[str] = None,
        as_: Optional[str] = None,
    ) -> Association:
        return self._add(
            Association(
                AssociationKind.BELONGS_TO_MANY,
                source,
                target,
                foreign_key,
                as_ or target,
                source_key=source_key,
                target_key=target_key,
                through=through,
                other_key=other_key,
            )
        )
