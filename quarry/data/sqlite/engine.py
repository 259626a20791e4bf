from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple, Union

from quarry.config import DatabaseConfig
from quarry.data.sqlite.associations import AssociationResolver
from quarry.data.sqlite.coercion import TypeCoercion
from quarry.data.sqlite.manager import DatabaseManager
from quarry.data.sqlite.models import (
    Column,
    ModelDefinition,
    ModelOptions,
    SchemaRegistry,
)
from quarry.data.sqlite.operations import Model

logger = logging.getLogger(__name__)


class Engine:
    """
    Wires a database, a schema registry and the coercion service together and hands
    out ``Model`` handles.

        engine = Engine("app.db", registry)
        users = engine.model("User")
        await users.create({"email": "a@x.com"})
    """

    def __init__(
        self,
        database: Union[DatabaseManager, DatabaseConfig, str, None] = None,
        registry: Optional[SchemaRegistry] = None,
        coercion: Optional[TypeCoercion] = None,
        max_include_depth: Optional[int] = None,
    ):
        if isinstance(database, DatabaseManager):
            self.db = database
        elif isinstance(database, DatabaseConfig):
            self.db = DatabaseManager(database)
        else:
            self.db = DatabaseManager(path=database)
        self.registry = registry if registry is not None else SchemaRegistry()
        self.coercion = coercion or TypeCoercion()
        self.resolver = AssociationResolver(self, max_depth=max_include_depth)
        self._models: Dict[str, Tuple[ModelDefinition, Model]] = {}

    def model(self, name: str) -> Model:
        definition = self.registry.get_model(name)
        cached = self._models.get(name)
        if cached is not None and cached[0] is definition:
            return cached[1]
        handle = Model(definition, self.db, self.coercion, self.resolver)
        self._models[name] = (definition, handle)
        return handle

    def define(
        self,
        name: str,
        columns: Union[Mapping[str, Column], List[Column]],
        options: Optional[ModelOptions] = None,
        table_name: Optional[str] = None,
    ) -> Model:
        self.registry.define(name, columns, options, table_name=table_name)
        return self.model(name)

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None) -> AsyncIterator["Engine"]:
        async with self.db.transaction(isolation):
            yield self

    async def executescript(self, script: str) -> None:
        await self.db.executescript(script)

    async def connect(self) -> "Engine":
        await self.db.connect()
        return self

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> "Engine":
        return await self.connect()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
