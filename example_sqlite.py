"""
Example demonstrating the SQLite mapping layer.

This example defines two related models, writes a few rows, merges an upsert
into an existing record and reads everything back with an include.
"""

import asyncio
import logging
import os
import tempfile

from quarry import Column, Engine, MergeStrategy, ModelOptions, SchemaRegistry, UpsertPlan
from quarry.types import DataType

SCHEMA = """
CREATE TABLE people (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    logins INTEGER NOT NULL DEFAULT 0,
    skills TEXT,
    createdAt INTEGER,
    updatedAt INTEGER
);
CREATE TABLE notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    person_id INTEGER NOT NULL REFERENCES people(id),
    body TEXT NOT NULL,
    createdAt INTEGER,
    updatedAt INTEGER,
    deletedAt INTEGER
);
"""


def build_registry() -> SchemaRegistry:
    registry = SchemaRegistry()
    registry.define(
        "Person",
        [
            Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True),
            Column("email", type=DataType.TEXT, unique=True),
            Column("name", type=DataType.TEXT),
            Column("logins", type=DataType.INTEGER, default=0),
            Column("skills", type=DataType.TEXT, nullable=True, python_type=list),
        ],
        table_name="people",
    )
    registry.define(
        "Note",
        [
            Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True),
            Column("personId", "person_id", DataType.INTEGER),
            Column("body", type=DataType.TEXT),
        ],
        ModelOptions(paranoid=True),
        table_name="notes",
    )
    registry.has_many("Person", "Note", "personId", as_="notes")
    return registry


async def main():
    """Run the example."""
    logging.basicConfig(level=logging.INFO)
    print("\n=== SQLite Mapping Example ===\n")

    path = os.path.join(tempfile.mkdtemp(), "example.db")
    async with Engine(path, build_registry()) as engine:
        await engine.executescript(SCHEMA)
        people = engine.model("Person")
        notes = engine.model("Note")

        john = await people.create(
            {"email": "john@example.com", "name": "John", "skills": ["python"]}
        )
        await people.create({"email": "maria@example.com", "name": "Maria"})

        # Creating the same email again is skipped, not an error
        again = await people.create({"email": "john@example.com", "name": "Johnny"})
        print(f"Duplicate create changed {again.changes} row(s)")

        await notes.bulk_create(
            [
                {"personId": john.last_id, "body": "Likes async code"},
                {"personId": john.last_id, "body": "Stale note"},
            ]
        )
        await notes.destroy({"body": "Stale note"})

        merged = await people.upsert(
            {"email": "john@example.com", "logins": 3},
            UpsertPlan(merge_strategy={"logins": MergeStrategy.NUMERIC}),
        )
        print(f"Upsert new={merged.is_new}, logins={merged.record['logins']}")

        print("\nPeople with notes:")
        for person in await people.find_all(include="notes", order="name"):
            bodies = ", ".join(n["body"] for n in person["notes"]) or "-"
            print(f"- {person['name']} ({person['logins']} logins): {bodies}")

        print(f"\nAverage logins: {await people.average('logins')}")

    print("\nExample completed!")


if __name__ == "__main__":
    asyncio.run(main())
