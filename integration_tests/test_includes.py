"""Test association includes against a real SQLite database."""

import pytest
import pytest_asyncio

from quarry.config import Include
from quarry.data.sqlite.engine import Engine
from quarry.data.sqlite.models import Column, ModelOptions, References, SchemaRegistry
from quarry.types import DataType

SCHEMA = """
CREATE TABLE authors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    mentor_id INTEGER REFERENCES authors(id)
);
CREATE TABLE profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_id INTEGER NOT NULL REFERENCES authors(id),
    bio TEXT
);
CREATE TABLE books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    author_id INTEGER REFERENCES authors(id),
    deleted_at INTEGER
);
CREATE TABLE tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE book_tags (
    book_id INTEGER NOT NULL REFERENCES books(id),
    tag_id INTEGER NOT NULL REFERENCES tags(id),
    PRIMARY KEY (book_id, tag_id)
);
CREATE TABLE reviews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id INTEGER NOT NULL REFERENCES books(id),
    stars INTEGER NOT NULL
);
"""

PLAIN = ModelOptions(timestamps=False, underscored=True)


def pk():
    return Column("id", type=DataType.INTEGER, primary_key=True, auto_increment=True)


def build_registry():
    registry = SchemaRegistry()
    registry.define(
        "Author",
        [
            pk(),
            Column("name", type=DataType.TEXT),
            Column("mentorId", type=DataType.INTEGER, nullable=True),
        ],
        PLAIN,
        table_name="authors",
    )
    registry.define(
        "Profile",
        [
            pk(),
            Column("authorId", type=DataType.INTEGER),
            Column("bio", type=DataType.TEXT, nullable=True),
        ],
        PLAIN,
        table_name="profiles",
    )
    registry.define(
        "Book",
        [
            pk(),
            Column("title", type=DataType.TEXT),
            Column("authorId", type=DataType.INTEGER, nullable=True),
        ],
        ModelOptions(timestamps=False, underscored=True, paranoid=True),
        table_name="books",
    )
    registry.define(
        "Tag",
        [pk(), Column("name", type=DataType.TEXT, unique=True)],
        PLAIN,
        table_name="tags",
    )
    registry.define(
        "BookTag",
        [
            Column("bookId", type=DataType.INTEGER),
            Column("tagId", type=DataType.INTEGER),
        ],
        PLAIN,
        table_name="book_tags",
    )
    registry.define(
        "Review",
        [
            pk(),
            Column("bookId", type=DataType.INTEGER, references=References("Book")),
            Column("stars", type=DataType.INTEGER),
        ],
        PLAIN,
        table_name="reviews",
    )

    registry.has_one("Author", "Profile", "authorId", as_="profile")
    registry.has_many("Author", "Book", "authorId", as_="books")
    registry.belongs_to("Author", "Author", "mentorId", as_="mentor")
    registry.belongs_to("Book", "Author", "authorId", as_="author")
    registry.has_many("Book", "Review", "bookId", as_="reviews")
    registry.belongs_to_many("Book", "Tag", "BookTag", "bookId", "tagId", as_="tags")
    return registry


async def seed(engine):
    authors = engine.model("Author")
    books = engine.model("Book")

    ann = (await authors.create({"name": "Ann"})).last_id
    bob = (await authors.create({"name": "Bob", "mentorId": ann})).last_id
    await authors.create({"name": "Cy", "mentorId": bob})
    await authors.create({"name": "Dee"})

    await engine.model("Profile").create({"authorId": ann, "bio": "writes"})

    alpha = (await books.create({"title": "Alpha", "authorId": ann})).last_id
    beta = (await books.create({"title": "Beta", "authorId": ann})).last_id
    gamma = (await books.create({"title": "Gamma", "authorId": bob})).last_id

    tags = engine.model("Tag")
    fiction = (await tags.create({"name": "fiction"})).last_id
    classic = (await tags.create({"name": "classic"})).last_id

    await engine.model("BookTag").bulk_create(
        [
            {"bookId": alpha, "tagId": fiction},
            {"bookId": alpha, "tagId": classic},
            {"bookId": gamma, "tagId": fiction},
        ]
    )

    await engine.model("Review").bulk_create(
        [
            {"bookId": alpha, "stars": 5},
            {"bookId": alpha, "stars": 3},
            {"bookId": gamma, "stars": 4},
        ]
    )
    return {"ann": ann, "bob": bob, "alpha": alpha, "beta": beta, "gamma": gamma}


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = Engine(str(tmp_path / "library.db"), build_registry())
    await engine.executescript(SCHEMA)
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def ids(engine):
    return await seed(engine)


def by_name(records):
    return {r["name"]: r for r in records}


class TestSingleLevel:
    @pytest.mark.asyncio
    async def test_has_many(self, engine, ids):
        """Test has_many attaches a list, empty when nothing matches."""
        authors = by_name(await engine.model("Author").find_all(include="books"))

        assert sorted(b["title"] for b in authors["Ann"]["books"]) == ["Alpha", "Beta"]
        assert [b["title"] for b in authors["Bob"]["books"]] == ["Gamma"]
        assert authors["Dee"]["books"] == []

    @pytest.mark.asyncio
    async def test_has_one(self, engine, ids):
        """Test has_one attaches a record or None."""
        authors = by_name(await engine.model("Author").find_all(include="profile"))

        assert authors["Ann"]["profile"]["bio"] == "writes"
        assert authors["Ann"]["profile"]["authorId"] == ids["ann"]
        assert authors["Bob"]["profile"] is None

    @pytest.mark.asyncio
    async def test_belongs_to(self, engine, ids):
        """Test belongs_to attaches the owning record."""
        books = await engine.model("Book").find_all(include="author", order="id")

        assert [b["author"]["name"] for b in books] == ["Ann", "Ann", "Bob"]

    @pytest.mark.asyncio
    async def test_belongs_to_with_null_key(self, engine, ids):
        """Test a null foreign key yields None."""
        dee = await engine.model("Author").find_one({"name": "Dee"}, include="mentor")
        assert dee["mentor"] is None

    @pytest.mark.asyncio
    async def test_belongs_to_many(self, engine, ids):
        """Test many-to-many through a junction model."""
        books = {
            b["title"]: b for b in await engine.model("Book").find_all(include="tags")
        }

        assert sorted(t["name"] for t in books["Alpha"]["tags"]) == ["classic", "fiction"]
        assert [t["name"] for t in books["Gamma"]["tags"]] == ["fiction"]
        assert books["Beta"]["tags"] == []
        assert all("__through_key" not in t for t in books["Alpha"]["tags"])

    @pytest.mark.asyncio
    async def test_reference_fallback(self, engine, ids):
        """Test a column reference doubles as a belongs_to include."""
        reviews = await engine.model("Review").find_all(include="Book", order="id")
        assert [r["Book"]["title"] for r in reviews] == ["Alpha", "Alpha", "Gamma"]

    @pytest.mark.asyncio
    async def test_find_by_pk_with_include(self, engine, ids):
        """Test includes on single-record lookups."""
        book = await engine.model("Book").find_by_pk(ids["gamma"], include=["author", "reviews"])

        assert book["author"]["name"] == "Bob"
        assert [r["stars"] for r in book["reviews"]] == [4]

    @pytest.mark.asyncio
    async def test_unknown_alias(self, engine, ids):
        """Test an unknown include name fails."""
        with pytest.raises(ValueError):
            await engine.model("Author").find_all(include="publisher")


class TestScopedIncludes:
    @pytest.mark.asyncio
    async def test_include_where(self, engine, ids):
        """Test an include can filter the associated rows."""
        ann = await engine.model("Author").find_by_pk(
            ids["ann"], include=Include(association="books", where={"title": {"like": "B%"}})
        )
        assert [b["title"] for b in ann["books"]] == ["Beta"]

    @pytest.mark.asyncio
    async def test_include_as_dict(self, engine, ids):
        """Test the mapping form of an include."""
        ann = await engine.model("Author").find_by_pk(
            ids["ann"], include={"as": "books", "where": {"title": "Alpha"}}
        )
        assert [b["title"] for b in ann["books"]] == ["Alpha"]

    @pytest.mark.asyncio
    async def test_include_attributes_keep_join_key(self, engine, ids):
        """Test selected attributes still carry the key used for stitching."""
        ann = await engine.model("Author").find_by_pk(
            ids["ann"], include=Include(association="books", attributes=["title"])
        )
        assert sorted(ann["books"][0]) == ["authorId", "title"]
        assert len(ann["books"]) == 2

    @pytest.mark.asyncio
    async def test_soft_deleted_rows_are_excluded(self, engine, ids):
        """Test included rows respect the target's soft delete."""
        await engine.model("Book").destroy({"id": ids["beta"]})

        ann = await engine.model("Author").find_by_pk(ids["ann"], include="books")
        assert [b["title"] for b in ann["books"]] == ["Alpha"]


class TestNested:
    @pytest.mark.asyncio
    async def test_nested_paths_share_a_root(self, engine, ids):
        """Test "books > reviews" and "books > tags" merge under one books include."""
        ann = await engine.model("Author").find_by_pk(
            ids["ann"], include=["books > reviews", "books > tags"]
        )
        books = {b["title"]: b for b in ann["books"]}

        assert sorted(r["stars"] for r in books["Alpha"]["reviews"]) == [3, 5]
        assert sorted(t["name"] for t in books["Alpha"]["tags"]) == ["classic", "fiction"]
        assert books["Beta"]["reviews"] == []
        assert books["Beta"]["tags"] == []

    @pytest.mark.asyncio
    async def test_nested_include_objects(self, engine, ids):
        """Test Include objects nest the same way as paths."""
        books = await engine.model("Book").find_all(
            include=Include(association="author", include=["profile"]), order="id"
        )
        assert books[0]["author"]["profile"]["bio"] == "writes"
        assert books[2]["author"]["profile"] is None

    @pytest.mark.asyncio
    async def test_self_referential_chain(self, engine, ids):
        """Test a self-referencing association followed twice."""
        cy = await engine.model("Author").find_one(
            {"name": "Cy"}, include="mentor > mentor"
        )
        assert cy["mentor"]["name"] == "Bob"
        assert cy["mentor"]["mentor"]["name"] == "Ann"

    @pytest.mark.asyncio
    async def test_max_include_depth(self, tmp_path):
        """Test nesting deeper than max_include_depth fails."""
        engine = Engine(
            str(tmp_path / "bounded.db"), build_registry(), max_include_depth=1
        )
        await engine.executescript(SCHEMA)
        try:
            await seed(engine)
            authors = engine.model("Author")

            cy = await authors.find_one({"name": "Cy"}, include="mentor")
            assert cy["mentor"]["name"] == "Bob"

            with pytest.raises(ValueError):
                await authors.find_one({"name": "Cy"}, include="mentor > mentor")
        finally:
            await engine.close()
