"""
Tests for the SQL backend against temporary SQLite databases.
"""

from pathlib import Path

import pytest
from sqlalchemy import Column, Integer, MetaData, Table, Text, create_engine, insert, select

from datapump.core.backends.base import BackendContext, WriteError
from datapump.core.backends.sql_backend import SqlBackend
from datapump.core.config.models import Environment, TransferOptions


@pytest.fixture
def source_db(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'source.db'}"
    engine = create_engine(url)
    table = Table(
        "people",
        MetaData(),
        Column("id", Integer, primary_key=True),
        Column("name", Text),
    )
    table.create(engine)
    with engine.begin() as conn:
        conn.execute(insert(table), [{"id": i, "name": f"person-{i}"} for i in range(1, 13)])
    engine.dispose()
    return url


@pytest.fixture
def env(source_db, tmp_path: Path) -> Environment:
    options = TransferOptions.model_validate(
        {
            "drivers": {"source": "sql", "target": "sql"},
            "source": {"url": source_db, "table": "people"},
            "target": {"url": f"sqlite:///{tmp_path / 'target.db'}", "table": "people_copy"},
        }
    )
    return Environment(options=options)


@pytest.fixture
async def source(env):
    backend = SqlBackend(BackendContext(role="source"))
    yield backend
    await backend.end(env)


@pytest.fixture
async def target(env):
    backend = SqlBackend(BackendContext(role="target"))
    yield backend
    await backend.end(env)


def target_rows(env: Environment) -> list[dict]:
    engine = create_engine(env.options.target["url"])
    table = Table("people_copy", MetaData(), autoload_with=engine)
    with engine.connect() as conn:
        rows = [dict(r._mapping) for r in conn.execute(select(table).order_by(table.c.id))]
    engine.dispose()
    return rows


class TestSqlSource:
    async def test_stats(self, env, source):
        stats = await source.get_source_stats(env)

        assert stats.total == 12
        assert stats.version == "sqlite"

    async def test_pages_ordered_by_key(self, env, source):
        page = await source.get_data(env, 5, 4)

        assert [r["id"] for r in page] == [6, 7, 8, 9]
        assert await source.get_data(env, 12, 4) == []

    async def test_meta_describes_columns(self, env, source):
        meta = await source.get_meta(env)

        assert meta["table"] == "people"
        assert meta["key"] == "id"
        assert [c["name"] for c in meta["columns"]] == ["id", "name"]


class TestSqlTarget:
    async def test_creates_table_from_meta_and_writes(self, env, source, target):
        await target.put_meta(env, await source.get_meta(env))
        await target.put_data(env, await source.get_data(env, 0, 12))

        rows = target_rows(env)
        assert len(rows) == 12
        assert rows[0] == {"id": 1, "name": "person-1"}

    async def test_resubmitted_page_does_not_duplicate(self, env, source, target):
        await target.put_meta(env, await source.get_meta(env))
        page = await source.get_data(env, 0, 3)

        await target.put_data(env, page)
        await target.put_data(env, page)

        assert len(target_rows(env)) == 3

    async def test_write_without_table_fails(self, env, target):
        with pytest.raises(WriteError):
            await target.put_data(env, [{"id": 1}])


class TestVerifyOptions:
    def test_requires_url_and_table(self):
        options = TransferOptions.model_validate({"drivers": {"source": "sql", "target": "noop"}})

        errors = SqlBackend().verify_options(options)

        assert errors == [
            "source.url is required for the sql backend",
            "source.table is required for the sql backend",
        ]
