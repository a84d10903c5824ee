"""
SQL table backend using SQLAlchemy.

Reads a table page by page ordered by its key column and writes by
replacing rows with the same key, so resubmitted pages overwrite instead
of duplicating. Each worker owns its own engine, kept on the context.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    inspect,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .base import (
    Backend,
    BackendInfo,
    OptionSpec,
    ReadError,
    Record,
    SourceStats,
    TargetStats,
    WriteError,
)
from .registry import register

if TYPE_CHECKING:
    from datapump.core.config.models import Environment, TransferOptions

logger = logging.getLogger(__name__)

DEFAULT_KEY = "id"

# Generic column types used when creating a target table from metadata
_TYPE_MAP = {
    "integer": Integer,
    "bigint": Integer,
    "smallint": Integer,
    "float": Float,
    "real": Float,
    "numeric": Float,
    "double": Float,
    "boolean": Boolean,
    "json": JSON,
}


def _configure_sqlite(engine: Engine) -> None:
    """Enable WAL and a busy timeout so several worker processes can write."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


def _column_type(type_name: str) -> Any:
    lowered = type_name.lower()
    for prefix, column_type in _TYPE_MAP.items():
        if lowered.startswith(prefix):
            return column_type
    return Text


@register
class SqlBackend(Backend):
    info = BackendInfo(
        id="sql",
        name="SQL Table Backend",
        version="1.0",
        description="Reads and writes rows of a single table through SQLAlchemy",
        threadsafe=True,
    )

    @classmethod
    def option_specs(cls) -> dict[str, dict[str, OptionSpec]]:
        common = {
            "url": OptionSpec("SQLAlchemy database URL", required=True),
            "table": OptionSpec("Table name", required=True),
            "key": OptionSpec("Key column used for ordering and overwrites", default=DEFAULT_KEY),
        }
        return {"source": dict(common), "target": dict(common)}

    def _opts(self, env: Environment) -> dict[str, Any]:
        return env.options.source if self.context.is_source else env.options.target

    def _key(self, env: Environment) -> str:
        return self._opts(env).get("key") or DEFAULT_KEY

    def verify_options(self, options: TransferOptions) -> list[str]:
        errors: list[str] = []
        for role in ("source", "target"):
            if getattr(options.drivers, role) != self.info.id:
                continue
            opts = getattr(options, role)
            for name in ("url", "table"):
                if not opts.get(name):
                    errors.append(f"{role}.{name} is required for the sql backend")
        return errors

    # -------------------------------------------------------------------------
    # Engine / table handling
    # -------------------------------------------------------------------------

    def _engine(self, env: Environment) -> Engine:
        engine = self.context.client
        if engine is None:
            url = self._opts(env)["url"]
            engine = create_engine(url, future=True)
            if url.startswith("sqlite"):
                _configure_sqlite(engine)
            self.context.client = engine
        return engine

    def _table(self, env: Environment) -> Table:
        table = self.context.state.get("table")
        if table is None:
            table = Table(self._opts(env)["table"], MetaData(), autoload_with=self._engine(env))
            self.context.state["table"] = table
        return table

    async def _run(self, fn, error_cls: type, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            raise error_cls(f"SQL error: {e}", backend=self.info.id, cause=e) from e

    async def end(self, env: Environment) -> None:
        engine = self.context.client
        if engine is not None:
            engine.dispose()
            self.context.client = None

    # -------------------------------------------------------------------------
    # Stats and metadata
    # -------------------------------------------------------------------------

    async def get_source_stats(self, env: Environment) -> SourceStats:
        def count() -> int:
            table = self._table(env)
            with self._engine(env).connect() as conn:
                return conn.execute(select(func.count()).select_from(table)).scalar_one()

        total = await self._run(count, ReadError)
        version = self._engine(env).dialect.name
        return SourceStats(version=version, status="green", total=int(total))

    async def get_target_stats(self, env: Environment) -> TargetStats:
        def probe() -> str:
            with self._engine(env).connect() as conn:
                conn.execute(select(1))
            return self._engine(env).dialect.name

        version = await self._run(probe, WriteError)
        return TargetStats(version=version, status="green")

    async def get_meta(self, env: Environment) -> dict[str, Any]:
        def describe() -> dict[str, Any]:
            table = self._table(env)
            return {
                "table": table.name,
                "key": self._key(env),
                "columns": [
                    {"name": column.name, "type": str(column.type)}
                    for column in table.columns
                ],
            }

        return await self._run(describe, ReadError)

    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        def create() -> None:
            engine = self._engine(env)
            name = self._opts(env)["table"]
            if inspect(engine).has_table(name):
                logger.info(f"Table {name} already exists, keeping its schema")
                return
            key = self._key(env)
            columns = [
                Column(
                    col["name"],
                    _column_type(col.get("type", "")),
                    primary_key=col["name"] == key,
                )
                for col in meta.get("columns", [])
            ]
            if not any(c.name == key for c in columns):
                columns.insert(0, Column(key, Text, primary_key=True))
            Table(name, MetaData(), *columns).create(engine)
            logger.info(f"Created table {name} with {len(columns)} columns")

        await self._run(create, WriteError)

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        if offset is None:
            offset = self.context.cursor or 0
        if size is None:
            size = env.options.run.step

        def fetch() -> list[Record]:
            table = self._table(env)
            query = (
                select(table)
                .order_by(table.c[self._key(env)])
                .limit(size)
                .offset(offset)
            )
            with self._engine(env).connect() as conn:
                return [dict(row._mapping) for row in conn.execute(query)]

        records = await self._run(fetch, ReadError)
        self.context.cursor = offset + len(records)
        return records

    async def put_data(self, env: Environment, records: list[Record]) -> None:
        def store() -> None:
            table = self._table(env)
            key = self._key(env)
            keys = [r[key] for r in records if key in r]
            columns = set(table.columns.keys())
            rows = [{k: v for k, v in r.items() if k in columns} for r in records]
            with self._engine(env).begin() as conn:
                if keys:
                    conn.execute(delete(table).where(table.c[key].in_(keys)))
                conn.execute(table.insert(), rows)

        if records:
            await self._run(store, WriteError)
