"""
End-to-end tests for the spawned worker process pool over SQLite.
"""

import asyncio
from pathlib import Path

import pytest
from sqlalchemy import Column, Integer, MetaData, Table, Text, create_engine, func, insert, select

from datapump.core.config.models import Environment, TransferOptions
from datapump.core.engine.channels import PipeChannel
from datapump.core.engine.coordinator import start_pool
from datapump.core.orchestrator import Exporter

ROWS = 53


@pytest.fixture
def source_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'source.db'}"
    engine = create_engine(url)
    table = Table(
        "items",
        MetaData(),
        Column("id", Integer, primary_key=True),
        Column("label", Text),
    )
    table.create(engine)
    with engine.begin() as conn:
        conn.execute(insert(table), [{"id": i, "label": f"item-{i}"} for i in range(1, ROWS + 1)])
    engine.dispose()
    return url


def count_rows(url: str, table_name: str) -> int:
    engine = create_engine(url)
    table = Table(table_name, MetaData(), autoload_with=engine)
    with engine.connect() as conn:
        count = conn.execute(select(func.count()).select_from(table)).scalar_one()
    engine.dispose()
    return count


class TestWorkerProcesses:
    async def test_pool_processes_units_and_exits(self, source_url: str):
        options = TransferOptions.model_validate(
            {
                "drivers": {"source": "sql", "target": "noop"},
                "source": {"url": source_url, "table": "items"},
            }
        )
        env = Environment(options=options)
        env.statistics.hits.total = ROWS

        coordinator = await start_pool(env, 2)
        channels = [handle.channel for handle in coordinator.handles]
        assert all(isinstance(channel, PipeChannel) for channel in channels)

        used = set()
        for offset in range(0, ROWS, 10):
            await coordinator.dispatch(offset, 10, used.add)
        stats = await asyncio.wait_for(coordinator.wait_closed(), 60)
        await coordinator.shutdown()

        assert stats.processed == ROWS
        assert coordinator.completed
        assert used == {0, 1}
        for channel in channels:
            assert not channel.process.is_alive()
            assert channel.process.exitcode == 0


class TestParallelTransfer:
    async def test_sql_copy_with_three_workers(self, source_url: str, tmp_path: Path):
        target_url = f"sqlite:///{tmp_path / 'target.db'}"
        options = TransferOptions.model_validate(
            {
                "drivers": {"source": "sql", "target": "sql"},
                "run": {"step": 7, "concurrency": 3},
                "source": {"url": source_url, "table": "items"},
                "target": {"url": target_url, "table": "items_copy"},
            }
        )

        summary = await asyncio.wait_for(Exporter(options).run(), 120)

        assert summary.concurrency == 3
        assert summary.processed == ROWS
        assert summary.failed_units == 0
        assert count_rows(target_url, "items_copy") == ROWS
