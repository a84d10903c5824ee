"""
Pytest configuration and shared fixtures for datapump tests.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from datapump.core.backends import registry
from datapump.core.backends.base import (
    Backend,
    BackendInfo,
    ReadError,
    Record,
    SourceStats,
    TargetStats,
    WriteError,
)
from datapump.core.config.models import Environment, MemoryConfig, TransferOptions
from datapump.core.engine.memory import MemoryGate


class ScriptedBackend(Backend):
    """In-memory backend whose failures are scripted per test.

    State lives on the class because the worker creates its own instances.
    """

    info = BackendInfo(id="scripted", name="Scripted", version="1.0", threadsafe=True)

    records: list[Record] = []
    written: list[Record] = []
    read_failures = 0
    write_failures = 0
    read_calls = 0
    write_calls = 0
    ended: list[str] = []
    prepared: list[str] = []

    @classmethod
    def configure(cls, records: list[Record], read_failures: int = 0, write_failures: int = 0) -> None:
        cls.records = list(records)
        cls.written = []
        cls.read_failures = read_failures
        cls.write_failures = write_failures
        cls.read_calls = 0
        cls.write_calls = 0
        cls.ended = []
        cls.prepared = []

    async def get_source_stats(self, env: Environment) -> SourceStats:
        return SourceStats(version="1.0", status="green", total=len(type(self).records))

    async def get_target_stats(self, env: Environment) -> TargetStats:
        return TargetStats(version="1.0", status="green")

    async def get_meta(self, env: Environment) -> dict[str, Any]:
        return {"fields": ["id"]}

    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        type(self).meta = meta

    async def get_data(self, env: Environment, offset: int | None = None, size: int | None = None) -> list[Record]:
        cls = type(self)
        cls.read_calls += 1
        if cls.read_failures > 0:
            cls.read_failures -= 1
            raise ReadError("scripted read failure", backend=self.info.id)
        offset = offset or 0
        size = size or env.options.run.step
        return cls.records[offset : offset + size]

    async def put_data(self, env: Environment, records: list[Record]) -> None:
        cls = type(self)
        cls.write_calls += 1
        if cls.write_failures > 0:
            cls.write_failures -= 1
            raise WriteError("scripted write failure", backend=self.info.id)
        cls.written.extend(records)

    async def prepare_transfer(self, env: Environment, is_source: bool) -> None:
        type(self).prepared.append(self.context.role)

    async def end(self, env: Environment) -> None:
        type(self).ended.append(self.context.role)


@pytest.fixture
def scripted_backend():
    """Register the scripted backend for the duration of a test."""
    ScriptedBackend.configure([])
    registry.register(ScriptedBackend)
    yield ScriptedBackend
    registry.unregister(ScriptedBackend.info.id)


def quiet_gate(config: MemoryConfig) -> MemoryGate:
    """Memory gate that always reports plenty of headroom."""
    return MemoryGate(probe=lambda: (10, 100), base_interval=config.base_interval, reclaim=None)


@pytest.fixture
def gate_factory():
    return quiet_gate


@pytest.fixture
def scripted_env() -> Environment:
    options = TransferOptions.model_validate(
        {
            "drivers": {"source": "scripted", "target": "scripted"},
            "run": {"step": 5, "concurrency": 1},
            "errors": {"retry": 3},
        }
    )
    return Environment(options=options)


@pytest.fixture
def jsonl_source(tmp_path: Path) -> Path:
    """A JSON-lines file with 25 records."""
    path = tmp_path / "source.jsonl"
    with open(path, "w", encoding="utf-8") as f:
        for i in range(25):
            f.write(json.dumps({"id": i, "name": f"record-{i}"}) + "\n")
    return path
