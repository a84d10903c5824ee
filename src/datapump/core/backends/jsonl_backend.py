"""
JSON-lines file backend.

One record per line. Metadata lives in a ``<file>.meta.json`` sidecar.
As a source it serves ``[offset, offset + size)`` line slices using a
byte-offset index built once per worker; as a target it appends.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

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


def meta_path(path: Path) -> Path:
    return path.with_name(path.name + ".meta.json")


def _index_lines(path: Path) -> list[int]:
    """Byte offsets of every non-empty line in ``path``."""
    offsets: list[int] = []
    position = 0
    with open(path, "rb") as f:
        for line in f:
            if line.strip():
                offsets.append(position)
            position += len(line)
    return offsets


def _read_slice(path: Path, offsets: list[int], offset: int, size: int) -> list[Record]:
    selected = offsets[offset:offset + size]
    if not selected:
        return []
    records: list[Record] = []
    with open(path, "rb") as f:
        f.seek(selected[0])
        while len(records) < len(selected):
            line = f.readline()
            if not line:
                break
            if line.strip():
                records.append(json.loads(line))
    return records


def _append_lines(path: Path, records: list[Record]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = "".join(json.dumps(record, default=str) + "\n" for record in records)
    with open(path, "a", encoding="utf-8") as f:
        f.write(payload)


@register
class JsonLinesBackend(Backend):
    info = BackendInfo(
        id="jsonl",
        name="JSON Lines File Backend",
        version="1.0",
        description="Reads and writes one JSON record per line in a local file",
        threadsafe=False,
    )

    @classmethod
    def option_specs(cls) -> dict[str, dict[str, OptionSpec]]:
        return {
            "source": {
                "file": OptionSpec("The file from which records are read", required=True),
            },
            "target": {
                "file": OptionSpec("The file records are appended to", required=True),
                "overwrite": OptionSpec("Truncate the target file before the run", default=False),
            },
        }

    def _path(self, env: Environment) -> Path:
        opts = env.options.source if self.context.is_source else env.options.target
        return Path(opts["file"])

    def verify_options(self, options: TransferOptions) -> list[str]:
        errors: list[str] = []
        if options.drivers.source == self.info.id:
            file = options.source.get("file")
            if not file:
                errors.append("source.file is required for the jsonl backend")
            elif not Path(file).exists():
                errors.append(f"The source file {file} could not be found!")
        if options.drivers.target == self.info.id:
            file = options.target.get("file")
            if not file:
                errors.append("target.file is required for the jsonl backend")
            elif Path(file).exists() and not options.target.get("overwrite"):
                logger.warning(f"{file} already exists, duplicate entries might occur")
        return errors

    async def reset(self, env: Environment) -> None:
        await super().reset(env)
        if not self.context.is_source and env.options.target.get("overwrite"):
            path = self._path(env)
            if path.exists():
                await asyncio.to_thread(path.write_text, "", encoding="utf-8")

    async def _offsets(self, env: Environment) -> list[int]:
        offsets = self.context.state.get("offsets")
        if offsets is None:
            path = self._path(env)
            try:
                offsets = await asyncio.to_thread(_index_lines, path)
            except OSError as e:
                raise ReadError(f"Cannot read {path}: {e}", backend=self.info.id, cause=e) from e
            self.context.state["offsets"] = offsets
        return offsets

    async def get_source_stats(self, env: Environment) -> SourceStats:
        offsets = await self._offsets(env)
        return SourceStats(version="1.0", status="green", total=len(offsets))

    async def get_target_stats(self, env: Environment) -> TargetStats:
        return TargetStats(version="1.0", status="green")

    async def get_meta(self, env: Environment) -> dict[str, Any]:
        path = meta_path(self._path(env))
        if not path.exists():
            return {}
        try:
            return json.loads(await asyncio.to_thread(path.read_text, encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ReadError(f"Cannot read metadata {path}: {e}", backend=self.info.id, cause=e) from e

    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        path = meta_path(self._path(env))
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(path.write_text, json.dumps(meta, indent=2), encoding="utf-8")
        except OSError as e:
            raise WriteError(f"Cannot write metadata {path}: {e}", backend=self.info.id, cause=e) from e

    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        offsets = await self._offsets(env)
        if offset is None:
            offset = self.context.cursor or 0
        if size is None:
            size = env.options.run.step
        path = self._path(env)
        try:
            records = await asyncio.to_thread(_read_slice, path, offsets, offset, size)
        except (OSError, json.JSONDecodeError) as e:
            raise ReadError(f"Cannot read {path}: {e}", backend=self.info.id, cause=e) from e
        self.context.cursor = offset + len(records)
        return records

    async def put_data(self, env: Environment, records: list[Record]) -> None:
        path = self._path(env)
        try:
            await asyncio.to_thread(_append_lines, path, records)
        except OSError as e:
            raise WriteError(f"Cannot write {path}: {e}", backend=self.info.id, cause=e) from e
