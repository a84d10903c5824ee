"""NoOp backend: a target that discards everything."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .base import Backend, BackendInfo, ReadError, Record, SourceStats, TargetStats
from .registry import register

if TYPE_CHECKING:
    from datapump.core.config.models import Environment, TransferOptions

logger = logging.getLogger(__name__)

_NOT_A_SOURCE = "You're using the noop backend as source which makes no sense"


@register
class NoOpBackend(Backend):
    info = BackendInfo(
        id="noop",
        name="NoOp Backend",
        version="1.0",
        description="A backend that does absolutely nothing with the records it gets",
        threadsafe=True,
    )

    def verify_options(self, options: TransferOptions) -> list[str]:
        if options.drivers.source == self.info.id:
            return [_NOT_A_SOURCE]
        return []

    async def get_source_stats(self, env: Environment) -> SourceStats:
        raise ReadError(_NOT_A_SOURCE, backend=self.info.id)

    async def get_target_stats(self, env: Environment) -> TargetStats:
        return TargetStats(version="1.0", status="green")

    async def get_meta(self, env: Environment) -> dict[str, Any]:
        raise ReadError(_NOT_A_SOURCE, backend=self.info.id)

    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        logger.debug("Not writing any metadata anywhere (noop)")

    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        raise ReadError(_NOT_A_SOURCE, backend=self.info.id)

    async def put_data(self, env: Environment, records: list[Record]) -> None:
        self.context.state["discarded"] = self.context.state.get("discarded", 0) + len(records)
