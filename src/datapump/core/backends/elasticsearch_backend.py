"""
Elasticsearch backend using httpx.

Provides:
- ``elasticsearch``: sequential scroll paging through the context cursor,
  for a single worker
- ``elasticsearch-query``: sorted paging by work unit (``from``/``size``,
  then ``search_after`` past the result window), safe for several workers
- Bulk writes with ``index`` (overwrite) or ``create`` actions
- Mapping and settings copy
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from .base import (
    Backend,
    BackendError,
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

DEFAULT_PORT = 9200
SCROLL_KEEPALIVE = "5m"
DEFAULT_MAX_WINDOW = 10_000

# Index settings that are assigned by the cluster and cannot be copied
READ_ONLY_SETTINGS = {"uuid", "version", "creation_date", "provided_name"}


@register
class ElasticsearchBackend(Backend):
    info = BackendInfo(
        id="elasticsearch",
        name="Elasticsearch Backend",
        version="1.0",
        description="Reads through the scroll API and writes through the bulk API",
        threadsafe=False,
    )

    @classmethod
    def option_specs(cls) -> dict[str, dict[str, OptionSpec]]:
        common = {
            "host": OptionSpec("Hostname of the cluster", default="localhost"),
            "port": OptionSpec("HTTP port of the cluster", default=DEFAULT_PORT),
            "index": OptionSpec("Index to read from / write to", required=True),
            "auth": OptionSpec("Credentials as <username:password>"),
            "use_ssl": OptionSpec("Connect with https", default=False),
            "insecure": OptionSpec("Skip certificate verification", default=False),
        }
        source = dict(common)
        source["query"] = OptionSpec("Query limiting which documents are exported", default={"match_all": {}})
        target = dict(common)
        target["overwrite"] = OptionSpec("Overwrite documents that already exist", default=True)
        return {"source": source, "target": target}

    def _opts(self, env: Environment) -> dict[str, Any]:
        return env.options.source if self.context.is_source else env.options.target

    def _base_url(self, env: Environment) -> str:
        opts = self._opts(env)
        scheme = "https" if opts.get("use_ssl") else "http"
        return f"{scheme}://{opts.get('host', 'localhost')}:{opts.get('port', DEFAULT_PORT)}"

    def verify_options(self, options: TransferOptions) -> list[str]:
        errors: list[str] = []
        for role in ("source", "target"):
            if getattr(options.drivers, role) != self.info.id:
                continue
            opts = getattr(options, role)
            if not opts.get("index"):
                errors.append(f"{role}.index is required for the elasticsearch backend")
            auth = opts.get("auth")
            if auth and ":" not in str(auth):
                errors.append(f"{role}.auth must look like <username:password>")
        return errors

    # -------------------------------------------------------------------------
    # HTTP client
    # -------------------------------------------------------------------------

    def _ensure_client(self, env: Environment) -> httpx.AsyncClient:
        """Get or create this worker's HTTP client."""
        client = self.context.client
        if client is None or client.is_closed:
            opts = self._opts(env)
            auth = None
            if opts.get("auth"):
                user, _, password = str(opts["auth"]).partition(":")
                auth = httpx.BasicAuth(user, password)
            client = httpx.AsyncClient(
                base_url=self._base_url(env),
                auth=auth,
                verify=not opts.get("insecure", False),
                timeout=httpx.Timeout(60.0),
                limits=httpx.Limits(max_connections=env.options.network.sockets),
                headers={"Content-Type": "application/json"},
            )
            self.context.client = client
        return client

    async def _request(
        self,
        env: Environment,
        method: str,
        path: str,
        error_cls: type[BackendError],
        *,
        allow: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        client = self._ensure_client(env)
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"{method} {path} failed: {e}", backend=self.info.id, cause=e) from e
        if response.status_code >= 400 and response.status_code not in allow:
            raise error_cls(
                f"{method} {path} returned {response.status_code}: {response.text[:500]}",
                backend=self.info.id,
            )
        return response

    async def _cluster_info(self, env: Environment, error_cls: type[BackendError]) -> tuple[str, str]:
        root = await self._request(env, "GET", "/", error_cls)
        health = await self._request(env, "GET", "/_cluster/health", error_cls)
        version = root.json().get("version", {}).get("number", "0.0")
        return version, health.json().get("status", "red")

    async def end(self, env: Environment) -> None:
        client = self.context.client
        if client is None:
            return
        if self.context.is_source and self.context.cursor:
            try:
                await client.request("DELETE", "/_search/scroll", json={"scroll_id": self.context.cursor})
            except httpx.HTTPError as e:
                logger.warning(f"Could not clear scroll context: {e}")
            self.context.cursor = None
        await client.aclose()
        self.context.client = None

    # -------------------------------------------------------------------------
    # Stats and metadata
    # -------------------------------------------------------------------------

    async def get_source_stats(self, env: Environment) -> SourceStats:
        version, status = await self._cluster_info(env, ReadError)
        opts = self._opts(env)
        query = opts.get("query") or {"match_all": {}}
        response = await self._request(
            env, "POST", f"/{opts['index']}/_count", ReadError, json={"query": query}
        )
        return SourceStats(version=version, status=status, total=int(response.json()["count"]))

    async def get_target_stats(self, env: Environment) -> TargetStats:
        version, status = await self._cluster_info(env, WriteError)
        return TargetStats(version=version, status=status)

    async def get_meta(self, env: Environment) -> dict[str, Any]:
        index = self._opts(env)["index"]
        mappings = (await self._request(env, "GET", f"/{index}/_mapping", ReadError)).json()
        settings = (await self._request(env, "GET", f"/{index}/_settings", ReadError)).json()

        # A single concrete index (aliases resolve to their first index)
        concrete = next(iter(mappings), index)
        index_settings = settings.get(concrete, {}).get("settings", {}).get("index", {})
        return {
            "mappings": mappings.get(concrete, {}).get("mappings", {}),
            "settings": {
                "index": {k: v for k, v in index_settings.items() if k not in READ_ONLY_SETTINGS}
            },
        }

    async def put_meta(self, env: Environment, meta: dict[str, Any]) -> None:
        index = self._opts(env)["index"]
        response = await self._request(env, "PUT", f"/{index}", WriteError, allow=(400,), json=meta)
        if response.status_code == 400:
            if "resource_already_exists" not in response.text:
                raise WriteError(f"Creating index {index} failed: {response.text[:500]}", backend=self.info.id)
            logger.info(f"Index {index} already exists, keeping its mapping")

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    @staticmethod
    def _hits(body: dict[str, Any]) -> list[dict[str, Any]]:
        return body.get("hits", {}).get("hits", [])

    @staticmethod
    def _to_records(hits: list[dict[str, Any]]) -> list[Record]:
        return [
            {"_id": hit["_id"], "_index": hit.get("_index"), "_source": hit.get("_source", {})}
            for hit in hits
        ]

    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        # Scroll contexts are sequential: offsets are ignored and each call
        # continues where the previous one stopped
        opts = self._opts(env)
        size = size or env.options.run.step
        query = opts.get("query") or {"match_all": {}}

        if self.context.cursor is None:
            response = await self._request(
                env,
                "POST",
                f"/{opts['index']}/_search",
                ReadError,
                params={"scroll": SCROLL_KEEPALIVE},
                json={"query": query, "size": size, "sort": ["_doc"]},
            )
        else:
            response = await self._request(
                env,
                "POST",
                "/_search/scroll",
                ReadError,
                json={"scroll": SCROLL_KEEPALIVE, "scroll_id": self.context.cursor},
            )
        body = response.json()
        self.context.cursor = body.get("_scroll_id")
        return self._to_records(self._hits(body))

    async def put_data(self, env: Environment, records: list[Record]) -> None:
        if not records:
            return
        opts = self._opts(env)
        action = "index" if opts.get("overwrite", True) else "create"
        lines = []
        for record in records:
            meta = {"_index": opts["index"]}
            if record.get("_id") is not None:
                meta["_id"] = record["_id"]
            lines.append(json.dumps({action: meta}))
            lines.append(json.dumps(record.get("_source", record), default=str))
        payload = "\n".join(lines) + "\n"

        response = await self._request(
            env,
            "POST",
            "/_bulk",
            WriteError,
            content=payload,
            headers={"Content-Type": "application/x-ndjson"},
        )
        body = response.json()
        if not body.get("errors"):
            return

        # A conflict on "create" means the document is already there
        failures = [
            item[action]
            for item in body.get("items", [])
            if item.get(action, {}).get("status", 200) >= 300
            and not (action == "create" and item[action]["status"] == 409)
        ]
        if failures:
            raise WriteError(
                f"Bulk request rejected {len(failures)} of {len(records)} documents: "
                f"{failures[0].get('error')}",
                backend=self.info.id,
            )


@register
class ElasticsearchQueryBackend(ElasticsearchBackend):
    """Reads explicit work units, so several workers can share one index.

    Units inside the result window are read with ``from``/``size``. Deeper
    units seek with ``search_after`` from the nearest position this worker
    has already seen, fetching only sort values while seeking.
    """

    info = BackendInfo(
        id="elasticsearch-query",
        name="Elasticsearch Query Backend",
        version="1.0",
        description="Reads sorted pages with from/size and search_after, writes through the bulk API",
        threadsafe=True,
    )

    @classmethod
    def option_specs(cls) -> dict[str, dict[str, OptionSpec]]:
        specs = super().option_specs()
        specs["source"]["sort_field"] = OptionSpec(
            "Unique field giving documents a stable order", default="_id"
        )
        specs["source"]["max_window"] = OptionSpec(
            "Result window of the source index (index.max_result_window)",
            default=DEFAULT_MAX_WINDOW,
        )
        return specs

    def _search_body(self, env: Environment, size: int) -> dict[str, Any]:
        opts = self._opts(env)
        return {
            "query": opts.get("query") or {"match_all": {}},
            "size": size,
            "sort": [{opts.get("sort_field", "_id"): {"order": "asc"}}],
        }

    async def _search(self, env: Environment, body: dict[str, Any]) -> list[dict[str, Any]]:
        index = self._opts(env)["index"]
        response = await self._request(env, "POST", f"/{index}/_search", ReadError, json=body)
        return self._hits(response.json())

    def _bookmark(self, position: int, hits: list[dict[str, Any]]) -> None:
        if hits and "sort" in hits[-1]:
            self.context.state.setdefault("bookmarks", {})[position] = hits[-1]["sort"]

    async def _seek(self, env: Environment, offset: int, window: int) -> tuple[int, Any]:
        """Advance to ``offset`` and return the reached position and its sort values."""
        bookmarks: dict[int, Any] = self.context.state.setdefault("bookmarks", {})
        position = max((p for p in bookmarks if p <= offset), default=0)
        after = bookmarks.get(position)

        while position < offset:
            step = min(window, offset - position)
            body = self._search_body(env, step)
            body["_source"] = False
            if after is not None:
                body["search_after"] = after
            hits = await self._search(env, body)
            position += len(hits)
            self._bookmark(position, hits)
            if len(hits) < step:
                break
            after = hits[-1]["sort"]
        return position, after

    async def get_data(
        self,
        env: Environment,
        offset: int | None = None,
        size: int | None = None,
    ) -> list[Record]:
        size = size or env.options.run.step
        offset = offset or 0
        window = int(self._opts(env).get("max_window", DEFAULT_MAX_WINDOW))

        if offset + size <= window:
            body = self._search_body(env, size)
            body["from"] = offset
        else:
            position, after = await self._seek(env, offset, window)
            if position < offset:
                # The source ends before this unit
                return []
            body = self._search_body(env, size)
            if after is not None:
                body["search_after"] = after

        hits = await self._search(env, body)
        self._bookmark(offset + len(hits), hits)
        return self._to_records(hits)
