"""
Backend registry.

Keeps the id -> Backend class map, discovers plugin files and entry
points, and creates per-worker backend instances.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from importlib.metadata import entry_points
from pathlib import Path
from typing import TypeVar

from datapump.core.errors import ContractError, UnknownBackendError

from .base import Backend, BackendContext, BackendInfo

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "datapump.backends"
PLUGIN_SUFFIX = "_backend.py"

BUILTIN_MODULES = (
    "datapump.core.backends.noop_backend",
    "datapump.core.backends.jsonl_backend",
    "datapump.core.backends.sql_backend",
    "datapump.core.backends.elasticsearch_backend",
)

B = TypeVar("B", bound=type[Backend])

_backends: dict[str, type[Backend]] = {}
_loaded_files: set[Path] = set()
_builtins_loaded = False


def verify(backend_cls: type) -> None:
    """Check that a class implements the backend contract.

    Raises:
        ContractError: If it is not a concrete Backend subclass with info
    """
    if not (inspect.isclass(backend_cls) and issubclass(backend_cls, Backend)):
        raise ContractError(f"{backend_cls!r} does not subclass Backend")
    if inspect.isabstract(backend_cls):
        missing = ", ".join(sorted(backend_cls.__abstractmethods__))
        raise ContractError(f"{backend_cls.__name__} is missing required methods: {missing}")
    info = getattr(backend_cls, "info", None)
    if not isinstance(info, BackendInfo):
        raise ContractError(f"{backend_cls.__name__} does not declare a BackendInfo")
    if not info.id:
        raise ContractError(f"{backend_cls.__name__} declares a backend without id")


def register(backend_cls: B) -> B:
    """Add a backend class to the registry. Usable as a class decorator.

    Raises:
        ContractError: If the class is invalid or its id is already taken
    """
    verify(backend_cls)
    backend_id = backend_cls.info.id
    existing = _backends.get(backend_id)
    if existing is not None and existing is not backend_cls:
        raise ContractError(f"The same backend id is being added twice: {backend_id}")
    _backends[backend_id] = backend_cls
    logger.debug(f"Registered backend [{backend_id}] version {backend_cls.info.version}")
    return backend_cls


def unregister(backend_id: str) -> None:
    """Remove a backend from the registry (mainly for tests)."""
    _backends.pop(backend_id, None)


def _ensure_builtins() -> None:
    global _builtins_loaded
    if _builtins_loaded:
        return
    _builtins_loaded = True
    for module in BUILTIN_MODULES:
        importlib.import_module(module)


def get(backend_id: str) -> type[Backend]:
    """Return the backend class registered under ``backend_id``.

    Raises:
        UnknownBackendError: If no such backend exists
    """
    _ensure_builtins()
    try:
        return _backends[backend_id]
    except KeyError:
        known = ", ".join(sorted(_backends)) or "none"
        raise UnknownBackendError(
            f"Tried to load backend [{backend_id}] that doesn't exist (known: {known})"
        ) from None


def create(backend_id: str, context: BackendContext | None = None) -> Backend:
    """Create a fresh backend instance bound to its own context."""
    return get(backend_id)(context)


def available() -> dict[str, type[Backend]]:
    """All registered backends by id."""
    _ensure_builtins()
    return dict(_backends)


# =============================================================================
# Discovery
# =============================================================================


def _load_plugin_file(path: Path) -> None:
    module_name = f"datapump_plugin_{path.stem}_{abs(hash(path)) & 0xFFFFFF:x}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ContractError(f"Cannot import backend plugin {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)

    for _, obj in inspect.getmembers(module, inspect.isclass):
        if obj.__module__ == module_name and issubclass(obj, Backend) and not inspect.isabstract(obj):
            register(obj)


def discover(dirs: list[str | Path] | None = None, use_entry_points: bool = True) -> None:
    """Load built-ins, ``*_backend.py`` files in ``dirs`` and entry points.

    Relative directories are resolved against the current directory.

    Raises:
        ContractError: If a plugin violates the contract
    """
    _ensure_builtins()

    for raw in dirs or []:
        directory = Path(raw).expanduser().resolve()
        if not directory.is_dir():
            logger.debug(f"Backend directory {directory} does not exist, skipping")
            continue
        for path in sorted(directory.glob(f"*{PLUGIN_SUFFIX}")):
            if path in _loaded_files:
                continue
            _loaded_files.add(path)
            _load_plugin_file(path)

    if use_entry_points:
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            register(ep.load())


def describe(detailed: bool = False) -> list[dict[str, str]]:
    """Rows describing registered backends, sorted by id."""
    rows = []
    for backend_id in sorted(available()):
        info = _backends[backend_id].info
        row = {"id": info.id, "name": info.name}
        if detailed:
            row.update(
                version=info.version,
                description=info.description,
                threadsafe="yes" if info.threadsafe else "no",
            )
        rows.append(row)
    return rows
