"""
Per-record transform loading.

A transform file is a plain Python module defining exactly one public
``transform(record) -> record`` function. It is imported in isolation,
outside ``sys.modules``, so it cannot shadow anything else.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
from pathlib import Path
from typing import Callable

from datapump.core.backends.base import Record
from datapump.core.errors import TransformError

logger = logging.getLogger(__name__)

TRANSFORM_NAME = "transform"

Transform = Callable[[Record], Record]


def load_transform(path: str | Path) -> Transform:
    """Import a transform file and return its ``transform`` callable.

    Args:
        path: Path to a Python file

    Returns:
        The transform function

    Raises:
        TransformError: If the file is missing, fails to import, or does not
            define exactly one public function named ``transform``
    """
    file = Path(path).expanduser()
    if not file.is_file():
        raise TransformError(f"Transform file not found: {file}")

    spec = importlib.util.spec_from_file_location(f"datapump_transform_{file.stem}", file)
    if spec is None or spec.loader is None:
        raise TransformError(f"Cannot import transform file {file}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise TransformError(f"Transform file {file} failed to load: {e}") from e

    functions = [
        name
        for name, obj in inspect.getmembers(module, inspect.isfunction)
        if obj.__module__ == module.__name__ and not name.startswith("_")
    ]
    if functions != [TRANSFORM_NAME]:
        found = ", ".join(functions) or "none"
        raise TransformError(
            f"Transform file {file} must define a single public function "
            f"'{TRANSFORM_NAME}' (found: {found})"
        )

    logger.debug(f"Loaded transform from {file}")
    return getattr(module, TRANSFORM_NAME)


def apply_transform(transform: Transform | None, records: list[Record]) -> list[Record]:
    """Run ``transform`` over a page of records.

    Raises:
        TransformError: If the transform raises or returns a non-dict
    """
    if transform is None:
        return records

    result = []
    for record in records:
        try:
            transformed = transform(record)
        except Exception as e:
            raise TransformError(f"Transform raised on record: {e}") from e
        if not isinstance(transformed, dict):
            raise TransformError(
                f"Transform must return a dict, got {type(transformed).__name__}"
            )
        result.append(transformed)
    return result
