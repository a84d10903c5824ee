"""
Tests for datapump.core.engine.transform.
"""

from pathlib import Path

import pytest

from datapump.core.engine.transform import apply_transform, load_transform
from datapump.core.errors import ExitCode, TransformError


def write(tmp_path: Path, source: str) -> Path:
    path = tmp_path / "xform.py"
    path.write_text(source, encoding="utf-8")
    return path


class TestLoadTransform:
    def test_loads_transform_function(self, tmp_path):
        path = write(tmp_path, "def transform(record):\n    return {'wrapped': record}\n")

        fn = load_transform(path)

        assert fn({"a": 1}) == {"wrapped": {"a": 1}}

    def test_private_helpers_allowed(self, tmp_path):
        path = write(
            tmp_path,
            "def _clean(v):\n    return v.strip()\n\n"
            "def transform(record):\n    return {'name': _clean(record['name'])}\n",
        )

        assert load_transform(path)({"name": " x "}) == {"name": "x"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(TransformError) as exc_info:
            load_transform(tmp_path / "nope.py")

        assert exc_info.value.exit_code == ExitCode.TRANSFORM_FAILED

    def test_requires_transform_function(self, tmp_path):
        path = write(tmp_path, "def convert(record):\n    return record\n")

        with pytest.raises(TransformError, match="found: convert"):
            load_transform(path)

    def test_rejects_extra_public_functions(self, tmp_path):
        path = write(
            tmp_path,
            "def transform(record):\n    return record\n\ndef other(record):\n    return record\n",
        )

        with pytest.raises(TransformError):
            load_transform(path)

    def test_import_error_wrapped(self, tmp_path):
        path = write(tmp_path, "import not_a_real_module_xyz\n\ndef transform(r):\n    return r\n")

        with pytest.raises(TransformError, match="failed to load"):
            load_transform(path)


class TestApplyTransform:
    def test_none_passes_records_through(self):
        records = [{"id": 1}]
        assert apply_transform(None, records) is records

    def test_applies_to_every_record(self):
        result = apply_transform(lambda r: {**r, "x": r["id"] * 2}, [{"id": 1}, {"id": 2}])
        assert result == [{"id": 1, "x": 2}, {"id": 2, "x": 4}]

    def test_raising_transform(self):
        def boom(record):
            raise ValueError("bad record")

        with pytest.raises(TransformError, match="bad record"):
            apply_transform(boom, [{"id": 1}])

    def test_non_dict_result(self):
        with pytest.raises(TransformError, match="must return a dict"):
            apply_transform(lambda r: None, [{"id": 1}])
