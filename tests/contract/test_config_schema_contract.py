from __future__ import annotations

import json

import jsonschema
import pytest

from ptrs_pipeline.config.loader import COLUMN_MAP_SCHEMA, PIPELINE_SCHEMA


@pytest.mark.parametrize("path", [PIPELINE_SCHEMA, COLUMN_MAP_SCHEMA], ids=lambda p: p.name)
def test_shipped_schemas_are_valid(path):
    schema = json.loads(path.read_text(encoding="utf-8"))
    jsonschema.Draft202012Validator.check_schema(schema)


def test_pipeline_schema_top_level_keys():
    schema = json.loads(PIPELINE_SCHEMA.read_text(encoding="utf-8"))
    assert schema["additionalProperties"] is False
    assert set(schema["properties"]) == {"database", "staging", "validation", "logs_directory", "profiles"}


def test_column_map_schema_sections():
    schema = json.loads(COLUMN_MAP_SCHEMA.read_text(encoding="utf-8"))
    assert {"mappings", "passthrough", "fallbacks", "defaults", "joins", "custom_fields", "rules"} <= set(
        schema["properties"]
    )
