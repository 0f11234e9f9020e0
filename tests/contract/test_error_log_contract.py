from __future__ import annotations

import json

import jsonschema
import pytest

from ptrs_pipeline.models.error_record import ErrorRecord
from sample_data import COLUMN_MAP, MAIN_CSV

"""Error log line contract: one JSON object per line with a fixed key set."""

ERROR_LOG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["timestamp", "run", "dataset", "row", "error_type", "message"],
    "properties": {
        "timestamp": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$"},
        "run": {"type": "string"},
        "dataset": {"type": "string"},
        "row": {"type": "integer", "minimum": -1},
        "error_type": {"type": "string", "pattern": "^[A-Z][A-Z0-9_]*$"},
        "message": {"type": "string"},
    },
}


def test_error_record_matches_schema():
    line = ErrorRecord.create("r1", "d1", 4, "VALUE_PARSE_ERROR", "payment_amount: not money").to_json_line()
    jsonschema.validate(json.loads(line), ERROR_LOG_SCHEMA)


def test_schema_rejects_extra_key():
    doc = json.loads(ErrorRecord.create("r1", "", -1, "STEP_FAILED", "x").to_json_line())
    doc["sheet"] = "Orders"
    with pytest.raises(jsonschema.exceptions.ValidationError):
        jsonschema.validate(doc, ERROR_LOG_SCHEMA)


def test_staging_errors_are_logged_per_row(service, ctx, tmp_path):
    bad = MAIN_CSV.replace("$950.50", "n/a amount")
    run = service.create_run(ctx)
    ds = service.register_dataset(ctx, run.id, file_name="payments.csv", data=bad.encode("utf-8"))
    service.save_column_map(ctx, run.id, COLUMN_MAP)
    service.stage(ctx, run.id)

    files = list((tmp_path / "logs").glob("errors-*.log"))
    assert len(files) == 1
    records = [json.loads(line) for line in files[0].read_text(encoding="utf-8").splitlines()]
    for rec in records:
        jsonschema.validate(rec, ERROR_LOG_SCHEMA)
    assert [(r["row"], r["error_type"], r["dataset"]) for r in records] == [(2, "VALUE_PARSE_ERROR", ds.id)]
    assert records[0]["message"].startswith("payment_amount:")
