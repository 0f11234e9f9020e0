from __future__ import annotations

import json
import re
import threading

from ptrs_pipeline.logging.audit_log import AuditEvent, AuditLogBuffer
from ptrs_pipeline.logging.error_log import ErrorLogBuffer
from ptrs_pipeline.models.error_record import ErrorRecord


def test_flush_writes_json_lines(tmp_path):
    buf = ErrorLogBuffer(tmp_path)
    buf.append(ErrorRecord.create("r1", "d1", 2, "VALUE_PARSE_ERROR", "payment_amount: 'abc' is not money"))
    buf.append(ErrorRecord.create("r1", "d1", -1, "DATASET_PARSE_FAILED", "no header row"))
    assert len(buf) == 2

    path = buf.flush()
    assert path is not None
    assert re.fullmatch(r"errors-\d{8}-\d{6}\.log", path.name)
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["row"] for line in lines] == [2, -1]
    assert len(buf) == 0


def test_flush_empty_returns_none(tmp_path):
    assert ErrorLogBuffer(tmp_path).flush() is None
    assert list(tmp_path.iterdir()) == []


def test_second_flush_appends_to_same_file(tmp_path):
    buf = ErrorLogBuffer(tmp_path / "nested")
    buf.append(ErrorRecord.create("r1", "", -1, "STEP_FAILED", "boom"))
    first = buf.flush()
    buf.extend([ErrorRecord.create("r1", "", -1, "STEP_FAILED", "again")])
    second = buf.flush()
    assert first == second
    assert len(first.read_text(encoding="utf-8").splitlines()) == 2


def test_concurrent_append(tmp_path):
    buf = ErrorLogBuffer(tmp_path)

    def worker(n):
        for i in range(50):
            buf.append(ErrorRecord.create(f"r{n}", "d", i, "X", "m"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(buf) == 200


def test_unicode_messages_are_kept(tmp_path):
    buf = ErrorLogBuffer(tmp_path)
    buf.append(ErrorRecord.create("r1", "d1", 1, "VALUE_PARSE_ERROR", "支払日が不正"))
    path = buf.flush()
    assert "支払日が不正" in path.read_text(encoding="utf-8")


def test_audit_event_and_buffer(tmp_path):
    audit = AuditLogBuffer(tmp_path)
    audit.record(AuditEvent.create("t1", "alice", "r1", "stage.complete", rows=3))
    assert audit.events[0].details == {"rows": 3}
    assert audit.events[0].timestamp.endswith("Z")

    path = audit.flush()
    assert path.name.startswith("audit-")
    doc = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
    assert doc["tenant"] == "t1"
    assert doc["actor"] == "alice"
    assert doc["action"] == "stage.complete"

    # 既に書いたイベントは再出力しない
    assert audit.flush() is None
    audit.record(AuditEvent.create("t1", None, "r1", "validate"))
    audit.flush()
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2
    assert len(audit.events) == 2
