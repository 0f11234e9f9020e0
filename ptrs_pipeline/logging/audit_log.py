from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .error_log import LOGS_DIR, TIMESTAMP_FMT

"""Audit trail for mutating pipeline calls.

Every mutating call records who performed it (actor) in which tenant and on
which run. Attribution only: nothing in the pipeline reads these events back
to make decisions.
"""

__all__ = [
    "AuditEvent",
    "AuditSink",
    "AuditLogBuffer",
]


@dataclass(frozen=True)
class AuditEvent:
    timestamp: str  # ISO8601 UTC, 'Z'
    tenant: str
    actor: str | None
    run: str | None
    action: str  # 例: run.create, stage.complete
    details: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(tenant: str, actor: str | None, run: str | None, action: str, **details: Any) -> AuditEvent:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return AuditEvent(timestamp=ts, tenant=tenant, actor=actor, run=run, action=action, details=details)

    def to_json_line(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class AuditLogBuffer:
    """Default sink: keeps events in memory and appends them as JSON Lines on flush."""

    def __init__(self, logs_dir: Path | str | None = None) -> None:
        self.logs_dir = Path(logs_dir) if logs_dir is not None else LOGS_DIR
        self._events: list[AuditEvent] = []
        self._pending = 0
        self._file_path: Path | None = None
        self._lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self.logs_dir / f"audit-{stamp}.log"
        return self._file_path

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._pending += 1

    def flush(self) -> Path | None:
        with self._lock:
            if not self._pending:
                return None
            pending = self._events[-self._pending:]
            self._pending = 0
            fp = self.file_path
            fp.parent.mkdir(parents=True, exist_ok=True)
            with fp.open("a", encoding="utf-8") as f:
                for e in pending:
                    f.write(e.to_json_line() + "\n")
        return fp
