# Shared pytest fixtures
from __future__ import annotations

from pathlib import Path

import pytest

from ptrs_pipeline.config.loader import PipelineConfig
from ptrs_pipeline.db.store import InMemoryStore
from ptrs_pipeline.ids import SequentialIdGenerator
from ptrs_pipeline.logging.audit_log import AuditLogBuffer
from ptrs_pipeline.logging.error_log import ErrorLogBuffer
from ptrs_pipeline.logging.init import reset_logging
from ptrs_pipeline.services.pipeline import PipelineService
from ptrs_pipeline.tenancy import TenantContext
from sample_data import COLUMN_MAP, MAIN_CSV


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "config").mkdir()
    (tmp_path / "data").mkdir()
    (tmp_path / "logs").mkdir()
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def ctx() -> TenantContext:
    return TenantContext(tenant_id="t1", actor_id="alice")


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def audit(tmp_path: Path) -> AuditLogBuffer:
    return AuditLogBuffer(tmp_path / "logs")


@pytest.fixture()
def error_log(tmp_path: Path) -> ErrorLogBuffer:
    return ErrorLogBuffer(tmp_path / "logs")


@pytest.fixture()
def service(store: InMemoryStore, audit: AuditLogBuffer, error_log: ErrorLogBuffer, tmp_path: Path
            ) -> PipelineService:
    cfg = PipelineConfig(logs_directory=str(tmp_path / "logs"))
    return PipelineService(store, SequentialIdGenerator(prefix="id"), config=cfg, audit=audit,
                           error_log=error_log)


@pytest.fixture()
def staged_run(service: PipelineService, ctx: TenantContext) -> str:
    """Run with the sample main dataset registered, mapped and staged (rules applied)."""
    run = service.create_run(ctx)
    service.register_dataset(ctx, run.id, file_name="payments.csv", data=MAIN_CSV.encode("utf-8"))
    service.save_column_map(ctx, run.id, COLUMN_MAP)
    service.stage(ctx, run.id)
    return run.id
