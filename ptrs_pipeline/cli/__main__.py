from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from ptrs_pipeline.config.loader import DatabaseConfig, PipelineConfig, load_column_map, load_config
from ptrs_pipeline.datasets.reader import read_table
from ptrs_pipeline.db.postgres_store import PostgresStore
from ptrs_pipeline.db.store import InMemoryStore, Store
from ptrs_pipeline.errors import ConfigError, PipelineError
from ptrs_pipeline.ids import IdGenerator
from ptrs_pipeline.logging.audit_log import AuditLogBuffer
from ptrs_pipeline.logging.error_log import ErrorLogBuffer
from ptrs_pipeline.logging.init import log_summary, setup_logging
from ptrs_pipeline.models.validation import VerdictStatus
from ptrs_pipeline.services.pipeline import PipelineService
from ptrs_pipeline.services.summary import render_summary_line
from ptrs_pipeline.tenancy import TenantContext

"""Command line entry point.

    python -m ptrs_pipeline.cli inspect  data/payments.csv
    python -m ptrs_pipeline.cli preview  --data data/payments.csv --map config/column_map.yml
    python -m ptrs_pipeline.cli run      --data data/payments.csv --map config/column_map.yml \\
                                         [--aux vendor_master=data/vendors.csv] [--classification results.csv]
    python -m ptrs_pipeline.cli export-payees --data data/payments.csv --map config/column_map.yml

Each invocation creates one run. With a reachable PostgreSQL (``.env`` /
PG* variables / config ``database``) the run is persisted; otherwise, or with
``DISABLE_DB_CONNECT=1``, an in-memory store is used.

Exit codes: 0 verdict passed, 2 passed with warnings or blocked, 1 fatal error.
"""

EXIT_SUCCESS = 0
EXIT_PARTIAL = 2
EXIT_FATAL = 1

DEFAULT_CONFIG = Path("config/pipeline.yml")


def _dsn(db_cfg: DatabaseConfig) -> str:
    """Resolve the connection string.

    優先順位: DATABASE_URL / PGDSN → 設定の dsn → PG* 環境変数 (不足分は設定値)
    """
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


def _connect(cfg: PipelineConfig) -> Any | None:  # pragma: no cover (needs a server)
    """Open a psycopg2 connection with explicit transactions, or None when unreachable."""
    try:
        conn = psycopg2.connect(_dsn(cfg.database))
    except psycopg2.Error as e:
        logging.getLogger("ptrs_pipeline.cli").info(f"DB connection failed -> memory store: {e}")
        return None
    conn.autocommit = False  # BEGIN / COMMIT は PostgresStore が発行
    return conn


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load ``.env`` so its PostgreSQL settings take precedence."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="ptrs-pipeline", description="PTRS data pipeline")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG, help="Pipeline settings (YAML)")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--tenant", default=os.getenv("PTRS_TENANT_ID", "default"), help="Tenant id")
    p.add_argument("--actor", default=os.getenv("PTRS_ACTOR_ID") or os.getenv("USER"), help="Actor id")
    sub = p.add_subparsers(dest="command", required=True)

    inspect = sub.add_parser("inspect", help="Print headers and first rows of a data file")
    inspect.add_argument("path", type=Path)

    def _run_inputs(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--data", type=Path, required=True, help="Main payment dataset (CSV / XLSX)")
        sp.add_argument("--map", type=Path, help="Column map document (YAML / JSON)")
        sp.add_argument("--profile", help="Profile id from the settings file")
        sp.add_argument("--aux", action="append", default=[], metavar="ROLE=PATH", help="Auxiliary dataset")

    preview = sub.add_parser("preview", help="Resolve the column map against the dataset headers")
    _run_inputs(preview)

    run = sub.add_parser("run", help="Stage, apply rules, classify and validate")
    _run_inputs(run)
    run.add_argument("--classification", type=Path, help="Classification results file")
    run.add_argument("--verdict-out", type=Path, help="Write the verdict as JSON")

    export = sub.add_parser("export-payees", help="Stage and print the payee identifier CSV")
    _run_inputs(export)
    export.add_argument("--out", type=Path, help="Output file (default: stdout)")
    return p.parse_args(argv)


def _inspect(path: Path) -> int:
    table = read_table(path)
    print(f"FILE: {table.file_name} rows={len(table.rows)}")
    print(f"  columns={table.columns}")
    for row in table.rows[:3]:
        print("  ", {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in row.items()})
    return EXIT_SUCCESS


def _prepare_run(service: PipelineService, ctx: TenantContext, args: argparse.Namespace) -> str:
    """Create a run and register its datasets and column map."""
    run = service.create_run(ctx, profile_id=args.profile, meta={"source": str(args.data)})
    service.register_dataset(ctx, run.id, file_name=args.data.name, data=args.data.read_bytes())
    for spec in args.aux:
        role, sep, path = spec.partition("=")
        if not sep or not role or not path:
            raise ConfigError(f"--aux expects ROLE=PATH, got {spec!r}")
        aux_path = Path(path)
        service.register_dataset(ctx, run.id, role=role, file_name=aux_path.name, data=aux_path.read_bytes())
    if args.map is not None:
        service.save_column_map(ctx, run.id, load_column_map(args.map))
    return run.id


def _execute(store: Store, cfg: PipelineConfig, args: argparse.Namespace) -> int:
    logger = logging.getLogger("ptrs_pipeline.cli")
    audit = AuditLogBuffer(cfg.logs_directory)
    error_log = ErrorLogBuffer(cfg.logs_directory)
    service = PipelineService(store, IdGenerator(), config=cfg, audit=audit, error_log=error_log)
    ctx = TenantContext(tenant_id=args.tenant, actor_id=args.actor)
    try:
        run_id = _prepare_run(service, ctx, args)

        if args.command == "preview":
            print(json.dumps(service.preview_mapping(ctx, run_id).as_dict(), ensure_ascii=False, indent=2))
            return EXIT_SUCCESS

        if args.command == "export-payees":
            service.stage(ctx, run_id)
            text = service.export_payees(ctx, run_id)
            if args.out is not None:
                args.out.write_text(text, encoding="utf-8")
                logger.info(f"payee identifiers written to {args.out}")
            else:
                sys.stdout.write(text)
            return EXIT_SUCCESS

        service.stage(ctx, run_id, show_progress=True)
        if args.classification is not None:
            imported = service.import_classification(ctx, run_id, args.classification.read_bytes(),
                                                     file_name=args.classification.name)
            logger.info(f"classification batch {imported.batch.id}: {imported.batch.status.value}")
        result, verdict = service.run_all(ctx, run_id, reuse=True)
    finally:
        audit.flush()

    for issue in verdict.blockers[:20]:
        logger.warning(f"blocker {issue.code} row={issue.row_no}: {issue.message}")
    if args.verdict_out is not None:
        args.verdict_out.write_text(json.dumps(verdict.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    log_summary(render_summary_line(result)[len("SUMMARY "):])
    if verdict.status is VerdictStatus.PASSED:
        return EXIT_SUCCESS
    return EXIT_PARTIAL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()
    # None のときのみ sys.argv を読む (テストから main([...]) で呼ぶため)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        for h in logger.handlers:
            h.setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
        logger.debug("debug mode enabled")

    try:
        if args.command == "inspect":
            return _inspect(args.path)
        cfg = load_config(args.config) if args.config.exists() else PipelineConfig()
        if os.getenv("DISABLE_DB_CONNECT") == "1":
            logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> memory store")
            return _execute(InMemoryStore(), cfg, args)
        conn = _connect(cfg)
        if conn is None:
            return _execute(InMemoryStore(), cfg, args)
        try:
            with conn.cursor() as cur:
                store = PostgresStore(cur)
                store.ensure_schema()
                logger.info("mode=live")
                return _execute(store, cfg, args)
        finally:
            conn.close()
    except PipelineError as e:
        logger.error(f"{e.code}: {e.message}")
        return EXIT_FATAL
    except OSError as e:
        logger.error(f"io: {e}")
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
