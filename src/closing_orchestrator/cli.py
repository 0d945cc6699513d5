from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .audit import AuditSink
from .calendar_resolver import CalendarResolver, SqlCalendarSource
from .catalogs import catalog_path, select_catalog
from .config import AppConfig, load_config, resolve_run_parameters
from .errors import ConfigurationError, DataSourceError
from .logging_config import configure_logging
from .models import EnvironmentClassification
from .portal.playwright_driver import open_portal_session
from .runner import build_pre_scripts, prepare_catalog, run_closing
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("closing_orchestrator")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG = 2


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="closing_orchestrator")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run the closing: classify today, trigger each catalog process and wait for it")
    run.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    run.add_argument("--environment", default="", help="Environment name or portal URL (default: $AMBIENTE)")
    run.add_argument("--database", default="", help="Database identifier for the calendar query (default: $BASE_DATOS)")
    run.add_argument(
        "--processes",
        default="",
        help="Comma-separated process names and/or system codes, or ALL (default: $PROCESOS)",
    )
    run.add_argument("--run-id", default="", help="Identifier used to correlate log lines (default: $RUN_ID)")
    run.add_argument("--catalog-dir", default="", help="Directory that relative catalog paths are resolved against")
    headless = run.add_mutually_exclusive_group()
    headless.add_argument("--headless", action="store_true", help="Run the browser headless")
    headless.add_argument("--headful", action="store_true", help="Run the browser headful")

    classify = sub.add_parser("classify", help="Query the accounting calendar and print which catalog applies")
    classify.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    classify.add_argument("--database", default="", help="Database identifier (default: $BASE_DATOS)")

    show = sub.add_parser("show-catalog", help="Print a catalog variant in execution order")
    show.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    show.add_argument(
        "--variant",
        choices=[c.value for c in EnvironmentClassification],
        default=EnvironmentClassification.ORDINARY.value,
    )
    show.add_argument("--processes", default="ALL", help="Comma-separated selection (default: ALL)")
    show.add_argument("--catalog-dir", default="", help="Directory that relative catalog paths are resolved against")

    return p


def _calendar_source(cfg: AppConfig, database: str) -> SqlCalendarSource:
    return SqlCalendarSource(
        cfg.database_url(database),
        system_code=cfg.calendar.system_code,
        query=cfg.calendar.query,
    )


def _install_stop_handler(stop_event: threading.Event) -> None:
    def _handler(signum, frame) -> None:
        logger.warning("Received signal %s; finishing the current poll and stopping.", signum)
        stop_event.set()

    try:
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Not the main thread (embedded use); the caller owns the stop event.
        logger.debug("Could not install SIGTERM handler.", exc_info=True)


def _write_debug_bundle(cfg: AppConfig, debug_dir: str, run_id: str) -> None:
    try:
        bundle = create_debug_bundle(
            debug_dir=debug_dir,
            log_file=cfg.logging.file_path,
            audit_file=cfg.logging.audit_path,
            out_dir="data",
            run_id=run_id,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except OSError:
        logger.debug("Failed to create debug bundle.", exc_info=True)


def _run(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        params = resolve_run_parameters(
            cfg,
            environment=args.environment or None,
            database=args.database or None,
            processes=args.processes or None,
            run_id=args.run_id or None,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, run_id=params.run_id)
    audit = AuditSink(cfg.logging.audit_path, run_id=params.run_id)

    portal_cfg = cfg.portal
    if args.headless or args.headful:
        portal_cfg = portal_cfg.model_copy(update={"headless": bool(args.headless)})

    stop_event = threading.Event()
    _install_stop_handler(stop_event)

    logger.info(
        "Starting closing run (environment=%s db=%s selection=%s)",
        params.environment,
        params.database,
        ",".join(params.processes),
    )
    t0 = time.time()
    try:
        # Calendar and catalog are settled before any browser is launched.
        catalog = prepare_catalog(
            cfg,
            params,
            calendar_source=_calendar_source(cfg, params.database),
            audit=audit,
            catalog_dir=args.catalog_dir or None,
        )
        pre_scripts = build_pre_scripts(cfg, params, audit)

        with open_portal_session(portal_cfg) as driver:
            try:
                ledger = run_closing(
                    cfg,
                    params,
                    driver=driver,
                    catalog=catalog,
                    pre_scripts=pre_scripts,
                    audit=audit,
                    stop_event=stop_event,
                )
            except Exception:
                driver.save_debug("run_failed")
                raise
    except ConfigurationError as e:
        audit.fatal(f"Configuration error: {e}")
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except Exception as e:
        if not isinstance(e, DataSourceError):
            audit.fatal(f"Run aborted: {e}")
        logger.error("Run failed (seconds=%.2f): %s", time.time() - t0, e)
        _write_debug_bundle(cfg, portal_cfg.debug_dir, params.run_id)
        return EXIT_RUN_FAILED

    logger.info("Run finished (all_completed=%s seconds=%.2f)", ledger.all_completed, time.time() - t0)
    return EXIT_OK if ledger.all_completed else EXIT_RUN_FAILED


def _classify(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        database = (args.database or os.getenv("BASE_DATOS", "")).strip()
        if not database:
            raise ConfigurationError("Missing required run parameters: database")
        source = _calendar_source(cfg, database)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    audit = AuditSink(cfg.logging.audit_path)
    try:
        classification = CalendarResolver(source, audit, database=database).resolve()
    except DataSourceError as e:
        logger.error("%s", e)
        return EXIT_RUN_FAILED

    print(f"{classification.value}\t{catalog_path(cfg.catalogs, classification)}")
    return EXIT_OK


def _show_catalog(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        catalog = select_catalog(
            cfg.catalogs,
            EnvironmentClassification(args.variant),
            base_dir=args.catalog_dir or None,
        ).restrict([s for s in args.processes.split(",") if s.strip()])
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    for n, proc in enumerate(catalog, start=1):
        refs = proc.locator_refs
        print(f"{n:3d}. [{proc.system or '-'}] {proc.name}" + (f"  ({len(refs)} executions)" if len(refs) > 1 else ""))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "run":
        return _run(args)
    if args.cmd == "classify":
        return _classify(args)
    if args.cmd == "show-catalog":
        return _show_catalog(args)

    raise AssertionError("Unhandled command")
