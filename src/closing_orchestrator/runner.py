from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional, Union

from .audit import AuditSink
from .calendar_resolver import CalendarResolver, CalendarSource
from .catalogs import Catalog, select_catalog
from .config import AppConfig
from .ledger import ExecutionLedger
from .models import LedgerEntry, RunParameters
from .orchestrator import ProcessOrchestrator
from .poller import CompletionPoller
from .portal.driver import PortalDriver
from .portal.navigation import NavigationClient
from .portal.rows import RowResolver
from .portal.selectors import PortalSelectors
from .pre_scripts import PreScriptRunner
from .prerequisites import PrerequisitePolicy


logger = logging.getLogger(__name__)


def _audit_entry(audit: AuditSink):
    def listener(entry: LedgerEntry) -> None:
        audit.write(
            f"{entry.outcome.value.upper()} {entry.label()} [{entry.system or '-'}] "
            f"status={entry.last_status or '-'} minutes={entry.duration_minutes:.2f}"
            + (f" detail={entry.detail}" if entry.detail else "")
        )

    return listener


def prepare_catalog(
    cfg: AppConfig,
    params: RunParameters,
    *,
    calendar_source: CalendarSource,
    audit: AuditSink,
    catalog_dir: Union[str, Path, None] = None,
) -> Catalog:
    """
    Classify today and select the catalog for the run's selection. Needs no browser.

    Raises DataSourceError or ConfigurationError.
    """
    audit.write(
        f"Closing run started: environment={params.environment} db={params.database} "
        f"selection={','.join(params.processes)}"
    )

    classification = CalendarResolver(calendar_source, audit, database=params.database).resolve()
    catalog = select_catalog(cfg.catalogs, classification, base_dir=catalog_dir).restrict(params.processes)
    audit.write(f"Catalog {classification.value}: {len(catalog)} processes selected: {', '.join(catalog.names())}")
    return catalog


def build_pre_scripts(cfg: AppConfig, params: RunParameters, audit: Optional[AuditSink] = None) -> Optional[PreScriptRunner]:
    if not cfg.pre_scripts.scripts:
        return None
    return PreScriptRunner(
        cfg.database_url(params.database),
        cfg.pre_scripts.scripts,
        base_dir=cfg.pre_scripts.scripts_dir,
        audit=audit,
    )


def run_closing(
    cfg: AppConfig,
    params: RunParameters,
    *,
    driver: PortalDriver,
    audit: AuditSink,
    calendar_source: Optional[CalendarSource] = None,
    catalog: Optional[Catalog] = None,
    pre_scripts: Optional[PreScriptRunner] = None,
    stop_event: Optional[threading.Event] = None,
    ledger: Optional[ExecutionLedger] = None,
    selectors: Optional[PortalSelectors] = None,
    catalog_dir: Union[str, Path, None] = None,
) -> ExecutionLedger:
    """
    One closing run: classify today, select the catalog, drive it, summarize.

    Pass `catalog` when it was already prepared with `prepare_catalog`; otherwise `calendar_source` is
    queried first and DataSourceError / ConfigurationError propagate before the portal is touched.
    """
    if catalog is None:
        if calendar_source is None:
            raise ValueError("run_closing needs either a catalog or a calendar source")
        catalog = prepare_catalog(cfg, params, calendar_source=calendar_source, audit=audit, catalog_dir=catalog_dir)
    if pre_scripts is None:
        pre_scripts = build_pre_scripts(cfg, params, audit)

    ledger = ledger if ledger is not None else ExecutionLedger()
    ledger.subscribe(_audit_entry(audit))
    stop_event = stop_event or threading.Event()
    selectors = selectors or PortalSelectors()
    timing = cfg.timing

    navigation = NavigationClient(
        driver,
        base_url=cfg.environment_url(params.environment),
        listing_path=cfg.portal.listing_path,
        edit_path=cfg.portal.edit_path,
        max_attempts=timing.navigation_attempts,
        delay_ms=timing.navigation_delay_ms,
    )
    resolver = RowResolver(driver, selectors, wait_attempts=timing.row_wait_attempts, wait_ms=timing.row_wait_ms)
    poller = CompletionPoller(
        driver,
        resolver,
        navigation,
        selectors,
        poll_interval_ms=timing.poll_interval_ms,
        heartbeat_every=timing.heartbeat_every,
        recovery_attempts=timing.recovery_attempts,
        stop_event=stop_event,
    )
    prerequisites = PrerequisitePolicy(
        cfg.prerequisites,
        driver,
        resolver,
        navigation,
        selectors,
        control_timeout_ms=timing.confirm_timeout_ms,
    )
    orchestrator = ProcessOrchestrator(
        driver,
        navigation,
        resolver,
        poller,
        prerequisites=prerequisites,
        pre_scripts=pre_scripts,
        selectors=selectors,
        ledger=ledger,
        confirm_timeout_ms=timing.confirm_timeout_ms,
        stop_event=stop_event,
    )

    orchestrator.run(catalog)

    for line in ledger.summary_lines():
        logger.info("%s", line)
        audit.write(line)
    return ledger
