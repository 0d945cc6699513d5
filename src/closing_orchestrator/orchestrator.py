from __future__ import annotations

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .catalogs import Catalog
from .errors import NavigationError, RowNotFoundError
from .ledger import ExecutionLedger
from .models import LedgerEntry, ProcessDefinition, TerminalOutcome
from .poller import CompletionPoller, PollResult
from .portal.driver import PortalDriver
from .portal.navigation import NavigationClient
from .portal.rows import RowHandle, RowResolver
from .portal.selectors import PortalSelectors
from .pre_scripts import PreScriptRunner
from .prerequisites import PrerequisitePolicy
from .util.text import normalize_text


logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    PENDING = "Pending"
    TRIGGERED = "Triggered"
    POLLING = "Polling"
    COMPLETED = "Completed"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


_FINAL_STATE = {
    TerminalOutcome.COMPLETED: ProcessState.COMPLETED,
    TerminalOutcome.FAILED: ProcessState.FAILED,
    TerminalOutcome.UNKNOWN: ProcessState.UNKNOWN,
}


class ProcessOrchestrator:
    """
    Drive every process of a catalog, strictly one at a time, in catalog order.

    A Failed or Unknown process does not stop the run; the ledger records it and the next process starts.
    Only rows in a trigger status (PENDIENTE, ERROR) are clicked: a COMPLETADO row is recorded as Completed
    without a click, and a row in any other status is already running and is only polled.
    """

    def __init__(
        self,
        driver: PortalDriver,
        navigation: NavigationClient,
        resolver: RowResolver,
        poller: CompletionPoller,
        *,
        prerequisites: Optional[PrerequisitePolicy] = None,
        pre_scripts: Optional[PreScriptRunner] = None,
        selectors: Optional[PortalSelectors] = None,
        ledger: Optional[ExecutionLedger] = None,
        confirm_timeout_ms: int = 20_000,
        stop_event: Optional[threading.Event] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.driver = driver
        self.navigation = navigation
        self.resolver = resolver
        self.poller = poller
        self.prerequisites = prerequisites
        self.pre_scripts = pre_scripts
        self.selectors = selectors or PortalSelectors()
        self.ledger = ledger if ledger is not None else ExecutionLedger()
        self.confirm_timeout_ms = confirm_timeout_ms
        self.stop_event = stop_event or threading.Event()
        self.now = now

    def run(self, catalog: Catalog) -> ExecutionLedger:
        processes = list(catalog)
        logger.info("Closing run: %d processes, %d executions", len(processes), catalog.instance_count())

        for index, proc in enumerate(processes):
            if self.stop_event.is_set():
                skipped = [p.name for p in processes[index:]]
                logger.warning("Stop requested; not triggering %d remaining process(es): %s", len(skipped), ", ".join(skipped))
                break
            self._run_process(proc)

        return self.ledger

    def _run_process(self, proc: ProcessDefinition) -> None:
        slots = len(proc.locator_refs)
        logger.info("Process %r [%s]: %d execution(s)", proc.name, proc.system or "-", slots)

        prerequisite_failure: Optional[PollResult] = None
        if self.prerequisites is not None and self.prerequisites.rules_for(proc.name):
            try:
                self.navigation.to_listing()
                self.prerequisites.apply(proc.name)
            except (NavigationError, RowNotFoundError) as e:
                detail = f"prerequisite check failed: {e}"
                logger.error("%s: %s", proc.name, detail)
                prerequisite_failure = PollResult(TerminalOutcome.UNKNOWN, "", detail)
            except Exception as e:
                logger.exception("%s: prerequisite handling failed", proc.name)
                prerequisite_failure = PollResult(TerminalOutcome.FAILED, "", f"prerequisite handling failed: {e}")

        for slot, ref in enumerate(proc.locator_refs, start=1):
            if self.stop_event.is_set():
                logger.warning("Stop requested; not triggering %r slot %d/%d", proc.name, slot, slots)
                return
            if prerequisite_failure is not None:
                self._record(proc, ref, slot, self.now(), prerequisite_failure)
                continue
            self._execute(proc, ref, slot)

    def _execute(self, proc: ProcessDefinition, ref: str, slot: int) -> LedgerEntry:
        label = proc.name if len(proc.locator_refs) == 1 else f"{proc.name} (slot {slot}/{len(proc.locator_refs)})"
        started = self.now()
        state = ProcessState.PENDING

        def advance(new_state: ProcessState) -> None:
            nonlocal state
            logger.debug("%s: %s -> %s", label, state.value, new_state.value)
            state = new_state

        s = self.selectors
        try:
            self.navigation.to_listing()
            row = self.resolver.find_row(proc.name, prefer_statuses=s.trigger_statuses)
            status = normalize_text(row.snapshot.status_text)

            if status == normalize_text(s.completed_status):
                logger.info("%s: already completed (date=%s); not triggering", label, row.snapshot.date_text or "-")
                result = PollResult(TerminalOutcome.COMPLETED, status, "already completed")
            elif status in {normalize_text(t) for t in s.trigger_statuses}:
                logger.info(
                    "%s: row found (status=%s, date=%s); triggering",
                    label,
                    row.snapshot.status_text or "-",
                    row.snapshot.date_text or "-",
                )
                if self.pre_scripts is not None:
                    self.pre_scripts.run_for(proc.name)
                self._trigger(row, ref, label)
                advance(ProcessState.TRIGGERED)

                self._confirm_manual_execution(label)
                self.navigation.to_listing()
                row = self.resolver.find_row(proc.name, position=row.position)
                advance(ProcessState.POLLING)
                result = self.poller.await_terminal(row, proc.name)
            else:
                logger.info("%s: already running (status=%s); waiting for it without triggering", label, status or "(blank)")
                advance(ProcessState.POLLING)
                result = self.poller.await_terminal(row, proc.name)
        except (NavigationError, RowNotFoundError) as e:
            logger.error("%s: giving up in state %s: %s", label, state.value, e)
            result = PollResult(TerminalOutcome.UNKNOWN, "", f"{state.value}: {e}")
        except Exception as e:
            logger.exception("%s: unexpected failure in state %s", label, state.value)
            result = PollResult(TerminalOutcome.FAILED, "", f"{state.value}: {e}")

        advance(_FINAL_STATE[result.outcome])
        return self._record(proc, ref, slot, started, result)

    def _record(self, proc: ProcessDefinition, ref: str, slot: int, started: datetime, result: PollResult) -> LedgerEntry:
        entry = LedgerEntry(
            process_name=proc.name,
            outcome=result.outcome,
            started_at=started,
            finished_at=self.now(),
            system=proc.system,
            locator_ref=ref,
            slot=slot,
            slots=len(proc.locator_refs),
            last_status=result.last_status,
            detail=result.detail,
        )
        self.ledger.append(entry)
        logger.info("%s -> %s (%.2f min)", entry.label(), entry.outcome.value, entry.duration_minutes)
        return entry

    def _trigger(self, row: RowHandle, ref: str, label: str) -> None:
        handle = self.driver.locate(ref)
        if handle is None:
            logger.warning("%s: locator %s not on page; using the row's own action link", label, ref)
            handle = self.driver.locate(self.selectors.row_action_link, within=row.element)
        if handle is None:
            raise LookupError(f"no action control for {label} (locator {ref})")
        self.driver.click(handle)

    def _confirm_manual_execution(self, label: str) -> None:
        for control in self.selectors.confirm_controls:
            handle = self.driver.wait_for(control, timeout_ms=self.confirm_timeout_ms)
            if handle is None:
                logger.warning("%s: confirmation control %s not shown; continuing", label, control)
                continue
            self.driver.click(handle)
            logger.debug("%s: clicked %s", label, control)
