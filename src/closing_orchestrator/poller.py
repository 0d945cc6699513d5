from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .models import TerminalOutcome
from .portal.driver import PortalDriver
from .portal.navigation import NavigationClient
from .portal.rows import RowHandle, RowResolver
from .portal.selectors import PortalSelectors
from .util.text import normalize_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    outcome: TerminalOutcome
    last_status: str = ""
    detail: Optional[str] = None
    cycles: int = 0


class CompletionPoller:
    """
    Wait, with no deadline, for a process row to reach a terminal status.

    The loop ends on COMPLETADO or ERROR, on the stop signal, or after `recovery_attempts` consecutive
    cycles in which the row could not be read or reached (the only `Unknown` exit).
    """

    def __init__(
        self,
        driver: PortalDriver,
        resolver: RowResolver,
        navigation: NavigationClient,
        selectors: Optional[PortalSelectors] = None,
        *,
        poll_interval_ms: int = 30_000,
        heartbeat_every: int = 20,
        recovery_attempts: int = 10,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.resolver = resolver
        self.navigation = navigation
        self.selectors = selectors or PortalSelectors()
        self.poll_interval_ms = poll_interval_ms
        self.heartbeat_every = max(1, heartbeat_every)
        self.recovery_attempts = max(1, recovery_attempts)
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    def _terminal(self, status: str) -> Optional[TerminalOutcome]:
        if status == normalize_text(self.selectors.completed_status):
            return TerminalOutcome.COMPLETED
        if status == normalize_text(self.selectors.failed_status):
            return TerminalOutcome.FAILED
        return None

    def _read_status(self, process_name: str, row: Optional[RowHandle], position: int) -> tuple[RowHandle, str]:
        if row is not None:
            return row, self.resolver.snapshot(row.element).status_text
        # Reload the listing; the table only reflects backend progress after a fresh render.
        self.navigation.to_listing()
        fresh = self.resolver.find_row(process_name, position=position)
        return fresh, fresh.snapshot.status_text

    def await_terminal(self, row: RowHandle, process_name: str) -> PollResult:
        started = self.clock()
        last_status: Optional[str] = None
        current: Optional[RowHandle] = row
        position = row.position
        cycle = 0
        failures = 0

        def minutes() -> float:
            return (self.clock() - started) / 60.0

        while True:
            if self.stop_event.is_set():
                logger.warning("Stop requested while waiting for %r (last status=%s)", process_name, last_status or "-")
                return PollResult(TerminalOutcome.UNKNOWN, last_status or "", "stopped", cycle)

            cycle += 1
            try:
                fresh, raw_status = self._read_status(process_name, current, position)
            except Exception as e:
                # NavigationError, RowNotFoundError, stale handles and half-rendered rows after a reload.
                error = e
            else:
                # The next cycle re-renders the listing and relocates the row.
                current = None
                position = fresh.position
                failures = 0
                status = normalize_text(raw_status)

                changed = status != last_status
                if changed:
                    logger.info(
                        "%s: status %s -> %s (%.1f min)",
                        process_name,
                        last_status if last_status else "-",
                        status or "(blank)",
                        minutes(),
                    )
                    last_status = status

                outcome = self._terminal(status)
                if outcome is not None:
                    logger.info("%s finished: %s after %.1f min (%d cycles)", process_name, status, minutes(), cycle)
                    return PollResult(outcome, status, None, cycle)

                if not changed and cycle % self.heartbeat_every == 0:
                    logger.info(
                        "%s still %s (%.1f min, cycle %d, row dated %s)",
                        process_name,
                        status or "(blank)",
                        minutes(),
                        cycle,
                        fresh.snapshot.date_text or "?",
                    )

                self.driver.wait(self.poll_interval_ms)
                continue

            failures += 1
            current = None
            logger.warning(
                "Could not read status of %r (recovery %d/%d): %s",
                process_name,
                failures,
                self.recovery_attempts,
                error,
            )
            if failures >= self.recovery_attempts:
                detail = f"row not recoverable after {failures} attempts: {error}"
                logger.error("Giving up on %r: %s", process_name, detail)
                return PollResult(TerminalOutcome.UNKNOWN, last_status or "", detail, cycle)

            self.driver.wait(self.poll_interval_ms)
