from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Callable, Iterator

from .models import LedgerEntry, TerminalOutcome


logger = logging.getLogger(__name__)

LedgerListener = Callable[[LedgerEntry], None]

_ICONS = {
    TerminalOutcome.COMPLETED: "OK",
    TerminalOutcome.FAILED: "ERROR",
    TerminalOutcome.UNKNOWN: "UNKNOWN",
}


def format_minutes(total_min: float) -> str:
    hours = int(total_min // 60)
    minutes = int(round(total_min % 60))
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


class ExecutionLedger:
    """
    Append-only record of terminal outcomes, one entry per triggered process instance.

    Listeners see each entry as it is appended (the activity log, a live log stream); entries are
    never modified or removed.
    """

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._listeners: list[LedgerListener] = []

    def subscribe(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        self._entries.append(entry)
        for listener in self._listeners:
            try:
                listener(entry)
            except Exception:
                logger.warning("Ledger listener failed for %s", entry.label(), exc_info=True)
        return entry

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def count(self, outcome: TerminalOutcome) -> int:
        return sum(1 for e in self._entries if e.outcome is outcome)

    @property
    def all_completed(self) -> bool:
        return all(e.outcome is TerminalOutcome.COMPLETED for e in self._entries)

    def summary_lines(self) -> list[str]:
        lines = [
            f"Closing summary: {len(self._entries)} executions, "
            f"{self.count(TerminalOutcome.COMPLETED)} completed, "
            f"{self.count(TerminalOutcome.FAILED)} failed, "
            f"{self.count(TerminalOutcome.UNKNOWN)} unknown"
        ]

        by_system: "OrderedDict[str, list[LedgerEntry]]" = OrderedDict()
        for entry in self._entries:
            by_system.setdefault(entry.system or "-", []).append(entry)

        for system, entries in by_system.items():
            total = sum(e.duration_minutes for e in entries)
            lines.append(f"System {system}: {len(entries)} executions in {format_minutes(total)}")
            for e in entries:
                lines.append(
                    f"  [{_ICONS[e.outcome]}] {e.label()} -> {e.outcome.value} "
                    f"(status={e.last_status or '-'}, {e.duration_minutes:.2f} min)"
                    + (f" {e.detail}" if e.detail else "")
                )
        return lines
