from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

from ..errors import RowNotFoundError
from ..models import RowSnapshot
from ..util.dates import parse_portal_date
from ..util.text import normalize_text
from .driver import ElementHandle, PortalDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowHandle:
    """
    A listing row resolved for one process name.

    `element` goes stale whenever the table reloads; `snapshot` is what the row showed when resolved.
    """

    element: ElementHandle
    process_name: str
    snapshot: RowSnapshot
    position: int

    @property
    def parsed_date(self) -> Optional[date]:
        return parse_portal_date(self.snapshot.date_text)


def select_latest(candidates: Sequence[RowHandle]) -> RowHandle:
    """
    Pick the row carrying the most recent date. Ties keep the first-encountered row; rows whose date
    cannot be parsed rank below every dated row.
    """
    if not candidates:
        raise ValueError("select_latest: no candidates")
    best = candidates[0]
    best_date = best.parsed_date or date.min
    for cand in candidates[1:]:
        cand_date = cand.parsed_date or date.min
        if cand_date > best_date:
            best, best_date = cand, cand_date
    return best


class RowResolver:
    def __init__(
        self,
        driver: PortalDriver,
        selectors: Optional[PortalSelectors] = None,
        *,
        wait_attempts: int = 3,
        wait_ms: int = 3_000,
    ) -> None:
        self.driver = driver
        self.selectors = selectors or PortalSelectors()
        self.wait_attempts = max(1, wait_attempts)
        self.wait_ms = wait_ms

    def snapshot(self, row: ElementHandle) -> RowSnapshot:
        """
        Read a row's cells live. Raises whatever the driver raises if the row is stale or too short.
        """
        s = self.selectors
        cells = self.driver.locate_all(s.row_cells, within=row)
        needed = max(s.system_column, s.description_column, s.date_column, s.status_column)
        if len(cells) <= needed:
            raise LookupError(f"row has {len(cells)} cells; expected more than {needed}")
        return RowSnapshot(
            description_text=self.driver.text(cells[s.description_column]).strip(),
            status_text=self.driver.text(cells[s.status_column]).strip(),
            date_text=self.driver.text(cells[s.date_column]).strip(),
            system_text=self.driver.text(cells[s.system_column]).strip(),
        )

    def read_rows(self) -> list[tuple[ElementHandle, RowSnapshot]]:
        out: list[tuple[ElementHandle, RowSnapshot]] = []
        for row in self.driver.locate_all(self.selectors.table_rows):
            try:
                out.append((row, self.snapshot(row)))
            except Exception:
                # Header/spacer rows and rows re-rendered mid-read are skipped.
                logger.debug("Skipping unreadable listing row.", exc_info=True)
        return out

    def matches(self, process_name: str, rows: Sequence[tuple[ElementHandle, RowSnapshot]]) -> list[RowHandle]:
        wanted = normalize_text(process_name)
        if not wanted:
            return []

        exact: list[RowHandle] = []
        partial: list[RowHandle] = []
        for position, (element, snap) in enumerate(rows):
            desc = normalize_text(snap.description_text)
            if desc == wanted:
                exact.append(RowHandle(element=element, process_name=process_name, snapshot=snap, position=position))
            elif wanted in desc:
                partial.append(RowHandle(element=element, process_name=process_name, snapshot=snap, position=position))
        return exact or partial

    def choose(
        self,
        found: Sequence[RowHandle],
        *,
        position: Optional[int] = None,
        prefer_statuses: Sequence[str] = (),
    ) -> RowHandle:
        """
        Pick one of several matching rows.

        A row still sitting at `position` wins (the row being polled). Otherwise rows whose status is in
        `prefer_statuses` are preferred, and the latest-dated of the remaining candidates is used.
        """
        if position is not None:
            for cand in found:
                if cand.position == position:
                    return cand
        if prefer_statuses:
            wanted = {normalize_text(s) for s in prefer_statuses}
            preferred = [c for c in found if normalize_text(c.snapshot.status_text) in wanted]
            if preferred:
                found = preferred
        return select_latest(found)

    def find_row(
        self,
        process_name: str,
        *,
        position: Optional[int] = None,
        prefer_statuses: Sequence[str] = (),
    ) -> RowHandle:
        for attempt in range(1, self.wait_attempts + 1):
            try:
                rows = self.read_rows()
            except Exception as e:
                logger.warning("Could not read listing rows for %r (attempt %d/%d): %s", process_name, attempt, self.wait_attempts, e)
                rows = []

            found = self.matches(process_name, rows)
            if found:
                chosen = self.choose(found, position=position, prefer_statuses=prefer_statuses)
                if len(found) > 1:
                    logger.info(
                        "%d rows match %r; using the one dated %s (row %d, status=%s)",
                        len(found),
                        process_name,
                        chosen.snapshot.date_text or "?",
                        chosen.position + 1,
                        chosen.snapshot.status_text or "-",
                    )
                return chosen

            if attempt < self.wait_attempts:
                logger.info(
                    "No listing row for %r yet (%d rows rendered, attempt %d/%d); waiting.",
                    process_name,
                    len(rows),
                    attempt,
                    self.wait_attempts,
                )
                self.driver.wait(self.wait_ms)

        raise RowNotFoundError(process_name, self.wait_attempts)
