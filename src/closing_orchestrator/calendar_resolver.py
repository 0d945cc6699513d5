from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Protocol, Union

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .audit import AuditSink
from .config import DEFAULT_CALENDAR_QUERY
from .errors import DataSourceError
from .models import CalendarRow, EnvironmentClassification
from .util.dates import coerce_iso_date
from .util.text import normalize_text


logger = logging.getLogger(__name__)


class CalendarSource(Protocol):
    def fetch(self) -> CalendarRow:
        ...


def classify(weekday: str, today: date, month_end: date) -> EnvironmentClassification:
    """
    Friday is checked first: a Friday that is also month-end runs the Friday catalog.
    """
    if normalize_text(weekday).startswith("FRI"):
        return EnvironmentClassification.FRIDAY
    if today == month_end:
        return EnvironmentClassification.MONTH_END
    return EnvironmentClassification.ORDINARY


class SqlCalendarSource:
    """
    Read the current accounting date from the bank's calendar table.

    The query must return one row of (weekday abbreviation, ISO date, ISO month-end date). A `:system_code`
    bind parameter is filled in when the query references it.
    """

    def __init__(
        self,
        engine: Union[Engine, str],
        *,
        system_code: str = "CC",
        query: str = DEFAULT_CALENDAR_QUERY,
    ) -> None:
        self._engine = sa.create_engine(engine) if isinstance(engine, str) else engine
        self.system_code = system_code
        self.query = query

    def fetch(self) -> CalendarRow:
        params = {"system_code": self.system_code} if ":system_code" in self.query else {}
        try:
            with self._engine.connect() as conn:
                row = conn.execute(sa.text(self.query), params).first()
        except SQLAlchemyError as e:
            raise DataSourceError(f"Calendar query failed: {e}") from e

        if row is None or len(row) < 3 or any(v is None for v in row[:3]):
            raise DataSourceError(f"Calendar query returned no rows (system_code={self.system_code})")

        try:
            return CalendarRow(
                weekday=str(row[0]).strip().upper(),
                today=coerce_iso_date(row[1]),
                month_end=coerce_iso_date(row[2]),
            )
        except ValueError as e:
            raise DataSourceError(f"Calendar query returned an unreadable row {tuple(row)!r}: {e}") from e


class CalendarResolver:
    def __init__(self, source: CalendarSource, audit: AuditSink, *, database: str = "") -> None:
        self.source = source
        self.audit = audit
        self.database = database
        self.last_row: Optional[CalendarRow] = None

    def resolve(self) -> EnvironmentClassification:
        try:
            row = self.source.fetch()
        except DataSourceError as e:
            self.audit.fatal(f"Calendar lookup failed (db={self.database}): {e}")
            logger.error("Calendar lookup failed (db=%s): %s", self.database, e)
            raise

        self.last_row = row
        classification = classify(row.weekday, row.today, row.month_end)
        is_friday = normalize_text(row.weekday).startswith("FRI")
        summary = (
            f"Accounting date {row.today.isoformat()} ({row.weekday}) | "
            f"friday={is_friday} | month_end={row.today == row.month_end} | "
            f"catalog={classification.value} | db={self.database}"
        )
        logger.info("%s", summary)
        self.audit.write(summary)
        return classification
