from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnvironmentClassification(str, Enum):
    ORDINARY = "ordinary"
    FRIDAY = "friday"
    MONTH_END = "month_end"


class TerminalOutcome(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ProcessDefinition(BaseModel):
    """
    One named closing process and the portal locator(s) that trigger it.

    A process listed with two locator references has two execution slots in the portal; each slot is
    driven as an independent execution under the same name.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    locator_refs: tuple[str, ...]
    system: str = ""

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not (value or "").strip():
            raise ValueError("process name must not be blank")
        return value.strip()

    @field_validator("locator_refs")
    @classmethod
    def _refs_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        refs = tuple(r for r in value if (r or "").strip())
        if not refs:
            raise ValueError("a process needs at least one locator reference")
        return refs


@dataclass(frozen=True)
class CalendarRow:
    weekday: str
    today: date
    month_end: date


@dataclass(frozen=True)
class RowSnapshot:
    """Text read live from one listing row; discarded after each poll tick."""

    description_text: str
    status_text: str
    date_text: str
    system_text: str = ""


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    process_name: str
    outcome: TerminalOutcome
    started_at: datetime
    finished_at: datetime
    system: str = ""
    locator_ref: str = ""
    slot: int = 1
    slots: int = 1
    last_status: str = ""
    detail: Optional[str] = None

    @property
    def duration_minutes(self) -> float:
        return (self.finished_at - self.started_at).total_seconds() / 60.0

    def label(self) -> str:
        if self.slots > 1:
            return f"{self.process_name} (slot {self.slot}/{self.slots})"
        return self.process_name


class RunParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str
    database: str
    processes: tuple[str, ...] = Field(default_factory=tuple)
    run_id: str = "GLOBAL"
