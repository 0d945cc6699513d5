from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
import sqlalchemy as sa

from closing_orchestrator.audit import AuditSink
from closing_orchestrator.config import AppConfig, CatalogPaths, PreScriptConfig, TimingConfig
from closing_orchestrator.errors import ConfigurationError, DataSourceError
from closing_orchestrator.ledger import ExecutionLedger
from closing_orchestrator.models import CalendarRow, RunParameters, TerminalOutcome
from closing_orchestrator.runner import prepare_catalog, run_closing

from fakes import FakePortal, FakeRow


FRIDAY_CATALOG = """
F2:
  "CIERRE DIARIO DE BANCOS": ref-bancos
F4:
  "CIERRE DIARIO CUENTA EFECTIVO":
    - ref-efectivo-1
    - ref-efectivo-2
"""


class StaticSource:
    def __init__(self, weekday: str, today: date, month_end: date) -> None:
        self.row = CalendarRow(weekday=weekday, today=today, month_end=month_end)
        self.calls = 0

    def fetch(self) -> CalendarRow:
        self.calls += 1
        return self.row


class EmptySource:
    def fetch(self) -> CalendarRow:
        raise DataSourceError("Calendar query returned no rows (system_code=CC)")


def _cfg(tmp_path: Path) -> AppConfig:
    (tmp_path / "friday.yaml").write_text(FRIDAY_CATALOG, encoding="utf-8")
    (tmp_path / "ordinary.yaml").write_text('"CIERRE DIARIO DE BANCOS": ref-bancos\n', encoding="utf-8")
    return AppConfig(
        environments={"QA7": "https://qa7.example:3001"},
        databases={"QA7": "sqlite://"},
        catalogs=CatalogPaths(
            ordinary=str(tmp_path / "ordinary.yaml"),
            friday=str(tmp_path / "friday.yaml"),
            month_end=str(tmp_path / "month_end.yaml"),
        ),
        timing=TimingConfig(poll_interval_ms=10_000, navigation_delay_ms=500),
    )


def _portal() -> FakePortal:
    # one listing row per execution slot, as the portal renders them
    efectivo_1 = FakeRow("CIERRE DIARIO CUENTA EFECTIVO", statuses=["EN PROCESO", "EN PROCESO", "COMPLETADO"], system="F4")
    efectivo_2 = FakeRow("CIERRE DIARIO CUENTA EFECTIVO", statuses=["EN PROCESO", "COMPLETADO"], system="F4")
    return FakePortal(
        [FakeRow("CIERRE DIARIO DE BANCOS", statuses=["EN PROCESO", "COMPLETADO"], system="F2"), efectivo_1, efectivo_2],
        actions={
            "ref-bancos": "CIERRE DIARIO DE BANCOS",
            "ref-efectivo-1": efectivo_1,
            "ref-efectivo-2": efectivo_2,
        },
    )


def _params(*processes: str) -> RunParameters:
    return RunParameters(environment="QA7", database="QA7", processes=processes or ("ALL",), run_id="R1")


def test_friday_run_drives_whole_catalog(tmp_path: Path) -> None:
    portal = _portal()
    audit = AuditSink(tmp_path / "audit.log", run_id="R1")

    ledger = run_closing(
        _cfg(tmp_path),
        _params(),
        driver=portal,
        calendar_source=StaticSource("FRI", date(2026, 10, 16), date(2026, 10, 31)),
        audit=audit,
    )

    assert [e.label() for e in ledger] == [
        "CIERRE DIARIO DE BANCOS",
        "CIERRE DIARIO CUENTA EFECTIVO (slot 1/2)",
        "CIERRE DIARIO CUENTA EFECTIVO (slot 2/2)",
    ]
    assert ledger.all_completed
    assert all(url.startswith("https://qa7.example:3001/ProcesoCierre/") for url in portal.gotos)
    assert set(portal.waits) <= {10_000}

    lines = audit.read_lines()
    text = "\n".join(lines)
    assert "catalog=friday" in text
    assert "Catalog friday: 2 processes selected" in text
    assert sum(1 for line in lines if "] COMPLETED " in line) == 3
    assert "Closing summary: 3 executions, 3 completed, 0 failed, 0 unknown" in text


def test_selection_restricts_to_system_code(tmp_path: Path) -> None:
    portal = _portal()

    ledger = run_closing(
        _cfg(tmp_path),
        _params("F4"),
        driver=portal,
        calendar_source=StaticSource("FRI", date(2026, 10, 16), date(2026, 10, 31)),
        audit=AuditSink(tmp_path / "audit.log"),
    )

    assert {e.process_name for e in ledger} == {"CIERRE DIARIO CUENTA EFECTIVO"}
    assert portal.clicks == ["ref-efectivo-1", "ref-efectivo-2"]


def test_no_calendar_rows_aborts_before_portal(tmp_path: Path) -> None:
    portal = _portal()
    audit = AuditSink(tmp_path / "audit.log", run_id="R1")
    ledger = ExecutionLedger()

    with pytest.raises(DataSourceError):
        run_closing(_cfg(tmp_path), _params(), driver=portal, calendar_source=EmptySource(), audit=audit, ledger=ledger)

    assert len(ledger) == 0
    assert portal.gotos == []
    assert portal.clicks == []
    assert any("FATAL" in line for line in audit.read_lines())


def test_missing_catalog_variant_is_configuration_error(tmp_path: Path) -> None:
    portal = _portal()

    with pytest.raises(ConfigurationError):
        run_closing(
            _cfg(tmp_path),
            _params(),
            driver=portal,
            calendar_source=StaticSource("MON", date(2026, 11, 30), date(2026, 11, 30)),
            audit=AuditSink(tmp_path / "audit.log"),
        )

    assert portal.gotos == []


def test_failed_process_is_recorded_and_run_continues(tmp_path: Path) -> None:
    portal = _portal()
    portal.row("CIERRE DIARIO DE BANCOS").statuses = ["EN PROCESO", "ERROR"]

    ledger = run_closing(
        _cfg(tmp_path),
        _params(),
        driver=portal,
        calendar_source=StaticSource("TUE", date(2026, 10, 13), date(2026, 10, 31)),
        audit=AuditSink(tmp_path / "audit.log"),
    )

    # ordinary catalog only lists the bank closing
    assert [e.outcome for e in ledger] == [TerminalOutcome.FAILED]
    assert not ledger.all_completed


def test_prepared_catalog_is_driven_without_querying_again(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    source = StaticSource("FRI", date(2026, 10, 16), date(2026, 10, 31))
    audit = AuditSink(tmp_path / "audit.log", run_id="R1")
    portal = _portal()

    catalog = prepare_catalog(cfg, _params("F2"), calendar_source=source, audit=audit)
    assert catalog.names() == ["CIERRE DIARIO DE BANCOS"]
    assert portal.gotos == []

    ledger = run_closing(cfg, _params("F2"), driver=portal, catalog=catalog, audit=audit)

    assert source.calls == 1
    assert ledger.all_completed
    assert portal.clicks == ["ref-bancos"]


def test_configured_pre_scripts_run_before_trigger(tmp_path: Path) -> None:
    db = tmp_path / "closing.db"
    engine = sa.create_engine(f"sqlite:///{db}")
    with engine.begin() as conn:
        conn.execute(sa.text("CREATE TABLE ESTADOS (PROCESO TEXT, ESTADO TEXT)"))
        conn.execute(sa.text("INSERT INTO ESTADOS VALUES ('F2', 'BLOQUEADO')"))
    scripts = tmp_path / "sql"
    scripts.mkdir()
    (scripts / "reset_f2.sql").write_text("UPDATE ESTADOS SET ESTADO = 'LISTO' WHERE PROCESO = 'F2';\n", encoding="utf-8")
    cfg = _cfg(tmp_path).model_copy(
        update={
            "databases": {"QA7": f"sqlite:///{db}"},
            "pre_scripts": PreScriptConfig(scripts_dir=str(scripts), scripts={"Cierre diario de bancos": "reset_f2.sql"}),
        }
    )
    audit = AuditSink(tmp_path / "audit.log", run_id="R1")

    ledger = run_closing(
        cfg,
        _params("F2"),
        driver=_portal(),
        calendar_source=StaticSource("FRI", date(2026, 10, 16), date(2026, 10, 31)),
        audit=audit,
    )

    assert ledger.all_completed
    with engine.connect() as conn:
        assert conn.execute(sa.text("SELECT ESTADO FROM ESTADOS")).scalar_one() == "LISTO"
    engine.dispose()
    assert any("Pre-script reset_f2.sql for CIERRE DIARIO DE BANCOS executed" in line for line in audit.read_lines())
