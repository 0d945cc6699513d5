from __future__ import annotations

import logging
from pathlib import Path

import pytest
import sqlalchemy as sa

from closing_orchestrator.audit import AuditSink
from closing_orchestrator.pre_scripts import PreScriptRunner, split_statements


def _engine(tmp_path: Path) -> sa.engine.Engine:
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'closing.db'}")
    with engine.begin() as conn:
        conn.execute(sa.text("CREATE TABLE ESTADOS (PROCESO TEXT, ESTADO TEXT)"))
        conn.execute(sa.text("INSERT INTO ESTADOS VALUES ('F4', 'ERROR'), ('F5', 'ERROR')"))
    return engine


def _estados(engine: sa.engine.Engine) -> dict[str, str]:
    with engine.connect() as conn:
        return dict(conn.execute(sa.text("SELECT PROCESO, ESTADO FROM ESTADOS")).all())


def test_split_on_semicolons_skips_comment_only_chunks() -> None:
    script = "-- reset\nUPDATE A SET X = 1;\n\nDELETE FROM B;\n-- done\n"
    assert split_statements(script) == ["-- reset\nUPDATE A SET X = 1", "DELETE FROM B"]


def test_split_keeps_plsql_blocks_whole() -> None:
    script = "BEGIN\n  UPDATE A SET X = 1;\n  COMMIT;\nEND;\n/\nUPDATE B SET Y = 2\n/\n"
    assert split_statements(script) == ["BEGIN\n  UPDATE A SET X = 1;\n  COMMIT;\nEND;", "UPDATE B SET Y = 2"]


def test_scripts_match_by_containment_either_way() -> None:
    runner = PreScriptRunner(
        "sqlite://",
        {"Cierre diario cuenta efectivo": ["pre-f4.sql"], "CIERRE DIARIO DIVISAS": ["fix.sql", "reset.sql"]},
    )
    assert runner.scripts_for("CIERRE DIARIO CUENTA EFECTIVO (F4)") == ("pre-f4.sql",)
    assert runner.scripts_for("cierre diario divisas") == ("fix.sql", "reset.sql")
    assert runner.scripts_for("CIERRE DIARIO DE BANCOS") == ()
    assert runner.scripts_for("") == ()


def test_scripts_run_in_order_against_database(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    (tmp_path / "reset.sql").write_text("UPDATE ESTADOS SET ESTADO = 'PENDIENTE' WHERE PROCESO = 'F4';", encoding="utf-8")
    (tmp_path / "mark.sql").write_text(
        "UPDATE ESTADOS SET ESTADO = ESTADO || '+' WHERE PROCESO = 'F4';\nDELETE FROM ESTADOS WHERE PROCESO = 'F5';\n",
        encoding="utf-8",
    )
    audit = AuditSink(tmp_path / "audit.log", run_id="R1")
    runner = PreScriptRunner(engine, {"CIERRE DIARIO CUENTA EFECTIVO": ["reset.sql", "mark.sql"]}, base_dir=tmp_path, audit=audit)

    assert runner.run_for("CIERRE DIARIO CUENTA EFECTIVO") == 2

    assert _estados(engine) == {"F4": "PENDIENTE+"}
    assert sum(1 for line in audit.read_lines() if "executed" in line) == 2


def test_failing_scripts_are_logged_and_do_not_stop(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="closing_orchestrator.pre_scripts")
    engine = _engine(tmp_path)
    (tmp_path / "broken.sql").write_text("UPDATE NO_SUCH_TABLE SET X = 1;", encoding="utf-8")
    (tmp_path / "good.sql").write_text("UPDATE ESTADOS SET ESTADO = 'PENDIENTE' WHERE PROCESO = 'F5';", encoding="utf-8")
    runner = PreScriptRunner(
        engine,
        {"CIERRE DIARIO DIVISAS": ["missing.sql", "broken.sql", "good.sql"]},
        base_dir=tmp_path,
        audit=AuditSink(tmp_path / "audit.log"),
    )

    assert runner.run_for("CIERRE DIARIO DIVISAS") == 1

    assert _estados(engine)["F5"] == "PENDIENTE"
    failed = [r.getMessage() for r in caplog.records if "failed; continuing" in r.getMessage()]
    assert len(failed) == 2
    assert "missing.sql" in failed[0] and "broken.sql" in failed[1]


def test_failed_statement_rolls_back_its_script(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    (tmp_path / "half.sql").write_text(
        "UPDATE ESTADOS SET ESTADO = 'PENDIENTE' WHERE PROCESO = 'F4';\nUPDATE NO_SUCH_TABLE SET X = 1;\n",
        encoding="utf-8",
    )
    runner = PreScriptRunner(engine, {"F4": ["half.sql"]}, base_dir=tmp_path)

    assert runner.run_for("CIERRE F4") == 0
    assert _estados(engine)["F4"] == "ERROR"
