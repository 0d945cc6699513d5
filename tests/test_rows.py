from __future__ import annotations

from datetime import date

import pytest

from closing_orchestrator.errors import RowNotFoundError
from closing_orchestrator.models import RowSnapshot
from closing_orchestrator.portal.rows import RowHandle, RowResolver, select_latest
from closing_orchestrator.util.dates import parse_portal_date
from closing_orchestrator.util.text import normalize_text

from fakes import FakePortal, FakeRow


@pytest.mark.parametrize(
    "raw",
    ["Pendiente", "PENDIENTE", "Pendiente ", "  pendiente", "PÉNDIENTE", "Pendiénte"],
)
def test_normalize_variants_are_equal(raw: str) -> None:
    assert normalize_text(raw) == "PENDIENTE"


@pytest.mark.parametrize(
    "raw",
    ["Aplicación   de Cargos", "ñandú", "CIERRE DIARIO\tDE BANCOS\n", "", "straße"],
)
def test_normalize_is_idempotent(raw: str) -> None:
    once = normalize_text(raw)
    assert normalize_text(once) == once


def test_normalize_none_is_empty() -> None:
    assert normalize_text(None) == ""


def test_parse_portal_date_day_first() -> None:
    assert parse_portal_date("03/10/2026") == date(2026, 10, 3)
    assert parse_portal_date("16-10-2026 21:04:11") == date(2026, 10, 16)
    assert parse_portal_date("16.10.2026") == date(2026, 10, 16)
    assert parse_portal_date("") is None
    assert parse_portal_date("pendiente") is None


def _handle(date_text: str, position: int) -> RowHandle:
    snap = RowSnapshot(description_text="CIERRE DIARIO DE BANCOS", status_text="", date_text=date_text)
    return RowHandle(element=object(), process_name="CIERRE DIARIO DE BANCOS", snapshot=snap, position=position)


def test_select_latest_picks_max_date() -> None:
    rows = [_handle("01/10/2026", 0), _handle("15/10/2026", 1), _handle("03/10/2026", 2)]
    assert select_latest(rows).position == 1


def test_select_latest_tie_keeps_first_encountered() -> None:
    rows = [_handle("02/10/2026", 0), _handle("15/10/2026", 1), _handle("15/10/2026", 2)]
    assert select_latest(rows).position == 1


def test_select_latest_undated_rows_rank_last() -> None:
    rows = [_handle("", 0), _handle("01/01/2020", 1)]
    assert select_latest(rows).position == 1


def test_select_latest_requires_candidates() -> None:
    with pytest.raises(ValueError):
        select_latest([])


def test_find_row_matches_accent_and_case_variants() -> None:
    portal = FakePortal([FakeRow("Aplicación de Depósitos en Lote", system="F4")])
    row = RowResolver(portal).find_row("APLICACION DE DEPOSITOS EN LOTE")
    assert row.snapshot.description_text == "Aplicación de Depósitos en Lote"
    assert row.snapshot.system_text == "F4"
    assert row.snapshot.status_text == "PENDIENTE"


def test_find_row_prefers_latest_duplicate() -> None:
    portal = FakePortal(
        [
            FakeRow("CIERRE DIARIO DE BANCOS", date="14/10/2026", idle_status="COMPLETADO"),
            FakeRow("CIERRE DIARIO PRESTAMOS", date="30/10/2026"),
            FakeRow("Cierre diario de bancos", date="16/10/2026", idle_status="PENDIENTE"),
        ]
    )
    row = RowResolver(portal).find_row("CIERRE DIARIO DE BANCOS")
    assert row.position == 2
    assert row.snapshot.status_text == "PENDIENTE"


def test_find_row_exact_match_beats_containment() -> None:
    portal = FakePortal(
        [
            FakeRow("CIERRE DIARIO CUENTA EFECTIVO ESPECIAL", date="20/10/2026"),
            FakeRow("CIERRE DIARIO CUENTA EFECTIVO", date="01/10/2026"),
        ]
    )
    row = RowResolver(portal).find_row("Cierre diario cuenta efectivo")
    assert row.position == 1


def test_find_row_falls_back_to_containment() -> None:
    portal = FakePortal([FakeRow("PROC. CIERRE DIARIO DE BANCOS (F2)")])
    row = RowResolver(portal).find_row("CIERRE DIARIO DE BANCOS")
    assert row.position == 0


def _two_slot_portal() -> FakePortal:
    return FakePortal(
        [
            FakeRow("CIERRE DIARIO CUENTA EFECTIVO", idle_status="COMPLETADO"),
            FakeRow("CIERRE DIARIO CUENTA EFECTIVO", idle_status="ERROR"),
        ]
    )


def test_find_row_prefers_triggerable_status_over_date_order() -> None:
    resolver = RowResolver(_two_slot_portal())

    assert resolver.find_row("CIERRE DIARIO CUENTA EFECTIVO").position == 0
    row = resolver.find_row("CIERRE DIARIO CUENTA EFECTIVO", prefer_statuses=("Pendiente", "Error"))
    assert row.position == 1
    assert row.snapshot.status_text == "ERROR"


def test_find_row_keeps_following_the_polled_position() -> None:
    portal = _two_slot_portal()
    resolver = RowResolver(portal)

    assert resolver.find_row("CIERRE DIARIO CUENTA EFECTIVO", position=1).position == 1
    # a position no longer showing this process falls back to the usual choice
    assert resolver.find_row("CIERRE DIARIO CUENTA EFECTIVO", position=7).position == 0


def test_find_row_waits_then_raises() -> None:
    portal = FakePortal([FakeRow("OTRO PROCESO")])
    resolver = RowResolver(portal, wait_attempts=3, wait_ms=3_000)

    with pytest.raises(RowNotFoundError) as excinfo:
        resolver.find_row("CIERRE DIARIO DE BANCOS")

    assert excinfo.value.attempts == 3
    assert excinfo.value.process_name == "CIERRE DIARIO DE BANCOS"
    assert portal.waits == [3_000, 3_000]


def test_find_row_succeeds_once_table_renders() -> None:
    portal = FakePortal()
    late = FakeRow("CIERRE DIARIO DE BANCOS")
    original_wait = portal.wait

    def wait_and_render(ms: int) -> None:
        original_wait(ms)
        portal.rows = [late]

    portal.wait = wait_and_render  # type: ignore[method-assign]

    row = RowResolver(portal, wait_attempts=3, wait_ms=500).find_row("CIERRE DIARIO DE BANCOS")
    assert row.snapshot.description_text == "CIERRE DIARIO DE BANCOS"
    assert portal.waits == [500]


def test_snapshot_of_stale_row_raises() -> None:
    portal = FakePortal([FakeRow("CIERRE DIARIO DE BANCOS")])
    resolver = RowResolver(portal)
    row = resolver.find_row("CIERRE DIARIO DE BANCOS")
    portal.goto("https://qa7.example/other")
    with pytest.raises(Exception):
        resolver.snapshot(row.element)
