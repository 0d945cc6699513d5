from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    The closing portal is server-rendered HTML with no API; selectors and column positions may drift.
    Keep all UI hooks here for easy maintenance.
    """

    # Listing view (ProcesoCierre/Procesar). Column positions are zero-based <td> indexes.
    table_rows: str = "#myTable tbody tr"
    row_cells: str = "td"
    system_column: int = 2
    description_column: int = 4
    date_column: int = 6
    status_column: int = 9
    # Fallback action link inside a resolved row when a catalog locator is not on the page.
    row_action_link: str = 'a[href*="ProcesarDirecto"], a:has-text("Procesar")'

    # Manual execution page shown after clicking a process action, then its confirmation modal.
    confirm_controls: tuple[str, ...] = (
        "#myModalAdd",
        "#myModal > div > div > form > div.modal-footer > input",
    )

    # Edit view (ProcesoCierre/Editar?CodSistema=..&CodProceso=..)
    prerequisite_remove_checkbox: str = 'input[type="checkbox"][name="Eliminar"]'
    save_button: str = 'button:has-text("Guardar"), input[type="submit"][value*="Guardar" i]'

    # Status literals, compared after normalization. Only rows in a trigger status are clicked.
    completed_status: str = "COMPLETADO"
    failed_status: str = "ERROR"
    trigger_statuses: tuple[str, ...] = ("PENDIENTE", "ERROR")
