from __future__ import annotations

import logging
from typing import Optional, Sequence

from .config import PrerequisiteRule
from .errors import RowNotFoundError
from .portal.driver import PortalDriver
from .portal.navigation import NavigationClient
from .portal.rows import RowResolver
from .portal.selectors import PortalSelectors
from .util.text import normalize_text


logger = logging.getLogger(__name__)


class PrerequisitePolicy:
    """
    Clear stale prerequisites before a process is re-triggered.

    Some processes (e.g. a calendar change) refuse to run while another process from a previous cycle is
    still Pending; the fix is to tick the prerequisite-removal box on the process's edit view and save.
    """

    def __init__(
        self,
        rules: Sequence[PrerequisiteRule],
        driver: PortalDriver,
        resolver: RowResolver,
        navigation: NavigationClient,
        selectors: Optional[PortalSelectors] = None,
        *,
        control_timeout_ms: int = 20_000,
    ) -> None:
        self.rules = tuple(rules)
        self.driver = driver
        self.resolver = resolver
        self.navigation = navigation
        self.selectors = selectors or PortalSelectors()
        self.control_timeout_ms = control_timeout_ms

    def rules_for(self, process_name: str) -> list[PrerequisiteRule]:
        wanted = normalize_text(process_name)
        return [r for r in self.rules if normalize_text(r.process) == wanted]

    def apply(self, process_name: str) -> bool:
        """
        Returns True when at least one corrective edit-and-save round trip was made.

        Expects the listing to be rendered; leaves the browser on the listing. NavigationError propagates.
        """
        performed = False
        for rule in self.rules_for(process_name):
            try:
                row = self.resolver.find_row(rule.requires)
            except RowNotFoundError:
                logger.info("Prerequisite %r of %r is not listed; nothing to remove.", rule.requires, process_name)
                continue

            status = normalize_text(row.snapshot.status_text)
            if status != normalize_text(rule.pending_status):
                logger.info("Prerequisite %r of %r is %s; nothing to remove.", rule.requires, process_name, status or "(blank)")
                continue

            url = self.navigation.edit_url(rule.system_code, rule.process_code)
            logger.info("Prerequisite %r is still %s; removing it via %s", rule.requires, status, url)
            self.navigation.navigate(url)

            checkbox = self.driver.wait_for(self.selectors.prerequisite_remove_checkbox, timeout_ms=self.control_timeout_ms)
            if checkbox is None:
                logger.warning("Prerequisite removal checkbox not found on %s", url)
            else:
                self.driver.check(checkbox)

            save = self.driver.wait_for(self.selectors.save_button, timeout_ms=self.control_timeout_ms)
            if save is None:
                logger.warning("Save button not found on %s", url)
            else:
                self.driver.click(save)
                logger.info("Prerequisite %r removed for %r", rule.requires, process_name)

            performed = True
            self.navigation.to_listing()
        return performed
