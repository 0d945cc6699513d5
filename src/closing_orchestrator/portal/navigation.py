from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from ..errors import NavigationError
from .driver import PortalDriver


logger = logging.getLogger(__name__)


class NavigationClient:
    """
    Page navigation with a bounded number of attempts and a constant delay between them.

    The delay is the same before every retry.
    """

    def __init__(
        self,
        driver: PortalDriver,
        *,
        base_url: str,
        listing_path: str = "/ProcesoCierre/Procesar",
        edit_path: str = "/ProcesoCierre/Editar",
        max_attempts: int = 3,
        delay_ms: int = 3_000,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.driver = driver
        self.base_url = base_url.rstrip("/")
        self.listing_path = listing_path
        self.edit_path = edit_path
        self.max_attempts = max_attempts
        self.delay_ms = delay_ms

    @property
    def listing_url(self) -> str:
        return f"{self.base_url}{self.listing_path}"

    def edit_url(self, system_code: str, process_code: str) -> str:
        query = urlencode({"CodSistema": system_code, "CodProceso": process_code})
        return f"{self.base_url}{self.edit_path}?{query}"

    def navigate(self, target: str, max_attempts: Optional[int] = None) -> bool:
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                logger.debug("Navigating to %s (attempt %d/%d)", target, attempt, attempts)
                self.driver.goto(target)
            except Exception as e:
                last_error = e
                logger.warning("Navigation to %s failed (attempt %d/%d): %s", target, attempt, attempts, e)
                if attempt < attempts:
                    self.driver.wait(self.delay_ms)
                continue

            if attempt > 1:
                logger.info("Navigation to %s succeeded on attempt %d/%d", target, attempt, attempts)
            return True

        raise NavigationError(target, attempts, last_error) from last_error

    def to_listing(self) -> bool:
        return self.navigate(self.listing_url)
