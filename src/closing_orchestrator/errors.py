from __future__ import annotations

from typing import Optional


class ClosingError(RuntimeError):
    """Base class for closing-run failures."""


class ConfigurationError(ClosingError):
    """
    Raised when required run parameters are missing or cannot be resolved.

    Always raised before any portal interaction begins.
    """


class DataSourceError(ClosingError):
    """
    Raised when the calendar query cannot be executed or returns no rows.
    """


class NavigationError(ClosingError):
    def __init__(self, target: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Navigation to {target} failed after {attempts} attempt(s){detail}")
        self.target = target
        self.attempts = attempts
        self.cause = cause


class RowNotFoundError(ClosingError):
    def __init__(self, process_name: str, attempts: int) -> None:
        super().__init__(f"No listing row matches {process_name!r} after {attempts} attempt(s)")
        self.process_name = process_name
        self.attempts = attempts
