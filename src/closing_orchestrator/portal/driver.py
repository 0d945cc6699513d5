from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence


# Opaque to the orchestration code: whatever the backend uses to address a rendered element.
ElementHandle = Any


class PortalDriver(Protocol):
    """
    The only UI capabilities the closing workflow depends on.

    Implementations raise on failure (e.g. a stale element after the table reloaded); `locate` returns
    None when the reference matches nothing.
    """

    def goto(self, url: str) -> None:
        ...

    def locate(self, ref: str, *, within: Optional[ElementHandle] = None) -> Optional[ElementHandle]:
        ...

    def locate_all(self, ref: str, *, within: Optional[ElementHandle] = None) -> Sequence[ElementHandle]:
        ...

    def wait_for(self, ref: str, *, timeout_ms: int) -> Optional[ElementHandle]:
        ...

    def text(self, handle: ElementHandle) -> str:
        ...

    def click(self, handle: ElementHandle) -> None:
        ...

    def check(self, handle: ElementHandle) -> None:
        ...

    def wait(self, ms: int) -> None:
        ...
