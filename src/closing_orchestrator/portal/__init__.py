from .driver import PortalDriver
from .navigation import NavigationClient
from .rows import RowHandle, RowResolver, select_latest
from .selectors import PortalSelectors

__all__ = ["PortalDriver", "NavigationClient", "RowHandle", "RowResolver", "select_latest", "PortalSelectors"]
