from .dates import parse_portal_date
from .text import normalize_text

__all__ = ["parse_portal_date", "normalize_text"]
