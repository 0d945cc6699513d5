from __future__ import annotations

import re
import unicodedata
from typing import Optional


_WS_RE = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    """
    Canonical form used to compare portal labels and statuses:
    diacritics stripped, whitespace collapsed, trimmed, upper-cased.

    "Pendiente", "PENDIENTE" and "Pendiente " all normalize to "PENDIENTE".
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.upper())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS_RE.sub(" ", stripped).strip()
