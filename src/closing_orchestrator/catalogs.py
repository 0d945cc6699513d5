from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

import yaml
from pydantic import ValidationError

from .config import CatalogPaths
from .errors import ConfigurationError
from .models import EnvironmentClassification, ProcessDefinition
from .util.text import normalize_text


logger = logging.getLogger(__name__)

SELECT_ALL = "ALL"


@dataclass(frozen=True)
class Catalog:
    """
    The process definitions active for one run, in execution order.

    Order is meaningful: it encodes upstream/downstream dependencies between the bank's batch jobs.
    """

    processes: tuple[ProcessDefinition, ...] = ()
    classification: Optional[EnvironmentClassification] = None
    source: str = ""
    _by_name: dict[str, ProcessDefinition] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: dict[str, ProcessDefinition] = {}
        for proc in self.processes:
            key = normalize_text(proc.name)
            if key in index:
                raise ConfigurationError(f"Duplicate process name in catalog {self.source or '<memory>'}: {proc.name!r}")
            index[key] = proc
        object.__setattr__(self, "_by_name", index)

    def __iter__(self) -> Iterator[ProcessDefinition]:
        return iter(self.processes)

    def __len__(self) -> int:
        return len(self.processes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_text(name) in self._by_name

    def names(self) -> list[str]:
        return [p.name for p in self.processes]

    def instance_count(self) -> int:
        return sum(len(p.locator_refs) for p in self.processes)

    def restrict(self, selection: Sequence[str]) -> "Catalog":
        """
        Keep only processes named in `selection`, or belonging to a system code named there.

        Catalog order is kept regardless of the order of `selection`.
        """
        tokens = [normalize_text(t) for t in selection if (t or "").strip()]
        if SELECT_ALL in tokens:
            return self

        wanted = set(tokens)
        kept = tuple(p for p in self.processes if normalize_text(p.name) in wanted or normalize_text(p.system) in wanted)

        matched = {normalize_text(p.name) for p in kept} | {normalize_text(p.system) for p in kept}
        for token in tokens:
            if token not in matched:
                logger.warning("Selected process %r is not in the %s catalog; skipping.", token, self._label())

        return Catalog(processes=kept, classification=self.classification, source=self.source)

    def _label(self) -> str:
        return self.classification.value if self.classification else (self.source or "active")


def _refs(value: object, *, name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    raise ConfigurationError(f"Process {name!r}: locator reference must be a string or a list of strings")


def _definitions(data: dict, *, system: str = "") -> Iterable[ProcessDefinition]:
    for key, value in data.items():
        name = str(key)
        if isinstance(value, dict):
            if system:
                raise ConfigurationError(f"System group {name!r} is nested inside {system!r}")
            yield from _definitions(value, system=name)
            continue
        try:
            yield ProcessDefinition(name=name, locator_refs=_refs(value, name=name), system=system)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid process definition {name!r}: {e}") from e


def parse_catalog(
    data: object,
    *,
    classification: Optional[EnvironmentClassification] = None,
    source: str = "",
) -> Catalog:
    """
    Build a catalog from its YAML shape. Either flat:

        "CIERRE DIARIO DE BANCOS": '//*[@id="myTable"]/tbody/tr[13]/td[12]/a'

    or grouped by system code:

        F2:
          "CIERRE DIARIO DE BANCOS": '//*[@id="myTable"]/tbody/tr[13]/td[12]/a'
          "CORRER CALENDARIO": ['//*[@id="myTable"]/tbody/tr[14]/td[12]/a', '//*[@id="myTable"]/tbody/tr[15]/td[12]/a']
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Catalog {source or '<memory>'} must be a mapping of process name to locator")
    return Catalog(processes=tuple(_definitions(data)), classification=classification, source=source)


def load_catalog(path: Union[str, Path], *, classification: Optional[EnvironmentClassification] = None) -> Catalog:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Catalog file not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    return parse_catalog(data, classification=classification, source=str(p))


def catalog_path(paths: CatalogPaths, classification: EnvironmentClassification) -> str:
    return {
        EnvironmentClassification.ORDINARY: paths.ordinary,
        EnvironmentClassification.FRIDAY: paths.friday,
        EnvironmentClassification.MONTH_END: paths.month_end,
    }[classification]


def select_catalog(
    paths: CatalogPaths,
    classification: EnvironmentClassification,
    *,
    base_dir: Union[str, Path, None] = None,
) -> Catalog:
    """
    Load the one catalog variant that applies to `classification`.
    """
    raw = Path(catalog_path(paths, classification))
    if base_dir is not None and not raw.is_absolute():
        raw = Path(base_dir) / raw
    catalog = load_catalog(raw, classification=classification)
    logger.info(
        "Selected %s catalog %s (%d processes, %d executions)",
        classification.value,
        raw,
        len(catalog),
        catalog.instance_count(),
    )
    return catalog
