from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import RunParameters


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_CALENDAR_QUERY = (
    "SELECT "
    "TO_CHAR(MAX(FEC_HOY), 'DY', 'NLS_DATE_LANGUAGE=ENGLISH') AS DIA, "
    "TO_CHAR(MAX(FEC_HOY), 'YYYY-MM-DD') AS FECHA, "
    "TO_CHAR(LAST_DAY(MAX(FEC_HOY)), 'YYYY-MM-DD') AS FIN_MES "
    "FROM CALENDARIOS WHERE COD_SISTEMA = :system_code"
)


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _parse_process_list(value: Union[str, Sequence[str], None]) -> tuple[str, ...]:
    if value is None:
        return ()
    items = value.split(",") if isinstance(value, str) else list(value)
    return tuple(s.strip() for s in items if s and s.strip())


def _default_config_from_env() -> dict:
    """
    Env-only defaults so a launcher can drive a run with nothing but environment variables.

    YAML remains the place for database URLs, catalogs and prerequisite rules.
    """
    return {
        "portal": {
            "storage_state_path": os.getenv("PORTAL_STORAGE_STATE", "data/session.json"),
            "headless": _env_bool("PORTAL_HEADLESS", default=False),
            "browser_channel": os.getenv("PORTAL_BROWSER_CHANNEL", "msedge"),
        },
        "calendar": {
            "system_code": os.getenv("CALENDAR_SYSTEM_CODE", "CC"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "logs/closing.log"),
            "audit_path": os.getenv("AUDIT_LOG_FILE", "logs/audit.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    The closing portal: a listing view of process rows and an edit view per (system, process) pair.

    The base URL is not set here; every run names its environment (see `AppConfig.environment_url`).
    """

    listing_path: str = "/ProcesoCierre/Procesar"
    edit_path: str = "/ProcesoCierre/Editar"
    storage_state_path: str = "data/session.json"
    headless: bool = False
    browser_channel: str = "msedge"
    ignore_https_errors: bool = True
    navigation_timeout_ms: int = 60_000
    debug_dir: str = "data/debug"


class CalendarConfig(BaseModel):
    system_code: str = "CC"
    query: str = DEFAULT_CALENDAR_QUERY


class CatalogPaths(BaseModel):
    ordinary: str = "catalogs/ordinary.yaml"
    friday: str = "catalogs/friday.yaml"
    month_end: str = "catalogs/month_end.yaml"


class TimingConfig(BaseModel):
    navigation_attempts: int = Field(default=3, ge=1)
    navigation_delay_ms: int = Field(default=3_000, ge=0)
    poll_interval_ms: int = Field(default=30_000, ge=0)
    # 20 cycles x 30s: one heartbeat every ten minutes of unchanged status.
    heartbeat_every: int = Field(default=20, ge=1)
    row_wait_attempts: int = Field(default=3, ge=1)
    row_wait_ms: int = Field(default=3_000, ge=0)
    recovery_attempts: int = Field(default=10, ge=1)
    confirm_timeout_ms: int = Field(default=20_000, ge=0)


class PrerequisiteRule(BaseModel):
    """
    Before triggering `process`, check the listing row of `requires`; if its status is `pending_status`,
    tick the removal checkbox on the edit view of (`system_code`, `process_code`) and save.
    """

    process: str
    requires: str
    system_code: str
    process_code: str
    pending_status: str = "PENDIENTE"


class PreScriptConfig(BaseModel):
    """
    SQL scripts run against the run's database right before a process is triggered.

    `scripts` maps a process name to script files under `scripts_dir`, run in order. A name matches a
    process when either contains the other after normalization; the first matching entry wins.
    """

    scripts_dir: str = "scripts/sql"
    scripts: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("scripts", mode="before")
    @classmethod
    def _single_script_as_list(cls, value: object) -> object:
        if isinstance(value, dict):
            return {k: [v] if isinstance(v, str) else v for k, v in value.items()}
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "logs/closing.log"
    audit_path: str = "logs/audit.log"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    environments: dict[str, str] = Field(default_factory=dict)
    databases: dict[str, str] = Field(default_factory=dict)
    calendar: CalendarConfig = CalendarConfig()
    catalogs: CatalogPaths = CatalogPaths()
    timing: TimingConfig = TimingConfig()
    prerequisites: list[PrerequisiteRule] = Field(default_factory=list)
    pre_scripts: PreScriptConfig = PreScriptConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _environments_are_urls(self) -> "AppConfig":
        for name, url in self.environments.items():
            parsed = urlparse(url)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(f"environments.{name} must be a full URL like 'https://portal.example:3001'")
        return self

    def environment_url(self, environment: str) -> str:
        """
        Resolve an environment identifier (a key of `environments`, or a full URL) to the portal base URL.
    There is no default environment; an empty identifier is a configuration error.
        """
        env = (environment or "").strip()
        if env in self.environments:
            return self.environments[env].rstrip("/")
        parsed = urlparse(env)
        if parsed.scheme and parsed.netloc:
            return env.rstrip("/")
        raise ConfigurationError(f"Unknown environment {environment!r}: not a configured name and not a URL")

    def database_url(self, database: str) -> str:
        try:
            return self.databases[database]
        except KeyError:
            raise ConfigurationError(
                f"Database {database!r} is not configured (known: {', '.join(sorted(self.databases)) or 'none'})"
            ) from None


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    try:
        return AppConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {p}: {e}") from e


def resolve_run_parameters(
    cfg: AppConfig,
    *,
    environment: Optional[str] = None,
    database: Optional[str] = None,
    processes: Union[str, Sequence[str], None] = None,
    run_id: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunParameters:
    """
    Merge explicit arguments with the launcher's environment variables
    (AMBIENTE, BASE_DATOS, PROCESOS, RUN_ID) and validate them against the config.
    """
    source = os.environ if env is None else env

    environment = (environment or source.get("AMBIENTE", "") or "").strip()
    database = (database or source.get("BASE_DATOS", "") or "").strip()
    selected = _parse_process_list(processes) or _parse_process_list(source.get("PROCESOS", ""))
    run_id = (run_id or source.get("RUN_ID", "") or "GLOBAL").strip()

    missing = [
        label
        for label, value in (("environment", environment), ("database", database), ("processes", selected))
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Missing required run parameters: {', '.join(missing)}")

    # Both raise ConfigurationError when unresolvable.
    cfg.environment_url(environment)
    cfg.database_url(database)

    return RunParameters(environment=environment, database=database, processes=selected, run_id=run_id)
