from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .audit import AuditSink
from .util.text import normalize_text


logger = logging.getLogger(__name__)

# SQL*Plus-style terminator: a line holding only "/" ends a PL/SQL block.
_BLOCK_TERMINATOR = re.compile(r"^[ \t]*/[ \t]*$", re.MULTILINE)


def split_statements(script: str) -> list[str]:
    """
    Split a script into statements. Scripts containing "/" terminator lines are split on those (PL/SQL
    blocks keep their inner semicolons); otherwise on semicolons.
    """
    if _BLOCK_TERMINATOR.search(script):
        parts = _BLOCK_TERMINATOR.split(script)
    else:
        parts = script.split(";")
    out = []
    for part in parts:
        stmt = part.strip()
        if stmt and not all(line.strip().startswith("--") for line in stmt.splitlines() if line.strip()):
            out.append(stmt)
    return out


class PreScriptRunner:
    """
    Run the SQL scripts configured for a process before it is triggered.

    Failures are logged (and audited) and never stop the run.
    """

    def __init__(
        self,
        engine: Union[Engine, str],
        scripts: Mapping[str, Sequence[str]],
        *,
        base_dir: Union[str, Path] = "scripts/sql",
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._engine = sa.create_engine(engine) if isinstance(engine, str) else engine
        self.scripts = {name: tuple(files) for name, files in scripts.items()}
        self.base_dir = Path(base_dir)
        self.audit = audit

    def scripts_for(self, process_name: str) -> tuple[str, ...]:
        wanted = normalize_text(process_name)
        if not wanted:
            return ()
        for name, files in self.scripts.items():
            key = normalize_text(name)
            if key and (key in wanted or wanted in key):
                return files
        return ()

    def run_for(self, process_name: str) -> int:
        """
        Run every script configured for `process_name`, in order. Returns how many succeeded.
        """
        files = self.scripts_for(process_name)
        if not files:
            logger.debug("No pre-scripts for %r", process_name)
            return 0

        ok = 0
        for name in files:
            if self._run_script(process_name, name):
                ok += 1
        return ok

    def _run_script(self, process_name: str, name: str) -> bool:
        path = self.base_dir / name
        logger.info("Running pre-script %s before %r", name, process_name)
        try:
            statements = split_statements(path.read_text(encoding="utf-8"))
            with self._engine.begin() as conn:
                for stmt in statements:
                    conn.exec_driver_sql(stmt)
        except (OSError, UnicodeDecodeError, SQLAlchemyError) as e:
            logger.warning("Pre-script %s for %r failed; continuing: %s", name, process_name, e)
            if self.audit is not None:
                self.audit.write(f"Pre-script {name} for {process_name} failed: {e}")
            return False

        logger.info("Pre-script %s done (%d statement(s))", name, len(statements))
        if self.audit is not None:
            self.audit.write(f"Pre-script {name} for {process_name} executed")
        return True
