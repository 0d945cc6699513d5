import logging
import os
from pathlib import Path
from typing import Optional


class RunIdFilter(logging.Filter):
    """Stamp every record with the run identifier so interleaved runs can be told apart."""

    def __init__(self, run_id: str = "GLOBAL") -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        return True


def configure_logging(level: str = "INFO", file_path: Optional[str] = None, run_id: str = "GLOBAL") -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    run_filter = RunIdFilter(run_id or "GLOBAL")
    for handler in handlers:
        handler.addFilter(run_filter)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s [%(run_id)s] %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # the CLI reconfigures once the config and run id are known
    )

    # Reduce noise from chatty libraries
    for noisy in ("playwright", "urllib3", "sqlalchemy"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
