from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    audit_file: str = "",
    out_dir: str = "data",
    run_id: str = "",
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Zip screenshots/HTML captured during a failed run together with the run log and activity log.

    Excludes secrets (.env, config.yaml, stored session files).
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    rid = "".join(ch for ch in (run_id or "") if ch.isalnum() or ch in "-_")
    rid_part = f"_{rid}" if rid else ""
    out_path = out_root / f"debug_bundle{rid_part}_{stamp}.zip"

    dbg = Path(debug_dir)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # a file vanishing mid-bundle should not fail the bundle
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        for raw in (log_file, audit_file):
            if raw:
                _add_file(z, Path(raw), arcname=Path(raw).name)

        if dbg.exists() and dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(dbg)
                _add_file(z, p, arcname=str(Path("debug") / rel))

        if extra_paths:
            for raw in extra_paths:
                p = Path(raw)
                if p.is_file():
                    _add_file(z, p, arcname=str(Path("extra") / p.name))

    return out_path
