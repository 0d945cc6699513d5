from __future__ import annotations

import json
import logging
import shutil
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence

from playwright.sync_api import Browser, ElementHandle, Page, Playwright, sync_playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..config import PortalConfig


logger = logging.getLogger(__name__)


class PlaywrightDriver:
    """
    `PortalDriver` backed by a Playwright sync `Page`.

    Element handles are live DOM references; they raise once the listing reloads, which callers treat as a
    recoverable read error.
    """

    def __init__(self, page: Page, *, navigation_timeout_ms: int = 60_000, debug_dir: str = "data/debug") -> None:
        self.page = page
        self.navigation_timeout_ms = navigation_timeout_ms
        self.debug_dir = debug_dir

    def goto(self, url: str) -> None:
        self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)

    def locate(self, ref: str, *, within: Optional[ElementHandle] = None) -> Optional[ElementHandle]:
        scope = within if within is not None else self.page
        return scope.query_selector(ref)

    def locate_all(self, ref: str, *, within: Optional[ElementHandle] = None) -> Sequence[ElementHandle]:
        scope = within if within is not None else self.page
        return scope.query_selector_all(ref)

    def wait_for(self, ref: str, *, timeout_ms: int) -> Optional[ElementHandle]:
        try:
            return self.page.wait_for_selector(ref, state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return None

    def text(self, handle: ElementHandle) -> str:
        return handle.inner_text() or ""

    def click(self, handle: ElementHandle) -> None:
        try:
            handle.scroll_into_view_if_needed()
            handle.click()
        except PlaywrightTimeoutError as e:
            # Overlays on the manual-execution page sometimes swallow pointer clicks.
            logger.warning("Pointer click timed out (%s); clicking via DOM.", e)
            handle.evaluate("el => el.click()")

    def check(self, handle: ElementHandle) -> None:
        handle.check()

    def wait(self, ms: int) -> None:
        if ms > 0:
            self.page.wait_for_timeout(ms)

    def save_debug(self, name_prefix: str) -> None:
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(self.page.content(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)


def _storage_state_backup_path(state_path: Path) -> Path:
    return state_path.with_name(state_path.name + ".bak")


def _looks_like_storage_state(path: Path) -> bool:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    return isinstance(data, dict) and ("cookies" in data or "origins" in data)


def _quarantine_file(path: Path) -> None:
    try:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path.replace(path.with_name(f"{path.name}.corrupt-{stamp}"))
    except OSError:
        logger.debug("Failed to quarantine file=%s", path, exc_info=True)


def validate_or_restore_storage_state(state_path: Path) -> bool:
    """
    Return True if `state_path` can be used as the Playwright storage_state.

    A corrupted file is quarantined and restored from `<file>.bak` when that backup is valid.
    """
    if not state_path.exists():
        return False
    if _looks_like_storage_state(state_path):
        return True

    logger.warning("Stored session is not valid JSON; attempting restore from backup: %s", state_path)
    _quarantine_file(state_path)

    bak = _storage_state_backup_path(state_path)
    if bak.exists() and _looks_like_storage_state(bak):
        shutil.copy2(bak, state_path)
        logger.warning("Restored stored session from backup: %s", bak)
        return True
    return False


def backup_storage_state(state_path: Path) -> None:
    try:
        if _looks_like_storage_state(state_path):
            shutil.copy2(state_path, _storage_state_backup_path(state_path))
    except OSError:
        logger.debug("Failed to write stored session backup.", exc_info=True)


def _launch(p: Playwright, portal: PortalConfig) -> Browser:
    # Configured channel first, then Chrome, then Playwright's bundled Chromium.
    channels: list[Optional[str]] = []
    for channel in (portal.browser_channel or None, "chrome", None):
        if channel not in channels:
            channels.append(channel)

    last_error: Optional[Exception] = None
    for channel in channels:
        kwargs: dict = {"headless": portal.headless, "args": ["--ignore-certificate-errors"]}
        if channel:
            kwargs["channel"] = channel
        try:
            return p.chromium.launch(**kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg and "is not found" not in msg and "not installed" not in msg:
                raise
            logger.warning("Browser channel %s unavailable; trying next. (%s)", channel or "chromium", msg.splitlines()[0])
            last_error = e
    assert last_error is not None
    raise last_error


@contextmanager
def open_portal_session(portal: PortalConfig) -> Iterator[PlaywrightDriver]:
    """
    Open an isolated browser context from the stored session and yield a driver for its page.

    Interactive login is never attempted here; the stored session is produced separately.
    """
    state_path = Path(portal.storage_state_path) if portal.storage_state_path else None

    with sync_playwright() as p:
        browser = _launch(p, portal)
        try:
            ctx_kwargs: dict = {"ignore_https_errors": portal.ignore_https_errors}
            if not portal.headless:
                ctx_kwargs["no_viewport"] = True
            if state_path is not None and validate_or_restore_storage_state(state_path):
                ctx_kwargs["storage_state"] = str(state_path)
            else:
                logger.warning("No usable stored session at %s; the portal may ask for a login.", state_path)

            ctx = browser.new_context(**ctx_kwargs)
            try:
                page = ctx.new_page()
                yield PlaywrightDriver(
                    page,
                    navigation_timeout_ms=portal.navigation_timeout_ms,
                    debug_dir=portal.debug_dir,
                )
                if state_path is not None and "storage_state" in ctx_kwargs:
                    backup_storage_state(state_path)
            finally:
                ctx.close()
        finally:
            browser.close()
