"""Post-condition waits applied after a step, driven by its after flags."""

from __future__ import annotations

import asyncio
import logging
import math
import time

from flowreplay.config import settings
from flowreplay.runtime.ports import TabController

logger = logging.getLogger("flowreplay.runtime.waits")


def _budget_seconds(timeout_ms: float) -> float:
    if math.isinf(timeout_ms):
        return math.inf
    return max(0.0, timeout_ms) / 1000


async def wait_for_navigation_done(
    tabs: TabController,
    prev_url: str,
    timeout_ms: float,
    poll_ms: int | None = None,
) -> None:
    """Poll the active tab until it has finished loading after a navigation.

    Done means status "complete" and either the url moved away from
    ``prev_url`` or the tab went through a "loading" phase (same-url reload).
    Raises ``TimeoutError`` when the budget runs out.
    """
    poll = (poll_ms or settings.NAV_POLL_INTERVAL_MS) / 1000
    deadline = time.monotonic() + _budget_seconds(timeout_ms)
    saw_loading = False
    while True:
        info = await tabs.get_active_tab_info()
        if info.status == "loading":
            saw_loading = True
        elif info.status == "complete" and (info.url != prev_url or saw_loading):
            return
        if time.monotonic() >= deadline:
            raise TimeoutError(f"navigation did not complete within {timeout_ms:.0f} ms")
        await asyncio.sleep(poll)


async def maybe_quick_wait_for_nav(
    tabs: TabController,
    prev_url: str,
    timeout_ms: float,
) -> None:
    """After a click: if a navigation starts within a short window, wait for it."""
    window = min(settings.QUICK_NAV_WAIT_MS, timeout_ms)
    poll = settings.NAV_POLL_INTERVAL_MS / 1000
    deadline = time.monotonic() + _budget_seconds(window)
    while time.monotonic() < deadline:
        info = await tabs.get_active_tab_info()
        if info.status == "loading" or (info.url and info.url != prev_url):
            await wait_for_navigation_done(tabs, prev_url, timeout_ms)
            return
        await asyncio.sleep(poll)


async def prime_page(tabs: TabController) -> None:
    """Let the controller warm up page inspection on web pages."""
    info = await tabs.get_active_tab_info()
    if info.url.startswith(("http:", "https:", "file:")):
        await tabs.prime_page()
