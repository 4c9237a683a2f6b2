"""Pool of headless Chromium browsers and reusable browsing contexts.

The pool is an explicit resource owned by the process entry point (FastAPI
lifespan or arq worker startup): it is started once, handed to the crawler,
and shut down on exit. A crawl never launches a browser itself.

Limits:
- at most ``max_browsers`` browser processes
- at most ``max_contexts_per_browser`` contexts leased per browser
- a context is recycled (pages closed, cookies/storage cleared) until it has
  served ``max_uses_per_context`` leases, then it is closed
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from app.core.errors import PoolExhaustedError

logger = logging.getLogger(__name__)

_CLEAR_STORAGE_JS = """
() => {
    try { window.localStorage.clear(); } catch (e) {}
    try { window.sessionStorage.clear(); } catch (e) {}
}
"""

_REAP_INTERVAL_SECONDS = 30.0

Launcher = Callable[[], Awaitable[Any]]


@dataclass
class _PooledContext:
    context: Any
    browser_id: str
    uses: int = 0


@dataclass
class _PooledBrowser:
    id: str
    browser: Any
    leased: int = 0
    idle: list[_PooledContext] = field(default_factory=list)
    last_used: float = field(default_factory=time.monotonic)


class ContextLease:
    """A browsing context checked out of the pool.

    ``release()`` is idempotent; prefer ``BrowserPool.lease()`` which
    releases on every exit path.
    """

    def __init__(self, pool: "BrowserPool", pooled: _PooledContext):
        self._pool = pool
        self._pooled = pooled
        self.released = False

    @property
    def context(self) -> Any:
        return self._pooled.context

    @property
    def browser_id(self) -> str:
        return self._pooled.browser_id

    async def release(self) -> None:
        await self._pool.release_context(self)


class BrowserPool:
    """Bounded pool of Playwright browsers and browsing contexts."""

    def __init__(
        self,
        max_browsers: int = 3,
        max_contexts_per_browser: int = 5,
        max_uses_per_context: int = 25,
        idle_timeout: float = 300.0,
        launcher: Launcher | None = None,
        context_options: dict[str, Any] | None = None,
        launch_args: list[str] | None = None,
    ):
        if max_browsers < 1 or max_contexts_per_browser < 1:
            raise ValueError("browser pool limits must be positive")
        self.max_browsers = max_browsers
        self.max_contexts_per_browser = max_contexts_per_browser
        self.max_uses_per_context = max(1, max_uses_per_context)
        self.idle_timeout = idle_timeout
        self.context_options = context_options or {}
        self.launch_args = launch_args or ["--no-sandbox", "--disable-dev-shm-usage"]

        self._launcher = launcher
        self._playwright: Any = None
        self._browsers: dict[str, _PooledBrowser] = {}
        self._launching = 0
        self._cond = asyncio.Condition()
        self._reaper: asyncio.Task | None = None
        self._started = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Any, launcher: Launcher | None = None) -> "BrowserPool":
        return cls(
            max_browsers=settings.browser_max_browsers,
            max_contexts_per_browser=settings.browser_max_contexts_per_browser,
            max_uses_per_context=settings.browser_max_uses_per_context,
            idle_timeout=settings.browser_idle_timeout_seconds,
            launcher=launcher,
            context_options={"user_agent": settings.browser_user_agent},
            launch_args=list(settings.browser_launch_args),
        )

    @property
    def capacity(self) -> int:
        """Maximum number of contexts that can be leased at once."""
        return self.max_browsers * self.max_contexts_per_browser

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the Playwright driver (if no launcher was injected) and the idle reaper."""
        if self._started:
            return
        if self._launcher is None:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._launcher = self._launch_chromium
        self._closed = False
        self._started = True
        self._reaper = asyncio.create_task(self._reap_loop())
        logger.info(
            "Browser pool started (max %d browsers x %d contexts)",
            self.max_browsers,
            self.max_contexts_per_browser,
        )

    async def shutdown(self) -> None:
        """Close every browser and stop the driver."""
        logger.info("Shutting down browser pool...")
        self._closed = True
        if self._reaper:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        async with self._cond:
            browsers = list(self._browsers.values())
            self._browsers.clear()
            self._cond.notify_all()

        for pooled in browsers:
            await self._close_quietly(pooled.browser)

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._started = False

    async def _launch_chromium(self) -> Any:
        return await self._playwright.chromium.launch(headless=True, args=self.launch_args)

    # ── Leasing ────────────────────────────────────────────────────────

    async def acquire_context(
        self,
        wait: bool = True,
        timeout: float | None = None,
    ) -> ContextLease:
        """Check out a browsing context.

        Args:
            wait: Block until a slot frees up. When False, a full pool raises
                PoolExhaustedError immediately.
            timeout: Upper bound in seconds on the wait.

        Raises:
            PoolExhaustedError: Pool full (fail-fast or wait timed out), shut
                down, or a browser/context could not be created.
        """
        if not self._started:
            raise PoolExhaustedError("Browser pool is not started")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        browser: _PooledBrowser | None = None

        async with self._cond:
            while True:
                if self._closed:
                    raise PoolExhaustedError("Browser pool is shut down")
                browser = self._browser_with_free_slot()
                if browser is not None:
                    browser.leased += 1
                    browser.last_used = time.monotonic()
                    break
                if len(self._browsers) + self._launching < self.max_browsers:
                    self._launching += 1
                    break
                if not wait:
                    raise PoolExhaustedError(
                        f"All {self.capacity} browsing contexts are in use"
                    )
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise PoolExhaustedError("Timed out waiting for a browsing context")
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise PoolExhaustedError("Timed out waiting for a browsing context")

        if browser is None:
            browser = await self._launch_browser()
            launched = True
        else:
            launched = False

        try:
            if launched:
                # Waiters may fit in the new browser's remaining slots
                await self._notify_waiters(all_waiters=True)
            pooled_context = await self._checkout_context(browser)
        except Exception as e:
            await self._return_slot(browser)
            raise PoolExhaustedError(f"Could not create browsing context: {e}") from e
        except BaseException:
            await self._return_slot(browser)
            raise

        return ContextLease(self, pooled_context)

    @asynccontextmanager
    async def lease(
        self,
        wait: bool = True,
        timeout: float | None = None,
    ) -> AsyncIterator[Any]:
        """Use as ``async with pool.lease() as context:``; released on every exit path."""
        lease = await self.acquire_context(wait=wait, timeout=timeout)
        try:
            yield lease.context
        finally:
            await lease.release()

    async def release_context(self, lease: ContextLease) -> None:
        """Return a context to the pool, recycling or closing it."""
        if lease.released:
            return
        lease.released = True
        pooled = lease._pooled
        pooled.uses += 1

        recycle = not self._closed and pooled.uses < self.max_uses_per_context
        try:
            if recycle:
                try:
                    await self._reset_context(pooled.context)
                except Exception as e:
                    logger.warning("Failed to reset browsing context, closing it: %s", e)
                    recycle = False
            if not recycle:
                await self._close_quietly(pooled.context)
        except BaseException:
            # Interrupted mid-reset: drop the context, still free the slot
            recycle = False
            raise
        finally:
            async with self._cond:
                browser = self._browsers.get(pooled.browser_id)
                if browser is not None:
                    browser.leased = max(0, browser.leased - 1)
                    browser.last_used = time.monotonic()
                    if recycle:
                        browser.idle.append(pooled)
                elif recycle:
                    # Browser was reaped or shut down while the context was out
                    await self._close_quietly(pooled.context)
                self._cond.notify()

    def _browser_with_free_slot(self) -> _PooledBrowser | None:
        for browser_id, browser in list(self._browsers.items()):
            if not self._is_connected(browser.browser):
                logger.warning("Dropping disconnected browser %s", browser_id)
                del self._browsers[browser_id]
                continue
            if browser.leased < self.max_contexts_per_browser:
                return browser
        return None

    async def _launch_browser(self) -> _PooledBrowser:
        # The launch slot is returned on every exit, cancellation included
        try:
            raw = await self._launcher()
        except Exception as e:
            self._launching -= 1
            await self._notify_waiters()
            logger.error("Failed to launch browser: %s", e)
            raise PoolExhaustedError(f"Failed to launch browser: {e}") from e
        except BaseException:
            self._launching -= 1
            await self._notify_waiters()
            raise

        self._launching -= 1
        if self._closed:
            await self._close_quietly(raw)
            raise PoolExhaustedError("Browser pool is shut down")
        pooled = _PooledBrowser(id=uuid.uuid4().hex[:8], browser=raw, leased=1)
        self._browsers[pooled.id] = pooled
        logger.info(
            "Created new browser %s (%d/%d browsers)",
            pooled.id,
            len(self._browsers),
            self.max_browsers,
        )
        return pooled

    async def _return_slot(self, browser: _PooledBrowser) -> None:
        browser.leased = max(0, browser.leased - 1)
        await self._notify_waiters()

    async def _notify_waiters(self, all_waiters: bool = False) -> None:
        async with self._cond:
            if all_waiters:
                self._cond.notify_all()
            else:
                self._cond.notify()

    async def _checkout_context(self, browser: _PooledBrowser) -> _PooledContext:
        async with self._cond:
            if browser.idle:
                return browser.idle.pop()
        context = await browser.browser.new_context(**self.context_options)
        return _PooledContext(context=context, browser_id=browser.id)

    async def _reset_context(self, context: Any) -> None:
        for page in list(context.pages):
            try:
                await page.evaluate(_CLEAR_STORAGE_JS)
            except Exception:
                logger.debug("Could not clear storage on %s", getattr(page, "url", "?"))
            await page.close()
        await context.clear_cookies()
        await context.clear_permissions()

    # ── Maintenance ────────────────────────────────────────────────────

    async def reap_idle(self) -> int:
        """Close browsers with no leased context that sat idle past the timeout."""
        now = time.monotonic()
        to_close: list[_PooledBrowser] = []
        async with self._cond:
            for browser_id, browser in list(self._browsers.items()):
                if browser.leased == 0 and now - browser.last_used > self.idle_timeout:
                    to_close.append(browser)
                    del self._browsers[browser_id]
            if to_close:
                self._cond.notify_all()

        for browser in to_close:
            logger.info("Removing idle browser %s", browser.id)
            for pooled in browser.idle:
                await self._close_quietly(pooled.context)
            await self._close_quietly(browser.browser)
        return len(to_close)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(_REAP_INTERVAL_SECONDS)
            try:
                await self.reap_idle()
            except Exception:
                logger.exception("Browser pool reaper failed")

    def get_stats(self) -> dict[str, Any]:
        """Current usage against the configured limits."""
        browsers = list(self._browsers.values())
        in_use = sum(b.leased for b in browsers)
        idle = sum(len(b.idle) for b in browsers)
        now = time.monotonic()
        return {
            "browsers": len(browsers),
            "max_browsers": self.max_browsers,
            "contexts": in_use + idle,
            "contexts_in_use": in_use,
            "idle_contexts": idle,
            "max_contexts_per_browser": self.max_contexts_per_browser,
            "max_uses_per_context": self.max_uses_per_context,
            "details": [
                {
                    "id": b.id,
                    "contexts_in_use": b.leased,
                    "idle_contexts": len(b.idle),
                    "idle_seconds": round(now - b.last_used, 1),
                }
                for b in browsers
            ],
        }

    @staticmethod
    def _is_connected(browser: Any) -> bool:
        is_connected = getattr(browser, "is_connected", None)
        return is_connected() if callable(is_connected) else True

    @staticmethod
    async def _close_quietly(resource: Any) -> None:
        try:
            await resource.close()
        except Exception as e:
            logger.debug("Ignoring close error: %s", e)
