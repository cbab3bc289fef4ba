"""One warm, logged-in browser session shared by every request.

BrowserSession owns the Chrome driver and its single page. Access to the page
goes through a PagePool lease so remote operations never interleave.
SessionContext owns "the current session" and replaces it when the
credentials change.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Deque, Generic, Iterable, TypeVar

from selenium.common.exceptions import WebDriverException
from tenacity import RetryCallState, retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from apobot.config import Settings
from apobot.credentials import has_credentials_changed
from apobot.domain import AuthError, Credentials, LeaseTimeoutError, SessionNotReadyError, SessionState
from apobot.selenium_provider import LoginPage, RemotePage, start_driver

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Keep-alive yields to real traffic: it gives up if the page is not free within this time.
KEEP_ALIVE_LEASE_TIMEOUT_S = 1.0
KEEP_ALIVE_PROBE_TIMEOUT_S = 20.0


@dataclass(frozen=True)
class SessionEvent:
    kind: str  # state_change | error | session_expired | recovered
    state: SessionState
    previous_state: SessionState | None = None
    error: BaseException | None = None


SessionListener = Callable[[SessionEvent], None]


def log_session_event(event: SessionEvent) -> None:
    if event.kind == "state_change":
        logger.info(
            "Session state: %s -> %s",
            event.previous_state.value if event.previous_state else None,
            event.state.value,
        )
    elif event.kind == "error":
        logger.error("Session error (%s: %s)", type(event.error).__name__, event.error)
    elif event.kind == "session_expired":
        logger.warning("Session expired, recovering...")
    elif event.kind == "recovered":
        logger.info("Session recovered")


class PagePool(Generic[T]):
    """Lease/release over a fixed set of pages; waiters are served in arrival order."""

    def __init__(self, pages: Iterable[T]):
        self._free: Deque[T] = collections.deque(pages)
        self._size = len(self._free)
        self._waiters: Deque[asyncio.Future[T]] = collections.deque()

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle(self) -> bool:
        return len(self._free) == self._size and not self._waiters

    async def acquire(self, timeout: float | None = None) -> T:
        if self._free and not self._waiters:
            return self._free.popleft()

        waiter: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError as e:
            self._abandon(waiter)
            raise LeaseTimeoutError(f"No page became free within {timeout}s") from e
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def _abandon(self, waiter: asyncio.Future[T]) -> None:
        if waiter.done() and not waiter.cancelled():
            # Handed over just as we gave up; pass it on.
            self.release(waiter.result())
            return
        waiter.cancel()
        with contextlib.suppress(ValueError):
            self._waiters.remove(waiter)

    def release(self, page: T) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(page)
                return
        self._free.append(page)

    @contextlib.asynccontextmanager
    async def lease(self, timeout: float | None = None):
        page = await self.acquire(timeout)
        try:
            yield page
        finally:
            self.release(page)


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_before_attempt(retry_state: RetryCallState) -> None:
    logger.info("Login attempt %s: starting browser", retry_state.attempt_number)


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        logger.warning("Login attempt %s failed (%s)", retry_state.attempt_number, _short_exc(retry_state))


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None) or 0
    logger.info("Next login attempt %s in %.0f s", retry_state.attempt_number + 1, sleep_seconds)


class BrowserSession:
    """A logged-in browser for one set of credentials."""

    def __init__(self, credentials: Credentials, settings: Settings):
        self.credentials = credentials
        self.settings = settings

        self._driver: Any = None
        self._page: RemotePage | None = None
        self._pool: PagePool[RemotePage] | None = None
        self._state = SessionState.NOT_INITIALIZED
        self._last_activity: dt.datetime | None = None
        self._listeners: list[SessionListener] = []
        self._keep_alive_task: asyncio.Task[None] | None = None

    # -- observers ------------------------------------------------------

    def get_state(self) -> SessionState:
        return self._state

    def get_last_activity_time(self) -> dt.datetime | None:
        return self._last_activity

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Session listener failed on %s", event.kind, exc_info=True)

    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        self._emit(SessionEvent(kind="state_change", state=state, previous_state=previous))

    def _fail(self, error: BaseException) -> None:
        self._set_state(SessionState.ERROR)
        self._emit(SessionEvent(kind="error", state=self._state, error=error))

    def _touch(self) -> None:
        self._last_activity = dt.datetime.now(dt.timezone.utc)

    # -- browser (runs in a worker thread) ------------------------------

    def _launch(self) -> RemotePage:
        """Start a browser and sign in. Returns the logged-in page."""
        driver = start_driver(headless=self.settings.headless)
        try:
            page = RemotePage(driver, wait_seconds=max(1, self.settings.request_timeout_ms // 1000))
            page.goto(f"{self.settings.base_url}/")
            LoginPage(page).login(self.credentials.login_key, self.credentials.login_password)
            page.wait_for_selector("#col-main > div")
        except BaseException:
            try:
                driver.quit()
            except Exception:
                logger.warning("Failed to quit driver cleanly", exc_info=True)
            raise
        self._driver = driver
        return page

    def _launch_with_retry(self) -> RemotePage:
        decorated = retry(
            stop=stop_after_attempt(self.settings.login_retry_attempts),
            wait=wait_exponential(multiplier=2, min=2, max=4),
            retry=retry_if_not_exception_type(AuthError),
            before=_log_before_attempt,
            after=_log_after_attempt,
            before_sleep=_log_before_sleep,
            reraise=True,
        )(self._launch)
        return decorated()

    def _probe(self, page: RemotePage) -> bool:
        """Reload and check the ledger is still shown (not bounced to the login form)."""
        try:
            page.reload()
            page.wait_for_selector("#col-main > div", timeout=KEEP_ALIVE_PROBE_TIMEOUT_S)
            return LoginPage(page).is_logged_in()
        except WebDriverException as e:
            logger.warning("Keep-alive check failed (%s: %s)", type(e).__name__, e)
            return False

    def _quit(self) -> None:
        driver, self._driver = self._driver, None
        if driver is not None:
            driver.quit()

    # -- lifecycle ------------------------------------------------------

    async def start(self) -> None:
        self._set_state(SessionState.STARTING)
        try:
            page = await asyncio.to_thread(self._launch_with_retry)
        except Exception as e:
            self._fail(e)
            raise

        self._page = page
        # One driver backs one page; the pool only serialises access to it.
        self._pool = PagePool([page])
        self._touch()
        self._set_state(SessionState.READY)
        self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

    async def close(self) -> None:
        await self._stop_keep_alive()
        self._set_state(SessionState.CLOSED)
        await asyncio.to_thread(self._quit)

    async def force_close(self) -> None:
        task, self._keep_alive_task = self._keep_alive_task, None
        if task is not None:
            task.cancel()
        self._set_state(SessionState.CLOSED)

        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            driver.quit()
        except Exception:
            logger.warning("Failed to quit driver cleanly, stopping its service", exc_info=True)
            try:
                driver.service.stop()
            except Exception:
                logger.warning("Failed to stop driver service", exc_info=True)

    async def _stop_keep_alive(self) -> None:
        task, self._keep_alive_task = self._keep_alive_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -- leasing --------------------------------------------------------

    async def with_leased_page(self, callback: Callable[[RemotePage], R], timeout_ms: int | None = None) -> R:
        """Run ``callback(page)`` in a worker thread while holding the page lease.

        On timeout the lease is released and LeaseTimeoutError raised; the
        callback's thread is left to finish on its own.
        """
        if self._pool is None or self._state in (
            SessionState.NOT_INITIALIZED,
            SessionState.STARTING,
            SessionState.CLOSED,
            SessionState.ERROR,
        ):
            raise SessionNotReadyError(f"Session is not ready (state={self._state.value})")

        timeout_ms = timeout_ms or self.settings.request_timeout_ms
        page = await self._pool.acquire()
        try:
            if self._state not in (SessionState.READY, SessionState.BUSY):
                raise SessionNotReadyError(f"Session is not ready (state={self._state.value})")
            self._set_state(SessionState.BUSY)
            try:
                return await asyncio.wait_for(asyncio.to_thread(callback, page), timeout_ms / 1000)
            except asyncio.TimeoutError as e:
                logger.error("Leased page operation timed out after %s ms", timeout_ms)
                raise LeaseTimeoutError(f"Operation timed out after {timeout_ms} ms") from e
        finally:
            self._touch()
            self._pool.release(page)
            if self._state is SessionState.BUSY and self._pool.idle:
                self._set_state(SessionState.READY)

    # -- keep-alive -----------------------------------------------------

    async def _keep_alive_loop(self) -> None:
        interval = self.settings.keep_alive_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            if self._state is not SessionState.READY or self._pool is None or not self._pool.idle:
                continue
            await self.check_alive()

    async def check_alive(self) -> bool:
        """One keep-alive round. Returns False if the session had to be recovered (or could not be)."""
        if self._pool is None:
            return False
        try:
            page = await self._pool.acquire(timeout=KEEP_ALIVE_LEASE_TIMEOUT_S)
        except LeaseTimeoutError:
            return True

        try:
            if await asyncio.to_thread(self._probe, page):
                self._touch()
                return True
            await self._recover()
            return False
        finally:
            self._pool.release(self._page if self._page is not None else page)

    async def _recover(self) -> None:
        """Throw the browser away and log in again. Called with the lease held."""
        self._set_state(SessionState.RECOVERING)
        self._emit(SessionEvent(kind="session_expired", state=self._state))

        try:
            await asyncio.to_thread(self._quit)
        except Exception:
            logger.warning("Failed to quit expired browser", exc_info=True)

        try:
            self._page = await asyncio.to_thread(self._launch_with_retry)
        except Exception as e:
            self._fail(e)
            return

        self._touch()
        self._set_state(SessionState.READY)
        self._emit(SessionEvent(kind="recovered", state=self._state))


SessionFactory = Callable[[Credentials], BrowserSession]


class SessionContext:
    """Process-wide holder of the current session and the credentials it was made for."""

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: SessionFactory | None = None,
        listeners: Iterable[SessionListener] = (),
    ):
        self.settings = settings
        self._session_factory = session_factory or (lambda credentials: BrowserSession(credentials, settings))
        self._listeners = list(listeners) or [log_session_event]
        self._session: BrowserSession | None = None
        self._credentials: Credentials | None = None
        self._lock = asyncio.Lock()
        # Bumped on every (re)initialisation; lets queued callers see a start that failed while they waited.
        self._generation = 0
        self._failure: tuple[Credentials, BaseException] | None = None

    @property
    def session(self) -> BrowserSession | None:
        return self._session

    @property
    def has_credentials(self) -> bool:
        return self._credentials is not None

    @property
    def state(self) -> SessionState:
        return self._session.get_state() if self._session is not None else SessionState.NOT_INITIALIZED

    async def ensure_session(self, credentials: Credentials) -> BrowserSession:
        generation = self._generation
        async with self._lock:
            failure = self._failure
            if (
                failure is not None
                and self._generation != generation
                and not has_credentials_changed(failure[0], credentials)
            ):
                raise failure[1]

            session = self._session
            if (
                session is not None
                and not has_credentials_changed(self._credentials, credentials)
                and session.get_state() not in (SessionState.ERROR, SessionState.CLOSED)
            ):
                return session

            logger.info("Credentials changed or session unusable, reinitializing session...")
            return await self._replace(credentials)

    async def restart(self, credentials: Credentials) -> BrowserSession:
        async with self._lock:
            logger.info("Session restart requested")
            return await self._replace(credentials)

    async def shutdown(self) -> None:
        async with self._lock:
            old, self._session, self._credentials = self._session, None, None
            if old is not None:
                await self._discard(old)

    async def _discard(self, session: BrowserSession) -> None:
        # Listeners go first so a replaced session can never notify anyone.
        session.remove_all_listeners()
        try:
            await session.close()
        except Exception as e:
            logger.error("Error closing old session, forcing cleanup (%s: %s)", type(e).__name__, e)
            await session.force_close()

    async def _replace(self, credentials: Credentials) -> BrowserSession:
        old, self._session, self._credentials = self._session, None, None
        if old is not None:
            await self._discard(old)

        session = self._session_factory(credentials)
        for listener in self._listeners:
            session.add_listener(listener)

        self._generation += 1
        try:
            await session.start()
        except Exception as e:
            session.remove_all_listeners()
            self._failure = (credentials, e)
            raise

        self._failure = None
        self._session, self._credentials = session, credentials
        logger.info("Session initialized")
        return session
