import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from playwright.async_api import async_playwright

from errors import SessionError
from retry import PAGE_POLICY, PROVISION_POLICY, RetryExhausted, RetryPolicy, retry_async
from settings import Settings

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; QA-Autopilot/1.0)"
CONNECT_TIMEOUT_MS = 30000
PAGE_TIMEOUT_MS = 30000


@dataclass
class BrowserSession:
    id: str
    browser_type: str
    provider: str
    browser: Any
    ws_endpoint: str | None = None
    playwright: Any = None
    contexts: list = field(default_factory=list)
    closed: bool = False


class SessionManager:
    """Provisions a remote browser, opens isolated pages on it, and releases it."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        connect: Callable[[str, str | None], Awaitable[tuple[Any, Any]]] | None = None,
        provision_policy: RetryPolicy = PROVISION_POLICY,
        page_policy: RetryPolicy = PAGE_POLICY,
    ):
        self.settings = settings
        self.client = client
        self.connect = connect or self._connect_playwright
        self.provision_policy = provision_policy
        self.page_policy = page_policy

    # Provisioning

    async def initialize_session(self, browser_type: str = "chrome") -> BrowserSession:
        async def attempt(_attempt: int) -> BrowserSession:
            session = await self._open_session(browser_type)
            if not await self.is_alive(session):
                await self._release(session)
                raise SessionError("Browser session health check failed")
            return session

        try:
            session = await retry_async(attempt, self.provision_policy, describe="Browser initialization")
        except RetryExhausted as e:
            raise SessionError(
                f"Failed to initialize browser after {e.attempts} attempts: {e.last_error}"
            ) from e.last_error
        logger.info(f"Browser initialized: {session.provider} session {session.id} ({session.browser_type})")
        return session

    async def _open_session(self, browser_type: str) -> BrowserSession:
        engine = "firefox" if browser_type == "firefox" else "chrome"
        if self.settings.browser_provider == "local":
            browser, playwright = await self.connect(engine, None)
            return BrowserSession(
                id=f"local-{uuid.uuid4().hex[:8]}",
                browser_type=engine,
                provider="local",
                browser=browser,
                playwright=playwright,
            )

        response = await self.client.post(
            f"{self.settings.browserless_api_url}/browser",
            params={"token": self.settings.browserless_api_key},
            json={
                "browser": engine,
                "headless": self.settings.headless,
                "timeout": CONNECT_TIMEOUT_MS,
                "ignoreHTTPSErrors": True,
            },
        )
        if response.status_code >= 400:
            raise SessionError(f"Browser provisioning API error {response.status_code}: {response.text}")
        data = response.json()
        session_id = data.get("id")
        ws_endpoint = data.get("webSocketDebuggerUrl")
        if not session_id or not ws_endpoint:
            raise SessionError(f"Browser provisioning API returned an incomplete session: {data}")
        logger.info(f"Provisioned browser session {session_id}")

        session = BrowserSession(
            id=session_id,
            browser_type=engine,
            provider="browserless",
            browser=None,
            ws_endpoint=ws_endpoint,
        )
        try:
            session.browser, session.playwright = await self.connect(engine, ws_endpoint)
        except Exception:
            await self._release(session)
            raise
        return session

    async def _connect_playwright(self, engine: str, ws_endpoint: str | None) -> tuple[Any, Any]:
        playwright = await async_playwright().start()
        try:
            if ws_endpoint is None:
                launcher = playwright.firefox if engine == "firefox" else playwright.chromium
                browser = await launcher.launch(headless=self.settings.headless)
            elif engine == "firefox":
                browser = await playwright.firefox.connect(ws_endpoint, timeout=CONNECT_TIMEOUT_MS)
            else:
                browser = await playwright.chromium.connect_over_cdp(ws_endpoint, timeout=CONNECT_TIMEOUT_MS)
        except Exception:
            await playwright.stop()
            raise
        return browser, playwright

    async def is_alive(self, session: BrowserSession) -> bool:
        """Liveness probe: the connection is up and the provider still knows the session."""
        try:
            if session.browser is not None and not session.browser.is_connected():
                return False
            if session.provider != "browserless":
                return True
            response = await self.client.get(
                f"{self.settings.browserless_api_url}/sessions/{session.id}",
                params={"token": self.settings.browserless_api_key},
            )
            return response.status_code < 400
        except Exception as e:
            logger.error(f"Browser health check failed: {e}")
            return False

    # Pages

    async def create_page(self, session: BrowserSession):
        if session is None or session.closed:
            raise SessionError("Cannot create a page on a closed browser session")

        async def attempt(_attempt: int):
            context = await session.browser.new_context(
                viewport={"width": 1920, "height": 1080},
                user_agent=USER_AGENT,
                ignore_https_errors=True,
            )
            try:
                page = await context.new_page()
                await page.set_extra_http_headers({"Accept-Language": "en-US,en;q=0.9"})
                page.set_default_timeout(PAGE_TIMEOUT_MS)
                page.set_default_navigation_timeout(PAGE_TIMEOUT_MS)
                page.on("console", lambda msg: logger.debug(f"Browser console [{msg.type}]: {msg.text}"))
                page.on("pageerror", lambda error: logger.warning(f"Page error: {error}"))
            except Exception:
                await self._close_context(context)
                raise
            session.contexts.append(context)
            return page

        try:
            page = await retry_async(attempt, self.page_policy, describe="Page creation")
        except RetryExhausted as e:
            raise SessionError(f"Failed to create page after {e.attempts} attempts: {e.last_error}") from e.last_error
        logger.info(f"Page created on session {session.id}")
        return page

    async def close_page(self, session: BrowserSession, page) -> None:
        """Close a page along with the context it was opened in."""
        context = page.context
        if context in session.contexts:
            session.contexts.remove(context)
        await self._close_context(context)

    async def _close_context(self, context) -> None:
        try:
            await context.close()
        except Exception as e:
            logger.warning(f"Error closing browser context: {e}")

    # Teardown

    async def close(self, session: BrowserSession | None) -> None:
        """Release a session. Safe to call twice or with no session at all."""
        if session is None:
            logger.info("No browser session to close")
            return
        if session.closed:
            return
        session.closed = True
        logger.info(f"Closing browser session {session.id}...")
        await self._release(session)

    async def _release(self, session: BrowserSession) -> None:
        if session.browser is not None:
            try:
                await session.browser.close()
            except Exception as e:
                logger.error(f"Error closing browser for session {session.id}: {e}")
        if session.playwright is not None:
            try:
                await session.playwright.stop()
            except Exception as e:
                logger.error(f"Error stopping playwright for session {session.id}: {e}")
        if session.provider == "browserless":
            try:
                await self.client.delete(
                    f"{self.settings.browserless_api_url}/browser/{session.id}",
                    params={"token": self.settings.browserless_api_key},
                )
            except Exception as e:
                logger.error(f"Error releasing provider session {session.id}: {e}")
