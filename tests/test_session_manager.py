from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from errors import SessionError
from retry import RetryPolicy
from session_manager import SessionManager

NO_WAIT = RetryPolicy(max_attempts=3, backoff=lambda attempt: 0)
NO_WAIT_PAGE = RetryPolicy(max_attempts=2, backoff=lambda attempt: 0)


class FakeBrowser:
    def __init__(self, fail_contexts: int = 0, fail_pages: int = 0):
        self.connected = True
        self.close = AsyncMock()
        self.fail_contexts = fail_contexts
        self.fail_pages = fail_pages
        self.contexts = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        if self.fail_contexts:
            self.fail_contexts -= 1
            raise RuntimeError("Target closed")
        context = MagicMock()
        page = MagicMock()
        page.set_extra_http_headers = AsyncMock()
        page.context = context
        context.options = options
        context.close = AsyncMock()
        if self.fail_pages:
            self.fail_pages -= 1
            context.new_page = AsyncMock(side_effect=RuntimeError("Page crashed"))
        else:
            context.new_page = AsyncMock(return_value=page)
        self.contexts.append(context)
        return context


class Provider:
    """Records calls to a Browserless-style API and answers from a script."""

    def __init__(self, provision=None, liveness=None):
        self.requests = []
        self.provision = list(provision or [200])
        self.liveness = list(liveness or [200])

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if request.method == "POST":
            status = self.provision.pop(0) if len(self.provision) > 1 else self.provision[0]
            if status != 200:
                return httpx.Response(status, text="no capacity")
            n = len(self.calls("POST"))
            return httpx.Response(200, json={"id": f"s{n}", "webSocketDebuggerUrl": f"wss://bl/s{n}"})
        if request.method == "GET":
            status = self.liveness.pop(0) if len(self.liveness) > 1 else self.liveness[0]
            return httpx.Response(status, json={})
        return httpx.Response(204)

    def calls(self, method):
        return [r for r in self.requests if r[0] == method]


def make_manager(settings, provider, browsers=None):
    browsers = browsers if browsers is not None else []

    async def connect(engine, ws_endpoint):
        browser = FakeBrowser()
        browsers.append((engine, ws_endpoint, browser))
        return browser, None

    client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    return SessionManager(settings, client, connect=connect, provision_policy=NO_WAIT, page_policy=NO_WAIT_PAGE)


class TestInitializeSession:
    @pytest.mark.asyncio
    async def test_provisions_and_connects(self, settings):
        provider = Provider()
        browsers = []
        manager = make_manager(settings, provider, browsers)

        session = await manager.initialize_session("chrome")

        assert session.id == "s1"
        assert session.ws_endpoint == "wss://bl/s1"
        assert browsers[0][:2] == ("chrome", "wss://bl/s1")
        assert provider.requests == [("POST", "/browser"), ("GET", "/sessions/s1")]

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, settings):
        provider = Provider(provision=[503])
        manager = make_manager(settings, provider)

        with pytest.raises(SessionError, match="after 3 attempts"):
            await manager.initialize_session("chrome")

        assert len(provider.calls("POST")) == 3

    @pytest.mark.asyncio
    async def test_failed_liveness_releases_and_retries(self, settings):
        provider = Provider(liveness=[404, 200])
        browsers = []
        manager = make_manager(settings, provider, browsers)

        session = await manager.initialize_session("chrome")

        assert session.id == "s2"
        assert ("DELETE", "/browser/s1") in provider.requests
        browsers[0][2].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_firefox_engine(self, settings):
        browsers = []
        manager = make_manager(settings, Provider(), browsers)
        session = await manager.initialize_session("firefox")
        assert session.browser_type == "firefox"
        assert browsers[0][0] == "firefox"

    @pytest.mark.asyncio
    async def test_local_provider_skips_api(self, settings):
        provider = Provider()
        manager = make_manager(replace(settings, browser_provider="local"), provider)

        session = await manager.initialize_session("chrome")

        assert session.provider == "local"
        assert provider.requests == []


class TestCreatePage:
    @pytest.mark.asyncio
    async def test_isolated_context_options(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()

        page = await manager.create_page(session)

        options = session.contexts[0].options
        assert options["viewport"] == {"width": 1920, "height": 1080}
        assert options["ignore_https_errors"] is True
        page.set_default_timeout.assert_called_once_with(30000)

    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        session.browser.fail_contexts = 5

        with pytest.raises(SessionError, match="Failed to create page after 2 attempts"):
            await manager.create_page(session)

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        session.browser.fail_contexts = 1
        assert await manager.create_page(session) is not None

    @pytest.mark.asyncio
    async def test_context_closed_when_page_setup_fails(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        session.browser.fail_pages = 1

        page = await manager.create_page(session)

        broken, good = session.browser.contexts
        broken.close.assert_awaited_once()
        assert session.contexts == [good]
        assert page.context is good

    @pytest.mark.asyncio
    async def test_close_page_closes_its_context(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        page = await manager.create_page(session)

        await manager.close_page(session, page)

        page.context.close.assert_awaited_once()
        assert session.contexts == []

    @pytest.mark.asyncio
    async def test_closed_session(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        await manager.close(session)
        with pytest.raises(SessionError):
            await manager.create_page(session)


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, settings):
        provider = Provider()
        manager = make_manager(settings, provider)
        session = await manager.initialize_session()

        await manager.close(session)
        await manager.close(session)

        session.browser.close.assert_awaited_once()
        assert provider.calls("DELETE") == [("DELETE", "/browser/s1")]
        assert session.closed

    @pytest.mark.asyncio
    async def test_close_none(self, settings):
        await make_manager(settings, Provider()).close(None)

    @pytest.mark.asyncio
    async def test_close_never_raises(self, settings):
        manager = make_manager(settings, Provider())
        session = await manager.initialize_session()
        session.browser.close.side_effect = RuntimeError("already gone")
        await manager.close(session)
        assert session.closed
