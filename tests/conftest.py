"""Pytest fixtures: a fake Playwright page driven by a DOM snapshot."""

import re

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from models import Step, StepOutcome, TestCase
from session_manager import BrowserSession
from settings import Settings


def glob_matches(pattern: str, url: str) -> bool:
    regex = re.escape(pattern).replace(r"\*\*", ".*").replace(r"\*", "[^/]*")
    return re.fullmatch(regex, url) is not None


class FakeLocator:
    def __init__(self, page, selector: str):
        self.page = page
        self.selector = selector

    async def count(self) -> int:
        self.page.probes.append(self.selector)
        if self.selector in self.page.broken_selectors:
            raise ValueError(f"Unsupported selector: {self.selector}")
        return self.page.dom.get(self.selector, 0)


class FakeTextLocator:
    def __init__(self, page, text: str):
        self.page = page
        self.text = text

    @property
    def first(self):
        return self

    async def wait_for(self, state="visible", timeout=None):
        if self.text not in self.page.texts:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for text {self.text!r}")


class FakeKeyboard:
    def __init__(self, page):
        self.page = page

    async def press(self, key: str):
        self.page.calls.append(("press", key))


class FakePage:
    """Just enough of playwright's async Page for the engine.

    `dom` maps selector -> match count, `visible` lists selectors that are
    visible, `texts` lists text that appears on the page.
    """

    def __init__(self, dom=None, visible=None, texts=None, url="http://app.test/", title="App"):
        self.dom = dict(dom or {})
        self.visible = set(visible if visible is not None else self.dom)
        self.texts = set(texts or [])
        self.url = url
        self._title = title
        self.calls = []
        self.probes = []
        self.broken_selectors = set()
        self.fail_goto = 0
        self.fail_reload = False
        self.settle_times_out = False
        self.keyboard = FakeKeyboard(self)
        self.redirect_to = None
        self.listeners = {}
        self.closed = False

    def locator(self, selector: str):
        return FakeLocator(self, selector)

    def get_by_text(self, text: str):
        return FakeTextLocator(self, text)

    def on(self, event, handler):
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.listeners.get(event, []).remove(handler)

    def emit(self, event, payload):
        for handler in list(self.listeners.get(event, [])):
            handler(payload)

    async def title(self):
        return self._title

    async def goto(self, url, wait_until=None, timeout=None):
        self.calls.append(("goto", url))
        if self.fail_goto:
            self.fail_goto -= 1
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded navigating to {url}")
        self.url = url

    async def reload(self):
        self.calls.append(("reload",))
        if self.fail_reload:
            raise PlaywrightTimeoutError("Reload failed")

    async def wait_for_load_state(self, state="load", timeout=None):
        self.calls.append(("settle", state))
        if self.settle_times_out:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {state}")

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        self.calls.append(("wait_for_selector", selector, state))
        present = selector in self.visible
        if state == "hidden" and not present:
            return None
        if state in ("visible", "attached") and present:
            return object()
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector} to be {state}")

    async def wait_for_url(self, pattern, timeout=None):
        self.calls.append(("wait_for_url", pattern))
        if not glob_matches(pattern, self.url):
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for URL {pattern}")

    async def wait_for_timeout(self, ms):
        self.calls.append(("wait", ms))

    async def click(self, selector, timeout=None):
        self.calls.append(("click", selector))
        if self.redirect_to:
            self.url = self.redirect_to

    async def fill(self, selector, value, timeout=None):
        self.calls.append(("fill", selector, value))

    async def select_option(self, selector, value=None, index=None, timeout=None):
        self.calls.append(("select", selector, value if index is None else index))

    async def set_input_files(self, selector, files, timeout=None):
        self.calls.append(("upload", selector, files))

    async def hover(self, selector, timeout=None):
        self.calls.append(("hover", selector))

    async def focus(self, selector, timeout=None):
        self.calls.append(("focus", selector))

    async def drag_and_drop(self, source, target, timeout=None):
        self.calls.append(("drag", source, target))

    async def evaluate(self, script, arg=None):
        self.calls.append(("evaluate", script, arg))

    async def screenshot(self, full_page=False, type="png"):
        self.calls.append(("screenshot", full_page))
        return b"\x89PNG fake"

    def called(self, name: str) -> list:
        return [c for c in self.calls if c[0] == name]


class ScriptedExecutor:
    """Answers each step from a per-action script; unscripted steps pass."""

    def __init__(self, script=None):
        self.script = {action: list(outcomes) for action, outcomes in (script or {}).items()}
        self.calls = []

    async def execute(self, session, page, step, test_data=None):
        self.calls.append((page, step.action))
        outcomes = self.script.get(step.action)
        if outcomes:
            return outcomes.pop(0)
        return StepOutcome(success=True)


class FakeSessions:
    def __init__(self, init_error=None, url="https://staging.example.com"):
        self.init_error = init_error
        self.url = url
        self.pages = []
        self.closed = []
        self.session = BrowserSession(id="fake-session", browser_type="chrome", provider="fake", browser=None)
        self.stale_pages = []

    async def initialize_session(self, browser_type="chrome"):
        if self.init_error:
            raise self.init_error
        return self.session

    async def create_page(self, session):
        page = FakePage(url=self.url)
        self.pages.append(page)
        return page

    async def close_page(self, session, page):
        page.closed = True
        self.stale_pages.append(page)

    async def close(self, session):
        self.closed.append(session)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://db.example.test",
        supabase_service_key="service-key",
        browserless_api_key="bl-key",
        browserless_api_url="https://browserless.example.test",
        case_delay_seconds=0,
    )


@pytest.fixture
def login_case() -> TestCase:
    return TestCase(
        id="case-1",
        name="Login works",
        steps=(
            Step(action='Type "alice@example.com" into the email field'),
            Step(action='Click "Submit"', expected_result="user is redirected to dashboard"),
        ),
        test_data={"password": "secret"},
    )
