import pytest

from conftest import FakePage
from element_resolver import ELEMENT, FIELD, SELECT, candidate_selectors, extract_identifiers, resolve
from errors import ElementNotFound
from models import Locator, Strategy


class TestExtractIdentifiers:
    def test_quoted_then_vocabulary_then_capitalized(self):
        assert extract_identifiers('Click "Save" then open Settings') == ["Save", "settings"]

    def test_action_verbs_are_not_identifiers(self):
        assert extract_identifiers("Click the Profile link") == ["profile"]

    def test_case_insensitive_dedup_keeps_first(self):
        assert extract_identifiers('Press "Login" to login') == ["Login"]

    def test_empty(self):
        assert extract_identifiers("") == []


class TestResolve:
    @pytest.mark.asyncio
    async def test_text_match_when_no_test_id(self):
        page = FakePage(dom={'button:has-text("Submit")': 1})

        locator = await resolve(page, 'click "Submit"')

        assert locator.selector == 'button:has-text("Submit")'
        assert locator.strategy == Strategy.BUTTON_TEXT
        assert page.probes[0] == '[data-testid="Submit"]'

    @pytest.mark.asyncio
    async def test_test_id_wins_over_text(self):
        page = FakePage(dom={'[data-testid="Submit"]': 1, 'button:has-text("Submit")': 1})
        locator = await resolve(page, 'click "Submit"')
        assert locator.strategy == Strategy.TEST_ID

    @pytest.mark.asyncio
    async def test_field_targets_skip_text_strategies(self):
        page = FakePage(dom={'button:has-text("email")': 1, 'input[type="email"]': 1})

        locator = await resolve(page, "Type into the email field", FIELD)

        assert locator.selector == 'input[type="email"]'
        assert not any("has-text" in probe for probe in page.probes)

    @pytest.mark.asyncio
    async def test_placeholder_match(self):
        page = FakePage(dom={'input[placeholder*="email" i]': 1})
        locator = await resolve(page, "Enter email", FIELD)
        assert locator.strategy == Strategy.PLACEHOLDER

    @pytest.mark.asyncio
    async def test_derived_id(self):
        page = FakePage(dom={'[id="save-draft"]': 1})
        locator = await resolve(page, 'Click "Save Draft"')
        assert locator.strategy == Strategy.ID

    @pytest.mark.asyncio
    async def test_tag_fallback(self):
        page = FakePage(dom={"button": 2})
        locator = await resolve(page, "Click the big green thing")
        assert locator == Locator("button", Strategy.TAG)

    @pytest.mark.asyncio
    async def test_select_fallback(self):
        page = FakePage(dom={"select": 1})
        locator = await resolve(page, "Select from the country dropdown", SELECT)
        assert locator.selector == "select"

    @pytest.mark.asyncio
    async def test_not_found_names_the_element(self):
        page = FakePage(dom={})

        with pytest.raises(ElementNotFound) as excinfo:
            await resolve(page, "Click the Missing widget")

        assert excinfo.value.element == "missing"
        assert "Could not find element selector for" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_probe_errors_count_as_no_match(self):
        page = FakePage(dom={'[data-testid="Submit"]': 1, 'button:has-text("Submit")': 1})
        page.broken_selectors.add('[data-testid="Submit"]')
        locator = await resolve(page, 'click "Submit"')
        assert locator.strategy == Strategy.BUTTON_TEXT

    @pytest.mark.asyncio
    async def test_same_snapshot_same_locator(self):
        dom = {'[aria-label*="search" i]': 1, "input": 3}
        first = await resolve(FakePage(dom=dom), "Search the catalog")
        second = await resolve(FakePage(dom=dom), "Search the catalog")
        assert first == second
        assert candidate_selectors("Search the catalog", ELEMENT) == candidate_selectors("Search the catalog", ELEMENT)
