import logging
import re

from errors import ElementNotFound
from models import Locator, Strategy
from step_interpreter import field_intent, quoted_strings

logger = logging.getLogger(__name__)

UI_TERMS = [
    "login", "signin", "signup", "register", "submit", "save", "cancel", "delete",
    "edit", "add", "remove", "search", "filter", "sort", "menu", "navigation",
    "home", "profile", "settings", "logout", "dashboard", "admin",
]

# Capitalized action verbs at the start of a step are not element names.
ACTION_VERBS = {
    "click", "tap", "press", "type", "enter", "input", "fill", "select", "choose", "pick",
    "upload", "attach", "scroll", "hover", "wait", "pause", "hit", "drag", "drop", "focus",
    "activate", "clear", "empty", "navigate", "go", "open", "visit", "the", "then", "and",
}

CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")

INPUT_TYPES = {
    "email": "email",
    "password": "password",
    "phone": "tel",
    "search": "search",
    "url": "url",
}

ELEMENT = "element"
FIELD = "field"
SELECT = "select"
FILE = "file"


def extract_identifiers(description: str) -> list[str]:
    """Candidate element names: quoted text, known UI terms, capitalized words."""
    description = description or ""
    lowered = description.lower()
    found: list[str] = []
    found.extend(q.strip() for q in quoted_strings(description) if q.strip())
    for term in UI_TERMS:
        if re.search(rf"\b{term}\b", lowered):
            found.append(term)
    for word in CAPITALIZED_RE.findall(description):
        if word.lower() not in ACTION_VERBS:
            found.append(word.lower())

    identifiers: list[str] = []
    seen = set()
    for identifier in found:
        key = identifier.lower()
        if key in seen:
            continue
        seen.add(key)
        identifiers.append(identifier)
    return identifiers


def _css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _kebab(identifier: str) -> str:
    return re.sub(r"\s+", "-", identifier.strip()).lower()


def _fallback_tag(description: str, kind: str) -> str | None:
    lowered = (description or "").lower()
    if kind == SELECT:
        return "select"
    if kind == FILE:
        return 'input[type="file"]'
    if kind == FIELD:
        return "input, textarea"
    if "button" in lowered or "click" in lowered:
        return "button"
    if "link" in lowered:
        return "a"
    if "input" in lowered or "field" in lowered:
        return "input"
    return None


def candidate_selectors(description: str, kind: str = ELEMENT) -> list[Locator]:
    """Every selector the resolver will probe for a description, in probe order."""
    identifiers = extract_identifiers(description)
    intent = field_intent(description) if kind != ELEMENT else None
    if intent and intent != "otp" and intent.lower() not in {i.lower() for i in identifiers}:
        identifiers.append(intent)
    quoted = [_css_string(i) for i in identifiers]
    candidates: list[Locator] = []

    candidates += [Locator(f'[data-testid="{i}"]', Strategy.TEST_ID) for i in quoted]
    if kind == ELEMENT:
        for i in quoted:
            candidates.append(Locator(f'button:has-text("{i}")', Strategy.BUTTON_TEXT))
            candidates.append(Locator(f'a:has-text("{i}")', Strategy.LINK_TEXT))
            candidates.append(Locator(f':text("{i}")', Strategy.TEXT))
    candidates += [Locator(f'[aria-label*="{i}" i]', Strategy.ARIA_LABEL) for i in quoted]
    candidates += [Locator(f'input[placeholder*="{i}" i]', Strategy.PLACEHOLDER) for i in quoted]
    candidates += [Locator(f'[name*="{i}" i]', Strategy.NAME) for i in quoted]
    candidates += [Locator(f'[id="{_css_string(_kebab(i))}"]', Strategy.ID) for i in identifiers]
    candidates += [Locator(f'[class~="{_css_string(_kebab(i))}"]', Strategy.CLASS) for i in identifiers]
    if kind == FIELD and intent in INPUT_TYPES:
        candidates.append(Locator(f'input[type="{INPUT_TYPES[intent]}"]', Strategy.INPUT_TYPE))
    if kind == FIELD and intent == "otp":
        candidates.append(Locator('input[autocomplete="one-time-code"]', Strategy.INPUT_TYPE))

    tag = _fallback_tag(description, kind)
    if tag:
        candidates.append(Locator(tag, Strategy.TAG))
    return candidates


async def _exists(page, selector: str) -> bool:
    try:
        return await page.locator(selector).count() > 0
    except Exception as e:
        # Invalid selector for this engine or detached frame; not a match.
        logger.debug(f"Probe failed for {selector}: {e}")
        return False


async def resolve(page, description: str, kind: str = ELEMENT) -> Locator:
    """Return the first candidate selector that matches something on the page."""
    for candidate in candidate_selectors(description, kind):
        if await _exists(page, candidate.selector):
            logger.debug(f"Resolved {description!r} -> {candidate.selector} ({candidate.strategy.value})")
            return candidate
    identifiers = extract_identifiers(description)
    raise ElementNotFound(
        f"Could not find element selector for: {description}",
        element=identifiers[0] if identifiers else description,
    )

