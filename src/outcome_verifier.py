import logging
import re
from dataclasses import dataclass
from enum import Enum

from playwright.async_api import Error as PlaywrightError

from element_resolver import extract_identifiers
from step_interpreter import PATH_TOKEN_RE, first_quoted

logger = logging.getLogger(__name__)

ERROR_REGION = '.error, .alert, [role="alert"], .notification'
SUCCESS_REGION = '.success, .alert-success, [role="status"]'
SETTLE_MS = 2000
VERIFY_TIMEOUT_MS = 10000


class CheckKind(str, Enum):
    URL = "url"
    VISIBLE = "visible"
    HIDDEN = "hidden"
    TEXT = "text"
    ERROR_REGION = "error-region"
    SUCCESS_REGION = "success-region"
    SETTLE = "settle"


@dataclass(frozen=True)
class Check:
    kind: CheckKind
    target: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    check: Check
    error: str | None = None
    actual: str | None = None
    expected: str | None = None


URL_RE = re.compile(r"\b(?:redirect\w*|navigat\w*)\b")
NEGATED_VISIBLE_RE = re.compile(r"\bnot\s+(?:be\s+)?(?:visible|displayed|shown)\b")
VISIBLE_RE = re.compile(r"\b(?:displayed|visible)\b")
HIDDEN_RE = re.compile(r"\bhidden\b|\bdisappears?\b")
TEXT_RE = re.compile(r"\b(?:text|message)\b")
ERROR_RE = re.compile(r"\b(?:error|alert)\b")
SUCCESS_RE = re.compile(r"\bsuccess\w*\b")

URL_VOCABULARY = [
    ("dashboard", "**/dashboard**"),
    ("login", "**/login**"),
    ("signup", "**/signup**"),
    ("register", "**/register**"),
    ("profile", "**/profile**"),
    ("settings", "**/settings**"),
    ("home", "**/**"),
]

ELEMENT_VOCABULARY = [
    ("button", "button"),
    ("form", "form"),
    ("modal", '[role="dialog"], .modal'),
    ("dialog", '[role="dialog"], .modal'),
    ("menu", '[role="menu"], .menu'),
    ("alert", '[role="alert"], .alert'),
    ("error", ERROR_REGION),
]

TEXT_VOCABULARY = ["success", "error", "welcome", "login"]


def classify_expectation(expected: str) -> Check:
    """Pick exactly one check for an expected-result text, first match wins."""
    text = (expected or "").strip().lower()
    if URL_RE.search(text):
        return Check(CheckKind.URL, expected_url_pattern(expected))
    if VISIBLE_RE.search(text) and not NEGATED_VISIBLE_RE.search(text):
        return Check(CheckKind.VISIBLE, element_selector_for(expected))
    if HIDDEN_RE.search(text) or NEGATED_VISIBLE_RE.search(text):
        return Check(CheckKind.HIDDEN, element_selector_for(expected))
    if TEXT_RE.search(text):
        return Check(CheckKind.TEXT, expected_text(expected))
    if ERROR_RE.search(text):
        return Check(CheckKind.ERROR_REGION, ERROR_REGION)
    if SUCCESS_RE.search(text):
        return Check(CheckKind.SUCCESS_REGION, SUCCESS_REGION)
    return Check(CheckKind.SETTLE)


def expected_url_pattern(expected: str) -> str:
    quoted = first_quoted(expected)
    if quoted:
        return f"**{quoted}**"
    token = PATH_TOKEN_RE.search(expected or "")
    if token:
        return f"**{token.group(1).rstrip('.,;')}**"
    lowered = (expected or "").lower()
    for word, pattern in URL_VOCABULARY:
        if re.search(rf"\b{word}\b", lowered):
            return pattern
    return "**"


def element_selector_for(expected: str) -> str:
    lowered = (expected or "").lower()
    for word, selector in ELEMENT_VOCABULARY:
        if re.search(rf"\b{word}\b", lowered):
            return selector
    identifiers = extract_identifiers(expected)
    if identifiers:
        first = identifiers[0].replace('"', '\\"')
        return f'[data-testid*="{first}" i], :text("{first}")'
    return "body"


def expected_text(expected: str) -> str:
    quoted = first_quoted(expected)
    if quoted:
        return quoted
    lowered = (expected or "").lower()
    for word in TEXT_VOCABULARY:
        if word in lowered:
            return word
    return "text"


async def describe_page(page) -> tuple[str, str]:
    url = ""
    title = ""
    try:
        url = page.url
    except Exception:
        url = ""
    try:
        title = await page.title()
    except Exception:
        title = ""
    return url, title


async def verify(page, expected: str, timeout_ms: int = VERIFY_TIMEOUT_MS) -> VerificationResult:
    """Wait for the state an expected-result text describes."""
    check = classify_expectation(expected)
    try:
        if check.kind == CheckKind.URL:
            await page.wait_for_url(check.target, timeout=timeout_ms)
        elif check.kind == CheckKind.VISIBLE:
            await page.wait_for_selector(check.target, state="visible", timeout=timeout_ms)
        elif check.kind == CheckKind.HIDDEN:
            await page.wait_for_selector(check.target, state="hidden", timeout=timeout_ms)
        elif check.kind == CheckKind.TEXT:
            await page.get_by_text(check.target).first.wait_for(state="visible", timeout=timeout_ms)
        elif check.kind in (CheckKind.ERROR_REGION, CheckKind.SUCCESS_REGION):
            await page.wait_for_selector(check.target, timeout=timeout_ms)
        else:
            # Nothing recognizable to assert on; let the page settle and accept it.
            await page.wait_for_timeout(SETTLE_MS)
        return VerificationResult(success=True, check=check, expected=expected)
    except PlaywrightError as e:
        url, title = await describe_page(page)
        logger.info(f"Expectation not met ({check.kind.value} {check.target}): {e}")
        return VerificationResult(
            success=False,
            check=check,
            error=f"Expected result not met: {expected}. Current URL: {url}",
            actual=f"Page: {title} at {url}",
            expected=expected,
        )
