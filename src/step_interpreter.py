import logging
import re

import pyotp

from models import (
    Clear,
    Click,
    DragDrop,
    Focus,
    Hover,
    KeyPress,
    Navigate,
    Operation,
    Scroll,
    Select,
    Type,
    Upload,
    Wait,
)

logger = logging.getLogger(__name__)

QUOTED_RE = re.compile(r"\"([^\"]+)\"|(?<!\w)'([^']+)'(?!\w)")

_KEY_WORDS = r"(?:enter|return|escape|esc|tab|space|spacebar|backspace|delete|arrow\s*(?:up|down|left|right)|(?:up|down|left|right)\s+arrow)"
# Keyboard phrasing: a named key, `press key "x"`, or a single quoted character.
# "press the delete button" and `press "Submit"` stay clicks.
KEY_PHRASE_RE = re.compile(
    rf"\b(?:press|hit)\s+(?:the\s+)?"
    rf"(?:{_KEY_WORDS}\b(?!\s+(?:button|link|icon)\b)(?:\s+key\b)?"
    r"|keys?\s+[\"'][^\"']+[\"']"
    r"|[\"'][^\"'][\"'](?:\s+key\b)?)"
)

# "open" only navigates when a page or address follows; "open the menu" falls through to click.
NAVIGATE_RE = re.compile(r"\b(?:navigate|go\s+to|goto|visit)\b|\bopen\b(?=.*(?:\bpage\b|\burl\b|\bsite\b|https?://|\s/))")
CLICK_RE = re.compile(
    r"\b(?:click|tap|double[- ]click)\b"
    r"|\bpress\b"
    r"|\bselect\b.*\b(?:checkbox|radio|tab|link|button|card|row|tile|item)\b"
)
TYPE_RE = re.compile(r"\b(?:type|enter|fill)\b|^\s*input\b")
SELECT_RE = re.compile(r"\b(?:select|choose)\b|\bpick\b.*\bfrom\b")
UPLOAD_RE = re.compile(r"\b(?:upload|attach)\b")
SCROLL_RE = re.compile(r"\bscroll\b")
HOVER_RE = re.compile(r"\b(?:hover|mouse\s*over|mouseover)\b")
WAIT_RE = re.compile(r"\b(?:wait|pause)\b")
KEYPRESS_RE = re.compile(r"\b(?:press|hit)\b")
DRAG_RE = re.compile(r"\b(?:drag|drop)\b")
FOCUS_RE = re.compile(r"\b(?:focus|activate)\b")
CLEAR_RE = re.compile(r"\b(?:clear|empty)\b")

NAVIGATION_VOCABULARY = [
    ("login", "/login"),
    ("signup", "/signup"),
    ("register", "/signup"),
    ("dashboard", "/dashboard"),
    ("profile", "/profile"),
    ("settings", "/settings"),
    ("home", "/"),
]

# (intent, keyword pattern, test_data keys, default value); checked in order.
FIELD_INTENTS = [
    ("email", re.compile(r"\be-?mail\b"), ("email",), "test@example.com"),
    ("password", re.compile(r"\bpassword\b"), ("password",), "Password123!"),
    ("username", re.compile(r"\buser\s*name\b"), ("username",), "testuser"),
    ("name", re.compile(r"\bname\b"), ("name", "fullName"), "Test User"),
    ("phone", re.compile(r"\bphone\b"), ("phone",), "+1234567890"),
    ("otp", re.compile(r"\b(?:otp|one[- ]time|verification code|security code|2fa|mfa|authenticator)\b"), ("otp",), None),
]

NAMED_KEYS = [
    (re.compile(r"\barrow\s*up\b|\bup\s+arrow\b"), "ArrowUp"),
    (re.compile(r"\barrow\s*down\b|\bdown\s+arrow\b"), "ArrowDown"),
    (re.compile(r"\barrow\s*left\b|\bleft\s+arrow\b"), "ArrowLeft"),
    (re.compile(r"\barrow\s*right\b|\bright\s+arrow\b"), "ArrowRight"),
    (re.compile(r"\b(?:enter|return)\b"), "Enter"),
    (re.compile(r"\b(?:escape|esc)\b"), "Escape"),
    (re.compile(r"\btab\b"), "Tab"),
    (re.compile(r"\b(?:space|spacebar)\b"), "Space"),
    (re.compile(r"\bbackspace\b"), "Backspace"),
    (re.compile(r"\bdelete\b"), "Delete"),
]

WAIT_RE_VALUE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(ms|milliseconds?|minutes?|mins?|seconds?|secs?|s)?\b", re.I
)
WAIT_UNIT_MS = {"ms": 1, "millisecond": 1, "min": 60000, "minute": 60000, "s": 1000, "sec": 1000, "second": 1000}
PATH_TOKEN_RE = re.compile(r"(https?://\S+|(?<![\w/])/[\w\-./?=&%#]*)")


def quoted_strings(text: str) -> list[str]:
    return [a or b for a, b in QUOTED_RE.findall(text or "")]


def first_quoted(text: str) -> str | None:
    found = quoted_strings(text)
    return found[0] if found else None


def without_key_phrases(lowered: str) -> str:
    return KEY_PHRASE_RE.sub(" ", lowered)


def classify(action: str) -> type:
    """Return the Operation class for an action, by fixed priority.

    Key phrasing ("press enter") is set aside before the click and type
    checks, so "type password and press enter" is still a Type and a bare
    "press enter" falls through to KeyPress.
    """
    text = (action or "").strip().lower()
    rest = without_key_phrases(text)
    if NAVIGATE_RE.search(text):
        return Navigate
    if CLICK_RE.search(rest):
        return Click
    if TYPE_RE.search(rest):
        return Type
    if SELECT_RE.search(text):
        return Select
    if UPLOAD_RE.search(text):
        return Upload
    if SCROLL_RE.search(text):
        return Scroll
    if HOVER_RE.search(text):
        return Hover
    if WAIT_RE.search(text):
        return Wait
    if KEYPRESS_RE.search(text):
        return KeyPress
    if DRAG_RE.search(text):
        return DragDrop
    if FOCUS_RE.search(text):
        return Focus
    if CLEAR_RE.search(text):
        return Clear
    return Click


def interpret(action: str, test_data: dict | None = None) -> Operation:
    """Turn a free-text action into an Operation. Never raises.

    Unmatched text becomes a Click whose target is the raw action; a failure
    to find anything to click is reported later as an ordinary step failure.
    """
    test_data = test_data or {}
    action = (action or "").strip()
    kind = classify(action)
    try:
        if kind is Navigate:
            return Navigate(target=extract_navigation_target(action, test_data))
        if kind is Type:
            return parse_type(action, test_data)
        if kind is Select:
            option = first_quoted(action) or test_data.get("selectValue") or None
            return Select(target=_without_quoted(action, option), option=option)
        if kind is Upload:
            return Upload(target=action, file_path=test_data.get("file_path") or None)
        if kind is Scroll:
            return Scroll(direction=extract_scroll_direction(action))
        if kind is Hover:
            return Hover(target=action)
        if kind is Wait:
            return Wait(duration_ms=extract_wait_duration(action))
        if kind is KeyPress:
            return KeyPress(key=extract_key(action))
        if kind is DragDrop:
            source, target = split_drag_drop(action)
            return DragDrop(source=source, target=target)
        if kind is Focus:
            return Focus(target=action)
        if kind is Clear:
            return Clear(target=action)
    except Exception as e:
        logger.warning(f"Could not parse action {action!r} as {kind.__name__}: {e}; treating as click")
    return Click(target=action)


def extract_navigation_target(action: str, test_data: dict) -> str:
    quoted = first_quoted(action)
    if quoted:
        return quoted
    token = PATH_TOKEN_RE.search(action)
    if token:
        return token.group(1).rstrip(".,;")
    lowered = action.lower()
    for word, path in NAVIGATION_VOCABULARY:
        if re.search(rf"\b{word}\b", lowered):
            return path
    if test_data.get("url"):
        return test_data["url"]
    return "/"


def field_intent(text: str) -> str | None:
    lowered = (text or "").lower()
    for intent, pattern, _keys, _default in FIELD_INTENTS:
        if pattern.search(lowered):
            return intent
    return None


def one_time_code(test_data: dict) -> str | None:
    if test_data.get("otp"):
        return test_data["otp"]
    secret = test_data.get("totp_secret")
    if not secret:
        return None
    try:
        return pyotp.TOTP(secret).now()
    except ValueError as e:
        logger.warning(f"Invalid totp_secret in test data: {e}")
        return None


def parse_type(action: str, test_data: dict) -> Type:
    intent = field_intent(action)
    quoted = first_quoted(action)
    if intent is not None:
        for name, _pattern, keys, default in FIELD_INTENTS:
            if name != intent:
                continue
            value = next((test_data[k] for k in keys if test_data.get(k)), None)
            if intent == "otp":
                value = one_time_code(test_data) or quoted or "000000"
            if value is None:
                value = default
            return Type(target=_without_quoted(action, quoted), value=value, field=intent)
    if quoted:
        return Type(target=_without_quoted(action, quoted), value=quoted)
    return Type(target=action, value=test_data.get("defaultValue") or "test input")


def extract_wait_duration(action: str) -> int:
    match = WAIT_RE_VALUE.search(action or "")
    if not match:
        return 2000
    value = float(match.group(1))
    # Bare numbers are seconds.
    unit = (match.group(2) or "s").lower()
    if unit != "ms":
        unit = unit.rstrip("s") or "s"
    return int(value * WAIT_UNIT_MS[unit])


def extract_key(action: str) -> str:
    lowered = (action or "").lower()
    for pattern, key in NAMED_KEYS:
        if pattern.search(lowered):
            return key
    return first_quoted(action) or "Enter"


def extract_scroll_direction(action: str) -> str:
    lowered = (action or "").lower()
    for direction in ("top", "bottom", "up", "down"):
        if re.search(rf"\b{direction}\b", lowered):
            return direction
    return "down"


def split_drag_drop(action: str) -> tuple[str, str]:
    quoted = quoted_strings(action)
    if len(quoted) >= 2:
        return f'"{quoted[0]}"', f'"{quoted[1]}"'
    parts = re.split(r"\s+(?:onto|into|to)\s+", action, maxsplit=1, flags=re.I)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return action, action


def _without_quoted(action: str, quoted: str | None) -> str:
    if not quoted:
        return action
    stripped = action.replace(f'"{quoted}"', " ").replace(f"'{quoted}'", " ")
    return re.sub(r"\s+", " ", stripped).strip() or action
