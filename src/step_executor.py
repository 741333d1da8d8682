import logging
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

import element_resolver
from element_resolver import ELEMENT, FIELD, FILE, SELECT
from errors import InteractionError, StepError, VerificationError
from models import (
    Clear,
    Click,
    DragDrop,
    FailureDetails,
    Focus,
    Hover,
    KeyPress,
    Navigate,
    Operation,
    Scroll,
    Select,
    Step,
    StepOutcome,
    Type,
    Upload,
    Wait,
)
from outcome_verifier import VERIFY_TIMEOUT_MS, describe_page, verify
from step_interpreter import interpret

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 30000
UPLOAD_PLACEHOLDER = {
    "name": "test-upload.txt",
    "mimeType": "text/plain",
    "buffer": b"Automated test upload\n",
}

SCROLL_SCRIPTS = {
    "up": "window.scrollBy(0, -window.innerHeight)",
    "down": "window.scrollBy(0, window.innerHeight)",
    "top": "window.scrollTo(0, 0)",
    "bottom": "window.scrollTo(0, document.body.scrollHeight)",
}


def describe_operation(op: Operation) -> str:
    """Short human-readable form of an operation, used in logs and failure details."""
    if isinstance(op, Navigate):
        return f"navigate to {op.target}"
    if isinstance(op, Type):
        return f"type into {op.target}"
    if isinstance(op, Select):
        return f"select {op.option or 'first option'} in {op.target}"
    if isinstance(op, Scroll):
        return f"scroll {op.direction}"
    if isinstance(op, Wait):
        return f"wait {op.duration_ms}ms"
    if isinstance(op, KeyPress):
        return f"press {op.key}"
    if isinstance(op, DragDrop):
        return f"drag {op.source} to {op.target}"
    return f"{type(op).__name__.lower()} {op.target}"


class StepExecutor:
    """Runs one step: interpret, resolve, interact, settle, verify."""

    def __init__(
        self,
        base_url: str,
        action_timeout_ms: int = 10000,
        settle_timeout_ms: int = 10000,
        verify_timeout_ms: int = VERIFY_TIMEOUT_MS,
    ):
        self.base_url = base_url
        self.action_timeout_ms = action_timeout_ms
        self.settle_timeout_ms = settle_timeout_ms
        self.verify_timeout_ms = verify_timeout_ms

    async def execute(self, session, page, step: Step, test_data: dict | None = None) -> StepOutcome:
        test_data = test_data or {}
        op = interpret(step.action, test_data)
        logger.debug(f"Step {step.action!r} -> {op}")

        if session is not None and getattr(session, "closed", False):
            return await self._failure(page, step, op, "Browser session is closed", element=describe_operation(op))

        selector = value = None
        try:
            selector, value = await self._perform(page, op)
            await self._settle(page)
            await self._verify(page, step, op)
        except VerificationError as e:
            url, _title = await describe_page(page)
            return StepOutcome(
                success=False,
                selector=selector,
                value=value,
                error=str(e),
                failure=FailureDetails(
                    element=e.element,
                    expected=e.expected or step.expected_result,
                    actual=e.actual or "",
                    selector=e.selector or selector or "",
                    page_url=url,
                ),
            )
        except StepError as e:
            return await self._failure(
                page, step, op, str(e),
                selector=e.selector,
                element=e.element or describe_operation(op),
            )
        return StepOutcome(success=True, selector=selector, value=value)

    async def _verify(self, page, step: Step, op: Operation) -> None:
        if not step.expected_result.strip():
            return
        result = await verify(page, step.expected_result, timeout_ms=self.verify_timeout_ms)
        if not result.success:
            raise VerificationError(
                result.error,
                selector=result.check.target,
                element=describe_operation(op),
                expected=result.expected,
                actual=result.actual,
            )

    async def _perform(self, page, op: Operation) -> tuple[str | None, str | None]:
        """Carry out the interaction. Returns (selector, value) for the record."""
        selector = None
        try:
            if isinstance(op, Navigate):
                url = self.resolve_url(op.target)
                selector = url
                await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
                return url, None

            if isinstance(op, Click):
                selector = (await element_resolver.resolve(page, op.target, ELEMENT)).selector
                await page.wait_for_selector(selector, state="visible", timeout=self.action_timeout_ms)
                await page.click(selector, timeout=self.action_timeout_ms)
                return selector, None

            if isinstance(op, Type):
                selector = (await element_resolver.resolve(page, op.target, FIELD)).selector
                await page.fill(selector, op.value, timeout=self.action_timeout_ms)
                return selector, op.value

            if isinstance(op, Select):
                selector = (await element_resolver.resolve(page, op.target, SELECT)).selector
                if op.option:
                    await page.select_option(selector, op.option, timeout=self.action_timeout_ms)
                else:
                    await page.select_option(selector, index=0, timeout=self.action_timeout_ms)
                return selector, op.option

            if isinstance(op, Upload):
                selector = (await element_resolver.resolve(page, op.target, FILE)).selector
                files = op.file_path or UPLOAD_PLACEHOLDER
                await page.set_input_files(selector, files, timeout=self.action_timeout_ms)
                return selector, op.file_path or UPLOAD_PLACEHOLDER["name"]

            if isinstance(op, Scroll):
                await page.evaluate(SCROLL_SCRIPTS.get(op.direction, SCROLL_SCRIPTS["down"]))
                return None, op.direction

            if isinstance(op, Hover):
                selector = (await element_resolver.resolve(page, op.target, ELEMENT)).selector
                await page.hover(selector, timeout=self.action_timeout_ms)
                return selector, None

            if isinstance(op, Wait):
                await page.wait_for_timeout(op.duration_ms)
                return None, str(op.duration_ms)

            if isinstance(op, KeyPress):
                await page.keyboard.press(op.key)
                return None, op.key

            if isinstance(op, DragDrop):
                source = (await element_resolver.resolve(page, op.source, ELEMENT)).selector
                selector = source
                target = (await element_resolver.resolve(page, op.target, ELEMENT)).selector
                await page.drag_and_drop(source, target, timeout=self.action_timeout_ms)
                return f"{source} -> {target}", None

            if isinstance(op, Focus):
                selector = (await element_resolver.resolve(page, op.target, ELEMENT)).selector
                await page.focus(selector, timeout=self.action_timeout_ms)
                return selector, None

            if isinstance(op, Clear):
                selector = (await element_resolver.resolve(page, op.target, FIELD)).selector
                await page.fill(selector, "", timeout=self.action_timeout_ms)
                return selector, ""

        except PlaywrightError as e:
            raise InteractionError(
                f"Failed to {describe_operation(op)}: {e}",
                selector=selector,
                element=describe_operation(op),
            ) from e

        raise InteractionError(f"Unsupported operation: {op!r}")

    def resolve_url(self, target: str) -> str:
        if target.startswith(("http://", "https://")):
            return target
        return urljoin(self.base_url.rstrip("/") + "/", target.lstrip("/"))

    async def _settle(self, page) -> None:
        try:
            await page.wait_for_load_state("networkidle", timeout=self.settle_timeout_ms)
        except PlaywrightTimeoutError:
            logger.info(f"Page did not reach network idle within {self.settle_timeout_ms}ms, continuing")
        except PlaywrightError as e:
            logger.warning(f"Settle wait failed: {e}")

    async def _failure(
        self,
        page,
        step: Step,
        op: Operation,
        error: str,
        selector: str | None = None,
        element: str | None = None,
    ) -> StepOutcome:
        url, title = await describe_page(page)
        logger.info(f"Step failed: {step.action!r}: {error}")
        return StepOutcome(
            success=False,
            selector=selector,
            error=error,
            failure=FailureDetails(
                element=element or describe_operation(op),
                expected=step.expected_result or f"Able to {describe_operation(op)}",
                actual=f"{error} (page: {title} at {url})",
                selector=selector or "",
                page_url=url,
            ),
        )
