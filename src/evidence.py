import asyncio
import logging
import time
from pathlib import Path

import boto3

from errors import EvidenceError
from retry import Outcome, best_effort
from settings import Settings

logger = logging.getLogger(__name__)

HIGHLIGHT_SCRIPT = """
(selector) => {
    let el = null;
    if (selector) {
        try { el = document.querySelector(selector); } catch (e) { el = null; }
    }
    el = el || document.activeElement;
    if (el && el !== document.body) {
        el.style.border = '3px solid red';
        el.style.backgroundColor = 'rgba(255, 0, 0, 0.1)';
    }
}
"""


def screenshot_name(test_case_id: str, step_index: int) -> str:
    return f"failure_{test_case_id}_step_{step_index}_{int(time.time() * 1000)}.png"


class ScreenshotStore:
    """Uploads PNG evidence to an S3-compatible bucket and hands back a public URL."""

    def __init__(self, bucket: str, client, public_base_url: str):
        self.bucket = bucket
        self.client = client
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScreenshotStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
        )
        if settings.screenshot_public_url:
            public = settings.screenshot_public_url
        elif settings.supabase_url:
            public = f"{settings.supabase_url}/storage/v1/object/public/{settings.screenshot_bucket}"
        elif settings.s3_endpoint_url:
            public = f"{settings.s3_endpoint_url.rstrip('/')}/{settings.screenshot_bucket}"
        else:
            public = f"https://{settings.screenshot_bucket}.s3.{settings.s3_region}.amazonaws.com"
        return cls(settings.screenshot_bucket, client, public)

    def save(self, name: str, data: bytes) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=name, Body=data, ContentType="image/png")
        except Exception as e:
            raise EvidenceError(f"Screenshot upload failed for {name}: {e}") from e
        return f"{self.public_base_url}/{name}"


class LocalScreenshotStore:
    """Writes evidence into a run directory; used by local runs."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def save(self, name: str, data: bytes) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        try:
            path.write_bytes(data)
        except OSError as e:
            raise EvidenceError(f"Could not write screenshot {path}: {e}") from e
        return str(path)


async def _capture(page, store, test_case_id: str, step_index: int, selector: str | None) -> str:
    try:
        await page.evaluate(HIGHLIGHT_SCRIPT, selector)
    except Exception as e:
        # Highlighting is cosmetic; take the screenshot anyway.
        logger.debug(f"Could not highlight element: {e}")
    try:
        data = await page.screenshot(full_page=True, type="png")
    except Exception as e:
        raise EvidenceError(f"Screenshot capture failed: {e}") from e
    name = screenshot_name(test_case_id, step_index)
    url = await asyncio.to_thread(store.save, name, data)
    logger.info(f"Failure screenshot saved: {url}")
    return url


async def capture_failure_screenshot(
    page,
    store,
    test_case_id: str,
    step_index: int,
    selector: str | None = None,
) -> Outcome[str]:
    """Highlight the failing element, take a full-page screenshot and store it.

    A failed capture or upload is returned as an unsuccessful `Outcome`; the
    caller records an empty reference.
    """
    if page is None or store is None:
        return Outcome(ok=False, error=EvidenceError("No page or screenshot store available"))
    return await best_effort(
        _capture(page, store, test_case_id, step_index, selector),
        describe=f"Screenshot for {test_case_id} step {step_index}",
    )
