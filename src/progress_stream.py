import asyncio
import json
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)

_CLOSED = object()


def encode_event(event: dict) -> bytes:
    """Serialize one event as a server-sent-events data frame."""
    return f"data: {json.dumps(event)}\n\n".encode("utf-8")


def initial_event(test_run_id: str, environment_url: str, browser_type: str) -> dict:
    return {
        "success": True,
        "testRunId": test_run_id,
        "message": "Real test execution started",
        "environmentUrl": environment_url,
        "browserType": browser_type,
    }


def progress_event(current: int, total: int, test_case_id: str, test_name: str) -> dict:
    return {
        "type": "progress",
        "current": current,
        "total": total,
        "testCaseId": test_case_id,
        "testName": test_name,
        "status": "running",
    }


def test_complete_event(
    test_case_id: str,
    test_name: str,
    status: str,
    passed: int,
    failed: int,
    total: int,
    error: str | None = None,
    screenshot: str | None = None,
) -> dict:
    event = {
        "type": "test_complete",
        "testCaseId": test_case_id,
        "testName": test_name,
        "status": status,
        "passed": passed,
        "failed": failed,
        "total": total,
    }
    if error:
        event["error"] = error
    if screenshot:
        event["screenshot"] = screenshot
    return event


def complete_event(passed: int, failed: int, total: int, execution_time_ms: int) -> dict:
    return {
        "type": "complete",
        "passed": passed,
        "failed": failed,
        "total": total,
        "executionTime": execution_time_ms,
    }


def error_event(message: str) -> dict:
    return {"type": "error", "error": message}


class ProgressStream:
    """Queue between a running test run and the response draining it.

    The producer never blocks on the consumer. If the client goes away the
    events simply accumulate until the run finishes and the stream is dropped.
    """

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def emit(self, event: dict) -> None:
        if self.closed:
            logger.debug(f"Dropping event after close: {event.get('type')}")
            return
        self.queue.put_nowait(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[dict]:
        while True:
            event = await self.queue.get()
            if event is _CLOSED:
                return
            yield event

    async def frames(self) -> AsyncIterator[bytes]:
        async for event in self.events():
            yield encode_event(event)
