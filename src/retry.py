import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times an operation class is attempted and how long to pause between attempts.

    `backoff` receives the 1-based index of the attempt that just failed and
    returns the pause in seconds before the next one.
    """

    max_attempts: int
    backoff: Callable[[int], float]

    def delay_after(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))


PROVISION_POLICY = RetryPolicy(max_attempts=3, backoff=lambda attempt: 2.0 * attempt)
PAGE_POLICY = RetryPolicy(max_attempts=2, backoff=lambda attempt: 1.0)
CASE_POLICY = RetryPolicy(max_attempts=2, backoff=lambda attempt: 2.0)


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"{last_error} (after {attempts} attempts)")
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    describe: str = "operation",
) -> T:
    """Run `operation(attempt)` until it succeeds or the policy is exhausted."""
    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            logger.info(f"{describe}: attempt {attempt}/{policy.max_attempts}")
            return await operation(attempt)
        except Exception as e:
            last_error = e
            logger.warning(f"{describe}: attempt {attempt} failed: {e}")
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_after(attempt))
    raise RetryExhausted(policy.max_attempts, last_error)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a best-effort call: either a value or the error that was caught."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok else default


async def best_effort(awaitable: Awaitable[T], describe: str) -> Outcome[T]:
    """Await a side effect whose failure must never change control flow.

    The caller gets an `Outcome` and decides explicitly what a failure means.
    """
    try:
        return Outcome(ok=True, value=await awaitable)
    except Exception as e:
        logger.error(f"{describe} failed: {e}")
        return Outcome(ok=False, error=e)
