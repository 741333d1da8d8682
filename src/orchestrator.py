import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from errors import PersistenceError, ValidationError
from evidence import capture_failure_screenshot
from models import CaseStatus, RunStatus, StepOutcome, TestCase, TestResult, TestRun
from progress_stream import (
    complete_event,
    error_event,
    initial_event,
    progress_event,
    test_complete_event,
)
from retry import CASE_POLICY, RetryPolicy, best_effort
from run_store import final_row, progress_row
from session_manager import SessionManager
from step_executor import NAVIGATION_TIMEOUT_MS, StepExecutor

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("local", "staging", "production")
BROWSER_TYPES = ("chrome", "firefox", "safari")


@dataclass(frozen=True)
class ExecutionRequest:
    project_id: str
    test_case_ids: tuple[str, ...]
    browser_type: str = "chrome"
    environment: str = "staging"

    @classmethod
    def from_body(cls, body: dict | None) -> "ExecutionRequest":
        body = body or {}
        project_id = body.get("projectId")
        ids = body.get("testCaseIds")
        if not project_id or not isinstance(ids, list) or not ids:
            raise ValidationError("Missing required fields: projectId, testCaseIds")
        browser_type = body.get("browserType") or "chrome"
        if browser_type not in BROWSER_TYPES:
            raise ValidationError(f"Unsupported browserType: {browser_type}. Expected one of: {', '.join(BROWSER_TYPES)}")
        environment = body.get("environment") or "staging"
        if environment not in ENVIRONMENTS:
            raise ValidationError(f"Unsupported environment: {environment}. Expected one of: {', '.join(ENVIRONMENTS)}")
        return cls(
            project_id=str(project_id),
            test_case_ids=tuple(str(i) for i in ids),
            browser_type=browser_type,
            environment=environment,
        )


@dataclass
class PreparedRun:
    run: TestRun
    cases: list[TestCase]
    environment_url: str
    browser_type: str


def resolve_environment_url(project: dict, environment: str, local_url: str) -> str | None:
    settings = project.get("settings") or {}
    if environment == "local":
        return local_url
    if environment == "staging":
        return settings.get("staging_url") or None
    if environment == "production":
        return settings.get("production_url") or None
    return None


async def prepare_run(store, request: ExecutionRequest, local_url: str, user_id: str | None = None) -> PreparedRun:
    """Validate a request and create its run record. Nothing here touches a browser."""
    project = await store.get_project(request.project_id)
    if not project:
        raise ValidationError("Project not found", status_code=404)

    environment_url = resolve_environment_url(project, request.environment, local_url)
    if not environment_url:
        raise ValidationError(f"No URL configured for {request.environment} environment")

    cases = await store.get_test_cases(list(request.test_case_ids))
    if not cases:
        raise ValidationError("No test cases found with the provided IDs", status_code=404)
    missing = set(request.test_case_ids) - {case.id for case in cases}
    if missing:
        logger.warning(f"Test cases not found and skipped: {', '.join(sorted(missing))}")

    run = TestRun(
        id="",
        project_id=request.project_id,
        test_case_ids=[case.id for case in cases],
        status=RunStatus.RUNNING,
        environment=request.environment,
        total=len(cases),
    )
    try:
        run.id = await store.create_test_run(run, request.browser_type, environment_url, user_id)
    except PersistenceError as e:
        logger.error(f"Could not create test run: {e}")
        raise PersistenceError("Failed to create test run record") from e
    logger.info(f"Created test run {run.id} with {run.total} cases on {environment_url}")
    return PreparedRun(run=run, cases=cases, environment_url=environment_url, browser_type=request.browser_type)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class TestRunOrchestrator:
    """Owns one browser session for a run and drives every case through it."""

    __test__ = False

    def __init__(
        self,
        session_manager: SessionManager,
        store,
        screenshot_store=None,
        executor: StepExecutor | None = None,
        case_delay: float = 1.0,
        case_policy: RetryPolicy = CASE_POLICY,
    ):
        self.sessions = session_manager
        self.store = store
        self.screenshot_store = screenshot_store
        self.executor = executor
        self.case_delay = case_delay
        self.case_policy = case_policy

    async def run(self, prepared: PreparedRun, emit: Callable[[dict], None]) -> TestRun:
        run = prepared.run
        cases = prepared.cases
        executor = self.executor or StepExecutor(prepared.environment_url)
        started = time.monotonic()
        session = None

        emit(initial_event(run.id, prepared.environment_url, prepared.browser_type))
        logger.info(f"Starting execution of {len(cases)} tests on {prepared.environment_url}")

        try:
            session = await self.sessions.initialize_session(prepared.browser_type)
            page = await self.sessions.create_page(session)

            for index, case in enumerate(cases, start=1):
                logger.info(f"Executing test {index}/{len(cases)}: {case.name}")
                emit(progress_event(index, len(cases), case.id, case.name))

                result, page = await self.run_case(session, page, case, run.id, prepared.environment_url, executor)
                if result.status == CaseStatus.PASS:
                    run.passed += 1
                else:
                    run.failed += 1

                await best_effort(self.store.insert_test_result(result), describe="Store test result")
                await best_effort(self.store.update_test_run(run.id, progress_row(run)), describe="Update test run progress")

                emit(test_complete_event(
                    test_case_id=case.id,
                    test_name=case.name,
                    status=result.status.value,
                    passed=run.passed,
                    failed=run.failed,
                    total=run.total,
                    error=result.error_message,
                    screenshot=result.screenshots[0] if result.screenshots else None,
                ))

                if index < len(cases) and self.case_delay > 0:
                    await asyncio.sleep(self.case_delay)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            run.status = RunStatus.COMPLETED
            run.completed_at = datetime.now(timezone.utc)
            run.duration_seconds = round(elapsed_ms / 1000)
            await best_effort(self.store.update_test_run(run.id, final_row(run)), describe="Mark test run completed")
            logger.info(f"Test run {run.id} completed: {run.passed} passed, {run.failed} failed of {run.total}")
            emit(complete_event(run.passed, run.failed, run.total, elapsed_ms))

        except Exception as e:
            logger.error(f"Error during test execution: {e}")
            run.status = RunStatus.FAILED
            run.error_message = str(e) or "Test execution failed"
            run.completed_at = datetime.now(timezone.utc)
            run.duration_seconds = round(time.monotonic() - started)
            await best_effort(self.store.update_test_run(run.id, final_row(run)), describe="Mark test run failed")
            emit(error_event(run.error_message))

        finally:
            await self.sessions.close(session)

        return run

    async def run_case(self, session, page, case: TestCase, run_id: str, environment_url: str, executor: StepExecutor):
        """Run one case with retries. Returns the result and the page to keep using."""
        started = time.monotonic()
        logs: list[str] = []

        def log(message: str) -> None:
            logs.append(f"[{_timestamp()}] {message}")

        def on_console(message) -> None:
            log(f"Browser console: [{message.type}] {message.text}")

        def result(status: CaseStatus, error: str | None = None, screenshot: str = "", outcome: StepOutcome | None = None) -> TestResult:
            return TestResult(
                test_run_id=run_id,
                test_case_id=case.id,
                status=status,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=error,
                logs=logs,
                screenshots=[screenshot] if screenshot else [],
                failure_details=outcome.failure if outcome else None,
            )

        page.on("console", on_console)
        try:
            max_attempts = self.case_policy.max_attempts
            for attempt in range(1, max_attempts + 1):
                log(f"Starting test: {case.name} (attempt {attempt}/{max_attempts})")
                log(f"Environment: {environment_url}")
                log(f"Browser: {session.browser_type} ({session.provider})")
                step_index = 0
                outcome = None
                error = None
                try:
                    step_index, outcome = await self._run_steps(session, page, case, environment_url, executor, log)
                    if outcome is None:
                        log("Test PASSED")
                        return result(CaseStatus.PASS), page
                    error = outcome.error or "Step failed"
                except Exception as e:
                    error = str(e)
                log(f"Attempt {attempt} failed: {error}")
                logger.warning(f"Test {case.name} attempt {attempt} failed: {error}")

                if attempt == max_attempts:
                    screenshot = await self._evidence(page, case, step_index, outcome)
                    if outcome is None:
                        error = f"Test failed after {max_attempts} attempts: {error}"
                    log(f"Test FAILED: {error}")
                    return result(CaseStatus.FAIL, error, screenshot, outcome), page

                try:
                    await page.reload()
                    await asyncio.sleep(self.case_policy.delay_after(attempt))
                except Exception as reload_error:
                    logger.error(f"Page reload failed: {reload_error}")
                    try:
                        fresh = await self.sessions.create_page(session)
                    except Exception as page_error:
                        logger.error(f"New page creation failed: {page_error}")
                        message = f"Page recovery failed: {page_error}"
                        log(message)
                        screenshot = await self._evidence(page, case, step_index, outcome)
                        return result(CaseStatus.FAIL, message, screenshot, outcome), page
                    page.remove_listener("console", on_console)
                    await best_effort(self.sessions.close_page(session, page), describe="Close stale page")
                    page = fresh
                    page.on("console", on_console)

            return result(CaseStatus.SKIP, "Case retry policy allows no attempts"), page
        finally:
            page.remove_listener("console", on_console)

    async def _run_steps(self, session, page, case: TestCase, environment_url: str, executor: StepExecutor, log):
        """Returns (index, outcome) of the first failing step, or (last index, None)."""
        log(f"Navigating to {environment_url}")
        await page.goto(environment_url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        index = 0
        for index, step in enumerate(case.steps):
            log(f"Step {index + 1}: {step.action}")
            outcome = await executor.execute(session, page, step, case.test_data)
            if not outcome.success:
                log(f"Step {index + 1} failed: {outcome.error}")
                if outcome.failure:
                    for line in outcome.failure.as_log_lines():
                        logger.info(f"  {line}")
                return index, outcome
            log("Step completed successfully")
        return index, None

    async def _evidence(self, page, case: TestCase, step_index: int, outcome: StepOutcome | None) -> str:
        captured = await capture_failure_screenshot(
            page,
            self.screenshot_store,
            case.id,
            step_index,
            selector=outcome.selector if outcome else None,
        )
        return captured.value_or("")
