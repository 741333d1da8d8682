import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import httpx

from errors import PersistenceError
from models import RunStatus, TestCase, TestResult, TestRun
from settings import Settings

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def run_row(run: TestRun, browser_type: str, environment_url: str, user_id: str | None) -> dict:
    """The `test_runs` insert row for a freshly started run."""
    return {
        "project_id": run.project_id,
        "name": f"Test Run - {run.environment} - {run.started_at.strftime('%Y-%m-%dT%H:%M:%S')}",
        "environment": run.environment,
        "status": run.status.value,
        "trigger_type": "manual",
        "trigger_data": {
            "browserType": browser_type,
            "testCaseIds": list(run.test_case_ids),
            "environmentUrl": environment_url,
        },
        "started_by": user_id,
        "started_at": _iso(run.started_at),
        "total_tests": run.total,
        "passed_tests": run.passed,
        "failed_tests": run.failed,
    }


def progress_row(run: TestRun) -> dict:
    return {"passed_tests": run.passed, "failed_tests": run.failed}


def final_row(run: TestRun) -> dict:
    row = {
        "status": run.status.value,
        "completed_at": _iso(run.completed_at),
        "total_tests": run.total,
        "passed_tests": run.passed,
        "failed_tests": run.failed,
        "duration_seconds": run.duration_seconds,
    }
    if run.status == RunStatus.FAILED:
        row["error_message"] = run.error_message
    return row


class RunStore:
    """Projects, test cases, runs and results in Supabase, over its PostgREST API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.base_url = settings.supabase_url
        self.service_key = settings.supabase_service_key
        self.client = client

    @property
    def headers(self) -> dict:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, table: str, *, params=None, json_body=None, prefer=None) -> list:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self.client.request(
                method,
                f"{self.base_url}/rest/v1/{table}",
                params=params,
                json=json_body,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PersistenceError(
                f"{method} {table} failed with {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {table} failed: {e}") from e
        if not response.content:
            return []
        return response.json()

    async def get_user_id(self, token: str) -> str | None:
        """Look up the caller behind a bearer token. Unknown tokens yield None."""
        try:
            response = await self.client.get(
                f"{self.base_url}/auth/v1/user",
                headers={"apikey": self.service_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to get user from token: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"Token lookup returned {response.status_code}")
            return None
        return response.json().get("id")

    async def get_project(self, project_id: str) -> dict | None:
        rows = await self._request("GET", "projects", params={"select": "*", "id": f"eq.{project_id}"})
        return rows[0] if rows else None

    async def get_test_cases(self, ids: list[str]) -> list[TestCase]:
        """Fetch cases and return them in the order the ids were given."""
        if not ids:
            return []
        rows = await self._request(
            "GET", "test_cases",
            params={"select": "*", "id": f"in.({','.join(ids)})"},
        )
        by_id = {str(row.get("id")): row for row in rows}
        return [TestCase.from_row(by_id[i]) for i in ids if i in by_id]

    async def create_test_run(self, run: TestRun, browser_type: str, environment_url: str, user_id: str | None) -> str:
        rows = await self._request(
            "POST", "test_runs",
            json_body=run_row(run, browser_type, environment_url, user_id),
            prefer="return=representation",
        )
        if not rows or not rows[0].get("id"):
            raise PersistenceError("Failed to create test run record")
        return str(rows[0]["id"])

    async def update_test_run(self, run_id: str, fields: dict) -> None:
        await self._request("PATCH", "test_runs", params={"id": f"eq.{run_id}"}, json_body=fields)

    async def insert_test_result(self, result: TestResult) -> None:
        await self._request("POST", "test_results", json_body=result.to_row())


class LocalRunStore:
    """In-memory store with the same interface, for local runs and tests."""

    def __init__(self, projects: dict | None = None, test_cases: list[TestCase] | None = None):
        self.projects = dict(projects or {})
        self.test_cases = {case.id: case for case in (test_cases or [])}
        self.runs: dict[str, dict] = {}
        self.results: list[dict] = []

    async def get_user_id(self, token: str) -> str | None:
        return None

    async def get_project(self, project_id: str) -> dict | None:
        return self.projects.get(project_id)

    async def get_test_cases(self, ids: list[str]) -> list[TestCase]:
        return [self.test_cases[i] for i in ids if i in self.test_cases]

    async def create_test_run(self, run: TestRun, browser_type: str, environment_url: str, user_id: str | None) -> str:
        run_id = str(uuid.uuid4())
        self.runs[run_id] = run_row(run, browser_type, environment_url, user_id)
        return run_id

    async def update_test_run(self, run_id: str, fields: dict) -> None:
        if run_id not in self.runs:
            raise PersistenceError(f"Unknown test run {run_id}")
        self.runs[run_id].update(fields)

    async def insert_test_result(self, result: TestResult) -> None:
        self.results.append(result.to_row())

    def dump(self, path: Path) -> None:
        data = {
            "runs": self.runs,
            "results": self.results,
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
