from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CaseStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(frozen=True)
class Step:
    action: str
    expected_result: str = ""


@dataclass(frozen=True)
class TestCase:
    id: str
    name: str
    steps: tuple[Step, ...] = ()
    test_data: dict = field(default_factory=dict)

    __test__ = False

    @classmethod
    def from_row(cls, row: dict) -> "TestCase":
        """Build a case from a `test_cases` row (steps are `{action, expected_result}` objects)."""
        steps = []
        for raw in row.get("steps") or []:
            if isinstance(raw, str):
                steps.append(Step(action=raw))
                continue
            steps.append(Step(
                action=str(raw.get("action") or ""),
                expected_result=str(raw.get("expected_result") or raw.get("expected") or ""),
            ))
        test_data = {str(k): "" if v is None else str(v) for k, v in (row.get("test_data") or {}).items()}
        return cls(
            id=str(row.get("id") or ""),
            name=row.get("name") or "Unnamed",
            steps=tuple(steps),
            test_data=test_data,
        )


# Operations: the typed form of a step's action text.

@dataclass(frozen=True)
class Navigate:
    target: str


@dataclass(frozen=True)
class Click:
    target: str


@dataclass(frozen=True)
class Type:
    target: str
    value: str
    field: str | None = None


@dataclass(frozen=True)
class Select:
    target: str
    option: str | None = None


@dataclass(frozen=True)
class Upload:
    target: str
    file_path: str | None = None


@dataclass(frozen=True)
class Scroll:
    direction: str = "down"


@dataclass(frozen=True)
class Hover:
    target: str


@dataclass(frozen=True)
class Wait:
    duration_ms: int = 2000


@dataclass(frozen=True)
class KeyPress:
    key: str = "Enter"


@dataclass(frozen=True)
class DragDrop:
    source: str
    target: str


@dataclass(frozen=True)
class Focus:
    target: str


@dataclass(frozen=True)
class Clear:
    target: str


Operation = Union[Navigate, Click, Type, Select, Upload, Scroll, Hover, Wait, KeyPress, DragDrop, Focus, Clear]


class Strategy(str, Enum):
    TEST_ID = "data-testid"
    BUTTON_TEXT = "button-text"
    LINK_TEXT = "link-text"
    TEXT = "text"
    ARIA_LABEL = "aria-label"
    PLACEHOLDER = "placeholder"
    NAME = "name"
    ID = "id"
    CLASS = "class"
    INPUT_TYPE = "input-type"
    TAG = "tag-fallback"


@dataclass(frozen=True)
class Locator:
    selector: str
    strategy: Strategy


@dataclass(frozen=True)
class FailureDetails:
    element: str
    expected: str
    actual: str
    selector: str
    page_url: str

    def as_log_lines(self) -> list[str]:
        return [
            f"Element: {self.element}",
            f"Expected: {self.expected}",
            f"Actual: {self.actual}",
            f"Selector: {self.selector}",
            f"Page URL: {self.page_url}",
        ]


@dataclass(frozen=True)
class StepOutcome:
    success: bool
    selector: str | None = None
    value: str | None = None
    error: str | None = None
    failure: FailureDetails | None = None


@dataclass
class TestRun:
    id: str
    project_id: str
    test_case_ids: list[str]
    status: RunStatus = RunStatus.PENDING
    environment: str = "staging"
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None

    __test__ = False


@dataclass
class TestResult:
    test_run_id: str
    test_case_id: str
    status: CaseStatus
    duration_ms: int = 0
    error_message: str | None = None
    logs: list[str] = field(default_factory=list)
    screenshots: list[str] = field(default_factory=list)
    failure_details: FailureDetails | None = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    __test__ = False

    def to_row(self) -> dict:
        logs = list(self.logs)
        if self.failure_details:
            logs.extend(self.failure_details.as_log_lines())
        return {
            "test_run_id": self.test_run_id,
            "test_case_id": self.test_case_id,
            "status": self.status.value,
            "duration_seconds": round(self.duration_ms / 1000),
            "error_message": self.error_message,
            "logs": "\n".join(logs),
            "screenshots": list(self.screenshots),
            "executed_at": self.executed_at.isoformat(),
        }
