#!/usr/bin/env python3

import argparse
import asyncio
import html
import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import httpx

from evidence import LocalScreenshotStore
from models import TestCase
from orchestrator import ExecutionRequest, TestRunOrchestrator, prepare_run
from run_store import LocalRunStore
from session_manager import SessionManager
from settings import Settings

LOCAL_PROJECT_ID = "local"


def load_test_cases(path: Path) -> list[TestCase]:
    """Read a JSON list of test case rows; cases without an id get a positional one."""
    with open(path, encoding="utf-8") as f:
        rows = json.load(f)
    if isinstance(rows, dict):
        rows = rows.get("test_cases") or rows.get("tests") or []
    cases = []
    for n, row in enumerate(rows, start=1):
        row = dict(row)
        row.setdefault("id", f"case-{n}")
        cases.append(TestCase.from_row(row))
    return cases


def write_html_report(results: list[dict], names: dict, html_path: Path):
    passed = sum(1 for r in results if r.get("status") == "pass")
    failed = sum(1 for r in results if r.get("status") == "fail")
    total = len(results)

    report = f"""
<html><head><title>Test Run Report</title>
<style>
body {{ font-family: Arial, sans-serif; padding: 20px; }}
.summary {{ margin-bottom: 16px; }}
.pass {{ color: #0a7b44; }}
.fail {{ color: #b00020; }}
pre {{ background: #f6f8fa; padding: 12px; border-radius: 6px; overflow: auto; }}
</style>
</head><body>
  <h1>Test Run Report</h1>
  <div class="summary">
    <strong>Total:</strong> {total} &nbsp; <strong class="pass">Passed:</strong> {passed} &nbsp; <strong class="fail">Failed:</strong> {failed}
  </div>
  <hr />
  {''.join(render_test_result(r, names.get(r.get("test_case_id"), "Unnamed Test")) for r in results)}
</body></html>
"""
    with open(html_path, "w", encoding="utf-8") as f:
        f.write(report)


def render_test_result(result: dict, name: str) -> str:
    status = result.get("status", "unknown")
    status_class = "pass" if status == "pass" else "fail"
    error = result.get("error_message") or ""
    screenshots = result.get("screenshots") or []
    img_tags = "".join(
        f"<div><img src=\"screenshots/{html.escape(Path(s).name)}\" style=\"max-width: 100%; border: 1px solid #ddd;\" /></div>"
        for s in screenshots
    )
    error_block = f"<pre>{html.escape(error)}</pre>" if error else ""
    return f"""
  <section>
    <h3 class="{status_class}">{html.escape(name)} ({status.upper()}, {result.get('duration_seconds', 0)}s)</h3>
    <details>
      <summary>Log</summary>
      <pre>{html.escape(result.get('logs') or '')}</pre>
    </details>
    {img_tags}
    {error_block}
  </section>
  <hr />
"""


def print_event(event: dict, verbose: bool = False):
    kind = event.get("type")
    if kind is None and event.get("success"):
        print(f"🏃 Test run {event.get('testRunId')} started on {event.get('environmentUrl')}")
    elif kind == "progress":
        print(f"→ [{event['current']}/{event['total']}] {event['testName']}")
    elif kind == "test_complete":
        mark = "✓" if event["status"] == "pass" else "✖"
        print(f"{mark} {event['testName']}: {event['status'].upper()}")
        if event.get("error"):
            print(f"   {event['error']}")
        if verbose and event.get("screenshot"):
            print(f"📸 Failure screenshot saved: {event['screenshot']}")
    elif kind == "complete":
        print(f"✅ Done. Total: {event['total']}, Passed: {event['passed']}, Failed: {event['failed']} ({event['executionTime']}ms)")
    elif kind == "error":
        print(f"✖ Test run failed: {event['error']}")


async def run_cases(args: argparse.Namespace, cases: list[TestCase], run_dir: Path) -> LocalRunStore:
    settings = replace(
        Settings.from_env(),
        browser_provider="local",
        headless=not args.headful,
        local_environment_url=args.base_url,
    )
    store = LocalRunStore(projects={LOCAL_PROJECT_ID: {"id": LOCAL_PROJECT_ID, "settings": {}}}, test_cases=cases)
    request = ExecutionRequest(
        project_id=LOCAL_PROJECT_ID,
        test_case_ids=tuple(case.id for case in cases),
        browser_type=args.browser,
        environment="local",
    )
    prepared = await prepare_run(store, request, settings.local_environment_url)

    async with httpx.AsyncClient(timeout=30.0) as client:
        orchestrator = TestRunOrchestrator(
            session_manager=SessionManager(settings, client),
            store=store,
            screenshot_store=LocalScreenshotStore(run_dir / "screenshots"),
            case_delay=args.case_delay,
        )
        await orchestrator.run(prepared, lambda event: print_event(event, args.verbose))
    return store


def main():
    parser = argparse.ArgumentParser(description="Run test cases locally with Playwright")
    parser.add_argument("--cases", required=True, help="Path to a JSON file of test cases")
    parser.add_argument("--base-url", required=True, help="Base URL under test")
    parser.add_argument("--browser", default="chrome", choices=["chrome", "firefox"])
    parser.add_argument("--headful", action="store_true", help="Run browser headful for debugging")
    parser.add_argument("--verbose", action="store_true", help="Print step logs")
    parser.add_argument("--case-delay", type=float, default=1.0, help="Seconds to pause between cases")
    parser.add_argument("--output-dir", default="data/runs", help="Where run directories are created")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    cases = load_test_cases(Path(args.cases))
    if not cases:
        raise SystemExit(f"No test cases found in {args.cases}")

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(args.output_dir) / f"run_{timestamp}"
    (run_dir / "screenshots").mkdir(parents=True, exist_ok=True)

    print(f"🏃 Running {len(cases)} test cases against {args.base_url}...")
    store = asyncio.run(run_cases(args, cases, run_dir))

    results_path = run_dir / "results.json"
    store.dump(results_path)
    print(f"📊 Results written: {results_path}")

    report_path = run_dir / "report.html"
    write_html_report(store.results, {case.id: case.name for case in cases}, report_path)
    print(f"📝 HTML report: {report_path}")


if __name__ == "__main__":
    main()
