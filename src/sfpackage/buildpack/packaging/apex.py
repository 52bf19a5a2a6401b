"""Runs the application's Apex tests and normalizes the results."""

import json
from pathlib import Path
from typing import Any

from pyvider.telemetry import logger

from ..exceptions import ExternalToolError, ExternalToolParseError
from ..models import NO_TESTS_DEFECT_MESSAGE, TestOutcome, TestOutcomeSet
from .runner import CommandRunner, parse_json_output

SUMMARY_OUTCOMES = {"Passed": TestOutcome.PASS, "Failed": TestOutcome.FAIL}


def outcome_from_result(result: dict[str, Any]) -> TestOutcomeSet:
    """Projects the `result` object of `apex:test:run --json`."""
    summary = result.get("summary")
    tests = result.get("tests", [])
    if not isinstance(summary, dict) or not isinstance(tests, list):
        raise ExternalToolParseError(
            "Apex test output is missing 'summary' or 'tests'."
        )
    outcome = SUMMARY_OUTCOMES.get(summary.get("outcome"))
    if outcome is None:
        raise ExternalToolParseError(
            f"Unexpected apex test summary outcome: {summary.get('outcome')!r}"
        )

    buckets: dict[str, list[str]] = {"Pass": [], "Fail": [], "Ignore": []}
    for test in tests:
        if not isinstance(test, dict):
            raise ExternalToolParseError(f"Unexpected apex test entry: {test!r}")
        name = test.get("FullName") or test.get("fullName")
        bucket = buckets.get(test.get("Outcome") or test.get("outcome"))
        if name is None or bucket is None:
            raise ExternalToolParseError(f"Unexpected apex test entry: {test!r}")
        bucket.append(name)

    return TestOutcomeSet(
        outcome=outcome,
        passed=tuple(buckets["Pass"]),
        failed=tuple(buckets["Fail"]),
        ignored=tuple(buckets["Ignore"]),
    )


def _completed_run_result(stdout: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    result = payload.get("result") if isinstance(payload, dict) else None
    if isinstance(result, dict) and isinstance(result.get("summary"), dict):
        return result
    return None


def run_tests(
    runner: CommandRunner,
    app_dir: Path,
    alias: str,
    results_path: str | None,
    results_format: str,
    wait_seconds: int,
) -> TestOutcomeSet:
    args = [
        "force:apex:test:run",
        "-u", alias,
        "-l", "RunLocalTests",
        "-w", str(wait_seconds),
        "--json",
        "-r", results_format,
        "-c",
        "-v",
    ]
    if results_path:
        args.extend(["-d", str(app_dir / results_path)])

    result = runner.run(args)
    if result.ok:
        payload = parse_json_output(result, "force:apex:test:run")
        test_result = payload.get("result")
        if not isinstance(test_result, dict):
            raise ExternalToolParseError("Apex test output has no 'result' object.")
    else:
        if NO_TESTS_DEFECT_MESSAGE in result.stderr or NO_TESTS_DEFECT_MESSAGE in result.stdout:
            logger.info("No apex tests defined, skipping", alias=alias)
            return TestOutcomeSet.empty()
        # Failing tests also exit non-zero, but still report a full result.
        test_result = _completed_run_result(result.stdout)
        if test_result is None:
            raise ExternalToolError(
                f"failed to run apex tests on {alias}:\n {result.stderr.strip()}", result
            )

    outcome = outcome_from_result(test_result)
    logger.info(
        "Apex tests finished",
        outcome=outcome.outcome.value,
        passed=len(outcome.passed),
        failed=len(outcome.failed),
        ignored=len(outcome.ignored),
    )
    return outcome
