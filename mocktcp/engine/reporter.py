"""Check reporting for receive-and-verify actions."""
from typing import Any, List, Optional

import structlog

from mocktcp.exceptions import VerificationMismatch
from mocktcp.models import CheckResult

_logger = structlog.get_logger()


class CheckRecorder:
    """
    Records every check and keeps going on mismatches.

    A mismatch is a failed check, never an error that stops the
    connection, so one run can surface several independent failures.
    Call assert_all_passed() at the end of a test to turn them into
    an exception.
    """

    def __init__(self, logger: Optional[Any] = None) -> None:
        self.results: List[CheckResult] = []
        self.log = logger if logger is not None else _logger

    def report(self, actual: Any, expected: Any, label: str) -> CheckResult:
        result = CheckResult(label=label, passed=actual == expected, actual=actual, expected=expected)
        self.results.append(result)
        if result.passed:
            self.log.info("check_passed", label=label)
        else:
            self.log.warning("check_failed", label=label, actual=repr(actual), expected=repr(expected))
        return result

    @property
    def failures(self) -> List[CheckResult]:
        return [result for result in self.results if not result.passed]

    @property
    def passed(self) -> bool:
        return not self.failures

    def assert_all_passed(self) -> None:
        failures = self.failures
        if failures:
            labels = [result.label for result in failures]
            raise VerificationMismatch(
                f"{len(failures)} of {len(self.results)} checks failed: " + "; ".join(labels),
                labels=labels,
            )

    def reset(self) -> None:
        self.results.clear()


class FailFastReporter(CheckRecorder):
    """Records like CheckRecorder but raises on the first mismatch, which stops the run."""

    def report(self, actual: Any, expected: Any, label: str) -> CheckResult:
        result = super().report(actual, expected, label)
        if not result.passed:
            raise VerificationMismatch(f"Check failed: {label}", labels=[label])
        return result
