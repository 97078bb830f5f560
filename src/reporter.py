import json
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO

from core.config import USE_COLOR
from core.diagnostics import Diagnostic
from runtime.testing import ERROR, FAIL, PASS, TestResult
from runtime.values import format_value, to_json
from templates import render


class _C:
    """ANSI color codes."""

    RESET = "\033[0m" if USE_COLOR else ""
    BOLD = "\033[1m" if USE_COLOR else ""
    DIM = "\033[2m" if USE_COLOR else ""
    RED = "\033[31m" if USE_COLOR else ""
    GREEN = "\033[32m" if USE_COLOR else ""
    YELLOW = "\033[33m" if USE_COLOR else ""
    CYAN = "\033[36m" if USE_COLOR else ""
    BRIGHT_RED = "\033[91m" if USE_COLOR else ""


def _status_color(status: str) -> str:
    """Color for a diagnostic severity or a test status."""
    colors = {
        "error": f"{_C.BOLD}{_C.BRIGHT_RED}",
        "warning": _C.YELLOW,
        PASS: _C.GREEN,
        FAIL: _C.RED,
        ERROR: f"{_C.BOLD}{_C.BRIGHT_RED}",
    }
    return colors.get(status, "")


class OutputMode(Enum):
    """Output verbosity modes."""

    SHORT = "short"  # One line per diagnostic
    FULL = "full"  # + notes, component and description
    JSON = "json"  # Machine-readable JSON output


def _printer(output_file: Optional[TextIO]):
    def _print(msg: str = ""):
        print(msg)
        if output_file:
            print(msg, file=output_file)

    return _print


# =============================================================================
# Diagnostics
# =============================================================================


def diagnostic_to_dict(diag: Diagnostic) -> Dict[str, Any]:
    loc = diag.location
    return {
        "code": diag.code,
        "severity": diag.severity,
        "component": diag.schema.component,
        "message": diag.message,
        "location": {
            "module": loc.module,
            "function": loc.function,
            "declaration": loc.declaration,
            "line": loc.line,
        },
        "notes": list(diag.notes),
    }


def report_diagnostics(
    diagnostics: List[Diagnostic],
    output_mode: OutputMode = OutputMode.SHORT,
    output_file: Optional[TextIO] = None,
) -> int:
    """
    Report static diagnostics.

    Returns: Number of errors (warnings are reported but not counted)
    """
    _print = _printer(output_file)
    errors = sum(1 for d in diagnostics if d.is_error)
    warnings = len(diagnostics) - errors

    if output_mode == OutputMode.JSON:
        payload = {
            "diagnostics": [diagnostic_to_dict(d) for d in diagnostics],
            "errors": errors,
            "warnings": warnings,
        }
        _print(json.dumps(payload, indent=2))
        return errors

    if not diagnostics:
        _print("No issues found")
        return 0

    if output_mode == OutputMode.FULL:
        _print(
            render(
                "diagnostics.j2",
                diagnostics=diagnostics,
                errors=errors,
                warnings=warnings,
                color=_status_color,
                reset=_C.RESET,
            ).rstrip("\n")
        )
        return errors

    for diag in diagnostics:
        color = _status_color(diag.severity)
        _print(f"{color}{diag.code}{_C.RESET} {_C.DIM}{diag.location}{_C.RESET}: {diag.message}")
    _print(f"\n{errors} error(s), {warnings} warning(s)")
    return errors


# =============================================================================
# Execution results
# =============================================================================


def report_values(values: List[Any], output_mode: OutputMode = OutputMode.SHORT) -> None:
    """Print the return values of an executed function."""
    if output_mode == OutputMode.JSON:
        print(json.dumps({"result": [to_json(v) for v in values]}, indent=2))
        return
    if not values:
        print("Executed successfully (no return values)")
        return
    for i, value in enumerate(values):
        print(f"[{i}] {format_value(value)}")


def report_execution_error(exc: Exception, output_mode: OutputMode = OutputMode.SHORT) -> None:
    if output_mode == OutputMode.JSON:
        payload: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
        code = getattr(exc, "code", None)
        if code is not None:
            payload["abort_code"] = code
        print(json.dumps(payload, indent=2))
        return
    print(f"{_status_color('error')}{type(exc).__name__}{_C.RESET}: {exc}")


# =============================================================================
# Test runs
# =============================================================================


def result_to_dict(result: TestResult) -> Dict[str, Any]:
    return {
        "name": result.name,
        "status": result.status,
        "message": result.message,
        "abort_code": result.abort_code,
        "diagnostics": [diagnostic_to_dict(d) for d in result.diagnostics],
    }


def report_tests(
    results: List[TestResult],
    output_mode: OutputMode = OutputMode.SHORT,
    output_file: Optional[TextIO] = None,
) -> int:
    """
    Report test-entry results.

    Returns: Number of tests that did not pass
    """
    _print = _printer(output_file)
    passed = sum(1 for r in results if r.status == PASS)
    failed = sum(1 for r in results if r.status == FAIL)
    errored = sum(1 for r in results if r.status == ERROR)

    if output_mode == OutputMode.JSON:
        payload = {
            "tests": [result_to_dict(r) for r in results],
            "passed": passed,
            "failed": failed,
            "errors": errored,
        }
        _print(json.dumps(payload, indent=2))
        return failed + errored

    if not results:
        _print("No test entries found")
        return 0

    _print(
        render(
            "test_report.j2",
            results=results,
            passed=passed,
            failed=failed,
            errored=errored,
            color=_status_color,
            reset=_C.RESET,
        ).rstrip("\n")
    )
    return failed + errored
