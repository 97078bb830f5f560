"""
Test-entry runner.

Functions annotated with `test` (or `evm_test`) are run one by one, each in a
fresh storage. The annotation's arguments bind parameters to addresses:

    "attributes": {"test": {"admin": "@0x42"}, "expected_failure": {"abort_code": 7}}

A test passes when it returns normally, or when it aborts and is annotated
with `expected_failure` (and the abort code matches, if one is given).
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from core.context import ProjectContext
from core.diagnostics import Diagnostic, Location
from core.utils import debug
from move.ir import Function
from move.types import ADDRESS, SIGNER, RefType
from runtime.errors import AbortError, ExecutionError
from runtime.interpreter import ensure_checked, execute
from runtime.storage import GlobalStorage

TEST_ATTRIBUTES = ("test", "evm_test")
EXPECTED_FAILURE = "expected_failure"

PASS = "pass"
FAIL = "fail"
ERROR = "error"


@dataclass
class TestResult:
    __test__ = False  # not a pytest class

    name: str
    status: str
    message: str = ""
    abort_code: Optional[int] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == PASS


def is_test_entry(func: Function) -> bool:
    return any(attr in func.attributes for attr in TEST_ATTRIBUTES)


def collect_tests(ctx: ProjectContext, module_ids: Optional[Iterable[str]] = None) -> List[Function]:
    selected = set(module_ids) if module_ids is not None else set(ctx.modules)
    tests = []
    for module_id in sorted(selected):
        module = ctx.modules.get(module_id)
        if module is None:
            continue
        tests.extend(f for f in module.functions.values() if is_test_entry(f))
    return tests


def _test_bindings(func: Function) -> dict:
    for attr in TEST_ATTRIBUTES:
        if attr in func.attributes:
            return func.attributes[attr]
    return {}


def validate_test(func: Function) -> List[Diagnostic]:
    """Shape problems that make a test entry unrunnable."""
    location = Location(func.module, function=func.name, line=func.line)
    problems = []
    if func.type_params:
        problems.append(f"Test '{func.name}' must not be generic")
    if func.ret_types:
        problems.append(f"Test '{func.name}' must not return values")
    for param in func.params:
        typ = param.typ.referent if isinstance(param.typ, RefType) else param.typ
        if typ not in (SIGNER, ADDRESS):
            problems.append(f"Test parameter '{param.name}' has type '{param.typ}', expected signer or address")
    bindings = _test_bindings(func)
    if len(bindings) != len(func.params):
        problems.append(f"Test '{func.name}' takes {len(func.params)} parameter(s) but {len(bindings)} are bound")
    else:
        for param in func.params:
            if param.name not in bindings:
                problems.append(f"Test parameter '{param.name}' is not bound to an address")
    return [Diagnostic("InvalidTestEntry", msg, location) for msg in problems]


def run_test(
    ctx: ProjectContext,
    func: Function,
    storage_factory: Callable[[], GlobalStorage] = GlobalStorage,
) -> TestResult:
    name = func.qualified_name
    diagnostics = validate_test(func)
    if diagnostics:
        return TestResult(name, ERROR, diagnostics[0].message, diagnostics=diagnostics)

    bindings = _test_bindings(func)
    args = [bindings[p.name] for p in func.params]
    expected = func.attributes.get(EXPECTED_FAILURE)
    try:
        execute(ctx, func, args, storage=storage_factory())
    except AbortError as e:
        if expected is None:
            return TestResult(name, FAIL, f"aborted with code {e.code}", abort_code=e.code)
        wanted = expected.get("abort_code")
        if wanted is not None and int(wanted) != e.code:
            return TestResult(name, FAIL, f"aborted with code {e.code}, expected {wanted}", abort_code=e.code)
        return TestResult(name, PASS, f"aborted with code {e.code} as expected", abort_code=e.code)
    except ExecutionError as e:
        if expected is not None and expected.get("abort_code") is None:
            return TestResult(name, PASS, f"failed as expected: {e}")
        return TestResult(name, FAIL, str(e))

    if expected is not None:
        return TestResult(name, FAIL, "expected failure but the test succeeded")
    return TestResult(name, PASS)


def run_tests(
    ctx: ProjectContext,
    module_ids: Optional[Iterable[str]] = None,
    storage_factory: Callable[[], GlobalStorage] = GlobalStorage,
) -> List[TestResult]:
    """Run every test entry of the selected modules (all if None)."""
    ensure_checked(ctx)
    results = []
    for func in collect_tests(ctx, module_ids):
        debug(f"Running test {func.qualified_name}")
        result = run_test(ctx, func, storage_factory)
        debug(f"  {result.status}: {result.message}" if result.message else f"  {result.status}")
        results.append(result)
    return results
