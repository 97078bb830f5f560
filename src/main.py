"""
Main entry point: check, run and test declaration sets.
"""

import sys
import os
import argparse
from typing import List, Optional

from core.utils import debug, error, info
from core.diagnostics import CheckFailed
from reporter import OutputMode, report_diagnostics, report_execution_error, report_tests, report_values
from cli.helpers import collect_declaration_files, load_context, parse_cli_value, parse_type_args
from runtime.errors import ExecutionError


def _load(input_path: str):
    decl_files = collect_declaration_files(input_path)
    if not decl_files:
        error(f"No declaration files found at: {input_path}")
        return None
    try:
        return load_context(decl_files)
    except (OSError, ValueError):
        # load_context already logged the cause
        return None


def _output_file(output_dir: Optional[str], input_path: str, output_mode: OutputMode):
    if not output_dir:
        return None
    os.makedirs(output_dir, exist_ok=True)
    project_name = os.path.splitext(os.path.basename(os.path.normpath(input_path)))[0]
    ext = ".json" if output_mode == OutputMode.JSON else ".txt"
    output_path = os.path.join(output_dir, f"OUT-{project_name}{ext}")
    print(f"Writing results to: {output_path}")
    return open(output_path, "w", encoding="utf-8")


def check_main(input_path: str, output_mode: OutputMode = OutputMode.SHORT, output_dir: Optional[str] = None) -> int:
    """Check every loaded module; exit code 1 on any static error."""
    ctx = _load(input_path)
    if ctx is None:
        return 1

    from analysis import run_checks

    debug("Running checks...")
    diagnostics = run_checks(ctx)

    output_file = _output_file(output_dir, input_path, output_mode)
    try:
        num_errors = report_diagnostics(diagnostics, output_mode, output_file)
    finally:
        if output_file:
            output_file.close()
    return 1 if num_errors > 0 else 0


def run_main(
    input_path: str,
    function: str,
    args: List[str],
    type_args: List[str],
    output_mode: OutputMode = OutputMode.SHORT,
) -> int:
    """Check, then execute one function in a fresh storage."""
    ctx = _load(input_path)
    if ctx is None:
        return 1
    func = ctx.get_function(function)
    if func is None:
        error(f"Function not found: {function}")
        return 1

    from runtime.interpreter import execute

    try:
        types = parse_type_args(type_args, func.module)
        values = execute(ctx, func, [parse_cli_value(a) for a in args], type_args=types)
    except CheckFailed as e:
        report_diagnostics(e.diagnostics, output_mode)
        return 1
    except ExecutionError as e:
        report_execution_error(e, output_mode)
        return 2
    except ValueError as e:
        error(str(e))
        return 1

    report_values(values, output_mode)
    return 0


def run_tests_main(input_path: str, output_mode: OutputMode = OutputMode.SHORT, output_dir: Optional[str] = None) -> int:
    """Run every test entry; exit code 1 if any test did not pass."""
    ctx = _load(input_path)
    if ctx is None:
        return 1

    from runtime.testing import run_tests

    try:
        results = run_tests(ctx)
    except CheckFailed as e:
        report_diagnostics(e.diagnostics, output_mode)
        return 1

    if len(results) > 1:
        info(f"Ran {len(results)} test(s)")
    output_file = _output_file(output_dir, input_path, output_mode)
    try:
        num_failed = report_tests(results, output_mode, output_file)
    finally:
        if output_file:
            output_file.close()
    return 1 if num_failed > 0 else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Type, resource and borrow checker and interpreter for Move declarations")
    sub = parser.add_subparsers(dest="command", required=True)

    def _common(p: argparse.ArgumentParser) -> None:
        p.add_argument("input_path", help="Declaration file (.json) or directory")
        p.add_argument("-o", "--output", choices=["short", "full", "json"], default="short", help="Output verbosity")

    p_check = sub.add_parser("check", help="Run all static checks and print diagnostics")
    _common(p_check)
    p_check.add_argument("-O", "--output-dir", metavar="DIR", help="Save results to a file in DIR")

    p_run = sub.add_parser("run", help="Check, then execute a function")
    _common(p_run)
    p_run.add_argument("function", help="Fully qualified function name (e.g. 0x2::M::f)")
    p_run.add_argument(
        "--arg",
        action="append",
        default=[],
        metavar="VALUE",
        help="Argument value, in parameter order (can be specified multiple times)",
    )
    p_run.add_argument(
        "--type-arg",
        action="append",
        default=[],
        metavar="TYPE",
        help="Type argument, e.g. 'u64' or '0x2::M::Coin' (can be specified multiple times)",
    )

    p_test = sub.add_parser("test", help="Run test entries (functions annotated with test/evm_test)")
    _common(p_test)
    p_test.add_argument("-O", "--output-dir", metavar="DIR", help="Save results to a file in DIR")
    return parser


def cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output_mode = OutputMode(args.output)
    if args.command == "check":
        return check_main(args.input_path, output_mode, args.output_dir)
    if args.command == "run":
        return run_main(args.input_path, args.function, args.arg, args.type_arg, output_mode)
    return run_tests_main(args.input_path, output_mode, args.output_dir)


if __name__ == "__main__":
    sys.exit(cli())
