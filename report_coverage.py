"""Run the test suite under coverage and list the chatpatch functions below a threshold."""
import argparse
import ast
import os
import subprocess
import sys

import coverage

SOURCES = ["chatpatch", "cli", "pattern", "application_state"]


def get_function_bounds(filename):
    """
    Return (qualified_name, start_line, end_line) for every function in a file.
    Methods are reported as `Class.method`.
    """
    try:
        with open(filename, "r", encoding="utf-8") as f:
            tree = ast.parse(f.read(), filename=filename)
    except (OSError, SyntaxError):
        return []

    bounds = []

    # Nested functions are not listed; their lines count toward the enclosing function.
    def visit(node, prefix):
        for child in ast.iter_child_nodes(node):
            if isinstance(child, ast.ClassDef):
                visit(child, f"{prefix}{child.name}.")
            elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                bounds.append((f"{prefix}{child.name}", child.lineno, child.end_lineno))

    visit(tree, "")
    return bounds


def function_coverage(cov, filename):
    _, statements, _, missing, _ = cov.analysis2(filename)
    executable_lines = set(statements)
    covered_lines = executable_lines - set(missing)

    for name, start, end in get_function_bounds(filename):
        func_executable = {l for l in executable_lines if start <= l <= end}
        if not func_executable:
            continue # Only a docstring or `...`
        func_covered = func_executable & covered_lines
        yield name, len(func_covered) * 100 / len(func_executable)


def main():
    parser = argparse.ArgumentParser(description="Run pytest and report function-level coverage for chatpatch.")
    parser.add_argument("--threshold", type=int, default=100, help="Report functions below this percentage (default 100).")
    parser.add_argument("--fail-under", type=int, help="Exit with 2 when any function is below this percentage.")
    args, pytest_args = parser.parse_known_args()

    # Test output goes to stderr so the report is alone on stdout
    cmd = [sys.executable, "-m", "pytest"] + [f"--cov={s}" for s in SOURCES] + pytest_args
    print(f"Running: {' '.join(cmd)}", file=sys.stderr)
    tests = subprocess.run(cmd, check=False, stdout=sys.stderr, stderr=sys.stderr)

    cov = coverage.Coverage()
    try:
        cov.load()
    except coverage.CoverageException as e:
        print(f"Error: Could not load .coverage data: {e}", file=sys.stderr)
        return 1

    cwd = os.getcwd()
    results = []
    for filename in cov.get_data().measured_files():
        if not filename.startswith(cwd) or os.sep + "tests" + os.sep in filename:
            continue
        relative_filename = os.path.relpath(filename, cwd).replace("\\", "/")
        try:
            for name, percent in function_coverage(cov, filename):
                if percent < args.threshold:
                    results.append((f"{relative_filename}:{name}", percent))
        except coverage.CoverageException:
            # File removed since the run
            continue

    results.sort(key=lambda x: (x[1], x[0]))
    for name, pct in results:
        print(f"{name}: {int(pct)}%")

    if tests.returncode != 0:
        return tests.returncode
    if args.fail_under is not None and any(pct < args.fail_under for _, pct in results):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
