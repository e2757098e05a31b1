#!/usr/bin/env python
"""
Test runner script for Comic Aggregator.

Runs each test module under tests/ as its own pytest suite, then an optional
coverage run over the whole package, and prints a per-suite summary.

Core suites (queue, integrity engine, orchestrator, cache) must pass; the
remaining modules are reported but do not fail the run.

Usage:
    python run_tests.py              # every module, then coverage
    python run_tests.py --core       # core suites only
    python run_tests.py --no-cov     # skip the coverage run
    python run_tests.py -k dedup     # forward a pytest -k expression
"""

import argparse
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).parent
TESTS_DIR = ROOT / "tests"

CORE_SUITES = (
    "test_request_queue.py",
    "test_data_integrity.py",
    "test_scrape_orchestrator.py",
    "test_cache_manager.py",
)


def discover_suites(core_only: bool) -> list[Path]:
    """Test modules to run, core suites first."""
    modules = sorted(TESTS_DIR.glob("test_*.py"))
    core = [module for module in modules if module.name in CORE_SUITES]
    if core_only:
        return core
    return core + [module for module in modules if module.name not in CORE_SUITES]


def run_suite(name: str, args: list[str]) -> tuple[bool, float]:
    """Run pytest with ``args``, streaming its output; return (passed, seconds)."""
    print(f"\n{'=' * 80}")
    print(f"Running: {name}")
    print(f"{'=' * 80}\n", flush=True)

    started = time.monotonic()
    result = subprocess.run([sys.executable, "-m", "pytest", *args], cwd=ROOT)
    # Exit code 5 means every test was deselected by -k
    return result.returncode in (0, 5), time.monotonic() - started


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the Comic Aggregator test suites")
    parser.add_argument("--core", action="store_true", help="Run only the core suites")
    parser.add_argument("--no-cov", action="store_true", help="Skip the coverage run")
    parser.add_argument("-k", dest="keyword", help="pytest -k expression passed to every suite")
    options = parser.parse_args()

    extra = ["-k", options.keyword] if options.keyword else []

    results = []
    for module in discover_suites(options.core):
        passed, seconds = run_suite(module.stem, [str(module.relative_to(ROOT)), "-v", "--tb=short", *extra])
        results.append((module.stem, module.name in CORE_SUITES, passed, seconds))

    if not options.no_cov:
        passed, seconds = run_suite(
            "coverage",
            ["tests", "-q", "--cov=comic_aggregator", "--cov-report=term-missing", *extra],
        )
        results.append(("coverage", False, passed, seconds))

    print(f"\n{'=' * 80}")
    print(" Comic Aggregator - Test Summary")
    print(f"{'=' * 80}\n")

    for name, required, passed, seconds in results:
        status = "PASSED" if passed else "FAILED"
        kind = "core" if required else "extra"
        print(f"{status:8} {kind:6} {seconds:7.1f}s  {name}")

    failed_core = [name for name, required, passed, _ in results if required and not passed]
    failed_extra = [name for name, required, passed, _ in results if not required and not passed]
    passed_count = sum(1 for _, _, passed, _ in results if passed)
    print(f"\n{passed_count}/{len(results)} suites passed")

    if failed_extra:
        print(f"Non-core failures: {', '.join(failed_extra)}")
    if failed_core:
        print(f"Core suites failed: {', '.join(failed_core)}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
