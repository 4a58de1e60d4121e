"""
Testing Pipeline
================

Runs the tests that came with a piece of generated code before anything is
written into the project.

Steps:
1. Validate each generated test file (non-empty, contains a test construct)
2. Stage the generated files and tests into a temporary workspace
3. Run every requested category (unit / integration / e2e) that has tests
   through the TestRunner, off the event loop
4. Collect coverage with the coverage command, only when nothing failed
5. Run the quality checks (lint, type check) over the staged sources

Unrequested categories are skipped entirely. Runner timeouts are reported as
errors of kind "timeout", a runner that cannot start as "test_runner".

Quality checks are off unless a lint or type check command is configured.
The lint command is expected to print ESLint's JSON format: severity 2
messages become errors of kind "quality", the rest become warnings. Type
check output lines containing "error TS" become errors.

Usage:
    pipeline = TestingPipeline(TestRunner(), project_root=Path("/work/app"))
    result = await pipeline.run_pipeline(code, TestPipelineOptions(run_e2e=True))
    if not result.success:
        for error in result.errors:
            print(error["kind"], error["message"])
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from api.errors import TestRunnerError, TestRunnerTimeoutError
from api.generated_code import CodeFile, GeneratedCode, TestFile
from api.test_runner import CoverageReport, TestExecutionResult, TestRunner, parse_coverage_output

_logger = logging.getLogger(__name__)

DEFAULT_TEST_COMMAND = "npx vitest run {paths}"
DEFAULT_PIPELINE_TIMEOUT = 300

# Staged workspaces live here when a project root is known, so node_modules
# and the project's test config resolve from the staged files.
STAGING_DIR_NAME = ".todo-builder-staging"

CATEGORY_ORDER = ("unit", "integration", "e2e")

TEST_CONSTRUCT_PATTERN = re.compile(
    r"\b(?:describe|it|test)(?:\.\w+)?\s*\(|^\s*(?:async\s+)?def\s+test_\w*|^\s*class\s+Test\w*",
    re.MULTILINE,
)

ERROR_KIND_VALIDATION = "validation"
ERROR_KIND_TEST_FAILURE = "test_failure"
ERROR_KIND_QUALITY = "quality"

LINTED_SUFFIXES = (".ts", ".tsx")
ESLINT_SEVERITY_ERROR = 2


@dataclass
class TestPipelineOptions:
    __test__ = False

    run_unit: bool = True
    run_integration: bool = True
    run_e2e: bool = False
    generate_coverage: bool = True
    timeout_seconds: int = DEFAULT_PIPELINE_TIMEOUT
    run_quality_checks: bool = True

    def requested_categories(self) -> list[str]:
        flags = {
            "unit": self.run_unit,
            "integration": self.run_integration,
            "e2e": self.run_e2e,
        }
        return [c for c in CATEGORY_ORDER if flags[c]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_unit": self.run_unit,
            "run_integration": self.run_integration,
            "run_e2e": self.run_e2e,
            "generate_coverage": self.generate_coverage,
            "timeout_seconds": self.timeout_seconds,
            "run_quality_checks": self.run_quality_checks,
        }


@dataclass
class TestPipelineResult:
    """
    Aggregated outcome of a pipeline run.

    errors are dicts {"kind", "category", "message"}; kind is one of
    validation, test_failure, test_runner, timeout or quality.
    """
    __test__ = False

    success: bool
    tests_passed: int = 0
    tests_failed: int = 0
    coverage: CoverageReport | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    output: str = ""
    categories_run: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def timed_out(self) -> bool:
        return any(e["kind"] == TestRunnerTimeoutError.kind for e in self.errors)

    def error_messages(self) -> list[str]:
        return [
            f"[{e['kind']}] {e['category']}: {e['message']}" if e.get("category")
            else f"[{e['kind']}] {e['message']}"
            for e in self.errors
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "coverage": self.coverage.to_dict() if self.coverage else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "output": self.output,
            "categories_run": self.categories_run,
            "duration_seconds": self.duration_seconds,
        }


def _error(kind: str, message: str, category: str | None = None) -> dict[str, Any]:
    return {"kind": kind, "category": category, "message": message}


def validate_test_file(test: TestFile) -> str | None:
    """Return why a generated test file is unusable, or None if it is fine."""
    if not test.content.strip():
        return f"Test file {test.path} is empty"
    if not TEST_CONSTRUCT_PATTERN.search(test.content):
        return f"Test file {test.path} contains no test cases"
    return None


class TestingPipeline:
    """Validate, stage and run generated tests through a TestRunner."""

    __test__ = False

    def __init__(
        self,
        runner: TestRunner | None = None,
        project_root: Path | None = None,
        test_command: str = DEFAULT_TEST_COMMAND,
        coverage_command: str = "",
        default_timeout: int = DEFAULT_PIPELINE_TIMEOUT,
        lint_command: str = "",
        typecheck_command: str = "",
    ):
        self.runner = runner or TestRunner(default_timeout=default_timeout)
        self.project_root = Path(project_root).resolve() if project_root else None
        self.test_command = test_command
        self.coverage_command = coverage_command
        self.default_timeout = default_timeout
        self.lint_command = lint_command
        self.typecheck_command = typecheck_command

    async def run_pipeline(
        self,
        generated_code: GeneratedCode,
        options: TestPipelineOptions | None = None,
    ) -> TestPipelineResult:
        options = options or TestPipelineOptions(timeout_seconds=self.default_timeout)
        started = datetime.now(timezone.utc)
        result = TestPipelineResult(success=False)

        valid_tests: list[TestFile] = []
        for test in generated_code.tests:
            problem = validate_test_file(test)
            if problem:
                result.errors.append(_error(ERROR_KIND_VALIDATION, problem, test.type))
            else:
                valid_tests.append(test)

        by_category: dict[str, list[TestFile]] = {c: [] for c in CATEGORY_ORDER}
        for test in valid_tests:
            by_category.setdefault(test.type, []).append(test)

        to_run = [c for c in options.requested_categories() if by_category.get(c)]
        if not to_run:
            result.warnings.append("No generated tests in the requested categories")

        check_quality = options.run_quality_checks and bool(self.lint_command or self.typecheck_command)

        if to_run or check_quality:
            staging_dir = self._create_staging_dir()
            try:
                self._stage(staging_dir, generated_code)
                outputs = []
                for category in to_run:
                    run = await self._run_category(staging_dir, by_category[category], options)
                    result.categories_run.append(category)
                    outputs.append(f"=== {category} ===\n{run.output}")
                    self._collect(result, category, run)

                if to_run and options.generate_coverage:
                    if result.tests_failed or result.errors:
                        result.warnings.append("Coverage skipped because tests did not pass")
                    elif not self.coverage_command:
                        result.warnings.append("Coverage command not configured")
                    else:
                        result.coverage = await self._run_coverage(staging_dir, valid_tests, options, result)

                if check_quality:
                    await self._run_quality_checks(staging_dir, generated_code, options, result)
                result.output = "\n".join(outputs)
            finally:
                self._remove_staging_dir(staging_dir)

        result.success = not result.errors and result.tests_failed == 0
        result.duration_seconds = (datetime.now(timezone.utc) - started).total_seconds()

        _logger.info(
            "Testing pipeline finished: success=%s passed=%d failed=%d categories=%s",
            result.success, result.tests_passed, result.tests_failed, result.categories_run,
        )
        return result

    # -------------------------------------------------------------------------
    # Staging and execution
    # -------------------------------------------------------------------------

    def _create_staging_dir(self) -> Path:
        if self.project_root is not None:
            base = self.project_root / STAGING_DIR_NAME
            base.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix="run-", dir=base))
        return Path(tempfile.mkdtemp(prefix="todo-builder-tests-"))

    def _remove_staging_dir(self, staging_dir: Path) -> None:
        shutil.rmtree(staging_dir, ignore_errors=True)
        if self.project_root is None:
            return
        base = self.project_root / STAGING_DIR_NAME
        try:
            base.rmdir()
        except OSError:
            # Another run still has its workspace here
            pass

    def _stage(self, staging_dir: Path, code: GeneratedCode) -> None:
        for item in [*code.files, *code.tests]:
            target = staging_dir / item.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(item.content, encoding="utf-8")

    def _working_directory(self, staging_dir: Path) -> Path:
        return self.project_root if self.project_root is not None else staging_dir

    def _build_command(self, template: str, staging_dir: Path, items: Sequence[CodeFile | TestFile]) -> str:
        cwd = self._working_directory(staging_dir)
        paths = " ".join(
            shlex.quote((staging_dir / item.path).relative_to(cwd).as_posix()) for item in items
        )
        return template.replace("{paths}", paths)

    async def _run_category(
        self,
        staging_dir: Path,
        tests: list[TestFile],
        options: TestPipelineOptions,
    ) -> TestExecutionResult:
        command = self._build_command(self.test_command, staging_dir, tests)
        return await asyncio.to_thread(
            self.runner.run,
            command,
            self._working_directory(staging_dir),
            options.timeout_seconds,
        )

    async def _run_coverage(
        self,
        staging_dir: Path,
        tests: list[TestFile],
        options: TestPipelineOptions,
        result: TestPipelineResult,
    ) -> CoverageReport | None:
        command = self._build_command(self.coverage_command, staging_dir, tests)
        run = await asyncio.to_thread(
            self.runner.run,
            command,
            self._working_directory(staging_dir),
            options.timeout_seconds,
        )
        if run.timed_out:
            error = TestRunnerTimeoutError(run.timeout_seconds)
            result.errors.append(_error(error.kind, error.message, "coverage"))
            return None

        coverage = parse_coverage_output(run.output)
        if coverage is None:
            result.warnings.append("Coverage output could not be parsed")
        return coverage

    def _collect(self, result: TestPipelineResult, category: str, run: TestExecutionResult) -> None:
        if run.timed_out:
            error = TestRunnerTimeoutError(run.timeout_seconds)
            result.errors.append(_error(error.kind, error.message, category))
            return

        if run.exit_code is None:
            error = TestRunnerError(run.error_message or "Test runner failed to start")
            result.errors.append(_error(error.kind, error.message, category))
            return

        result.tests_passed += run.passed_tests
        failed = run.failed_tests + run.error_tests
        if not run.passed and failed == 0:
            # Non-zero exit without parseable failures still counts as one
            failed = 1
            result.errors.append(_error(
                ERROR_KIND_TEST_FAILURE,
                f"Test command exited with code {run.exit_code}",
                category,
            ))
        result.tests_failed += failed

        for failure in run.failures:
            result.errors.append(_error(
                ERROR_KIND_TEST_FAILURE,
                f"{failure.test_name}: {failure.message}",
                category,
            ))

    # -------------------------------------------------------------------------
    # Quality checks
    # -------------------------------------------------------------------------

    async def _run_quality_checks(
        self,
        staging_dir: Path,
        code: GeneratedCode,
        options: TestPipelineOptions,
        result: TestPipelineResult,
    ) -> None:
        if self.lint_command:
            sources = [f for f in code.files if f.path.endswith(LINTED_SUFFIXES)]
            if sources:
                await self._run_lint(staging_dir, sources, options, result)
        if self.typecheck_command:
            await self._run_typecheck(staging_dir, code.files, options, result)

    async def _run_quality_command(
        self,
        category: str,
        command: str,
        staging_dir: Path,
        options: TestPipelineOptions,
        result: TestPipelineResult,
    ) -> TestExecutionResult | None:
        run = await asyncio.to_thread(
            self.runner.run,
            command,
            self._working_directory(staging_dir),
            options.timeout_seconds,
        )
        if run.timed_out:
            error = TestRunnerTimeoutError(run.timeout_seconds)
            result.errors.append(_error(error.kind, error.message, category))
            return None
        if run.exit_code is None:
            result.warnings.append(
                f"Quality check '{category}' could not run: {run.error_message or 'command failed to start'}"
            )
            return None
        return run

    async def _run_lint(
        self,
        staging_dir: Path,
        sources: list[CodeFile],
        options: TestPipelineOptions,
        result: TestPipelineResult,
    ) -> None:
        command = self._build_command(self.lint_command, staging_dir, sources)
        run = await self._run_quality_command("lint", command, staging_dir, options, result)
        if run is None or not run.stdout.strip():
            return

        try:
            reports = json.loads(run.stdout)
            messages = [
                (report.get("filePath", ""), message.get("severity"), message.get("message", ""))
                for report in reports
                for message in report.get("messages", [])
            ]
        except (ValueError, TypeError, AttributeError):
            result.warnings.append("ESLint output could not be parsed")
            return

        for file_path, severity, message in messages:
            text = f"{self._display_path(staging_dir, file_path)}: {message}"
            if severity == ESLINT_SEVERITY_ERROR:
                result.errors.append(_error(ERROR_KIND_QUALITY, text, "lint"))
            else:
                result.warnings.append(text)

    async def _run_typecheck(
        self,
        staging_dir: Path,
        sources: list[CodeFile],
        options: TestPipelineOptions,
        result: TestPipelineResult,
    ) -> None:
        command = self._build_command(self.typecheck_command, staging_dir, sources)
        run = await self._run_quality_command("typecheck", command, staging_dir, options, result)
        if run is None or run.exit_code == 0:
            return

        found = False
        for line in run.output.splitlines():
            if "error TS" in line:
                found = True
                result.errors.append(_error(ERROR_KIND_QUALITY, line.strip(), "typecheck"))
        if not found:
            result.warnings.append(f"Type check exited with code {run.exit_code}")

    @staticmethod
    def _display_path(staging_dir: Path, file_path: str) -> str:
        try:
            return Path(file_path).resolve().relative_to(staging_dir.resolve()).as_posix()
        except ValueError:
            return file_path


def create_test_report(result: TestPipelineResult, output_path: str | Path) -> Path:
    """Write the pipeline result as a JSON report and return its path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    report = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        **result.to_dict(),
    }
    path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
    _logger.info("Test report written to %s", path)
    return path
