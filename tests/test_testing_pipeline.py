"""
Tests for TestingPipeline
=========================

Most tests replace the TestRunner with a MagicMock returning canned
TestExecutionResult objects; the staging tests run real shell commands.

Run with:
    pytest tests/test_testing_pipeline.py -v
"""
import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.generated_code import CodeFile, GeneratedCode, TestFile
from api.test_runner import TestExecutionResult, TestFailure, TestRunner
from api.testing_pipeline import (
    STAGING_DIR_NAME,
    TestingPipeline,
    TestPipelineOptions,
    TestPipelineResult,
    create_test_report,
    validate_test_file,
)


UNIT_TEST = TestFile(
    path="src/components/Badge.test.tsx",
    content="import { it } from 'vitest';\nit('renders', () => {});\n",
    type="unit",
)
INTEGRATION_TEST = TestFile(
    path="src/app/api/tags/route.integration.test.ts",
    content="describe('tags', () => { test('lists', () => {}); });\n",
    type="integration",
)
E2E_TEST = TestFile(
    path="e2e/tags.spec.ts",
    content="test('adds a tag', async () => {});\n",
    type="e2e",
)


def _code(*tests):
    return GeneratedCode(
        files=[CodeFile(path="src/components/Badge.tsx", content="export const Badge = () => null;\n")],
        tests=list(tests),
    )


def _ok(passed=3, output="3 passed"):
    return TestExecutionResult(passed=True, exit_code=0, passed_tests=passed, total_tests=passed, stdout=output)


@pytest.fixture
def runner():
    mock = MagicMock(spec=TestRunner)
    mock.run.return_value = _ok()
    return mock


@pytest.fixture
def pipeline(runner, tmp_path):
    return TestingPipeline(
        runner,
        project_root=tmp_path,
        test_command="npx vitest run {paths}",
        coverage_command="npx vitest run --coverage {paths}",
    )


class TestValidateTestFile:
    def test_valid(self):
        assert validate_test_file(UNIT_TEST) is None

    def test_python_test(self):
        assert validate_test_file(TestFile(path="tests/test_x.py", content="def test_x():\n    pass\n")) is None

    def test_empty(self):
        assert "is empty" in validate_test_file(TestFile(path="a.test.ts", content="\n"))

    def test_no_cases(self):
        assert "contains no test cases" in validate_test_file(
            TestFile(path="a.test.ts", content="export const helper = 1;\n")
        )


class TestCategorySelection:
    """Only requested categories with tests are run."""

    @pytest.mark.asyncio
    async def test_unrequested_categories_are_skipped(self, pipeline, runner):
        options = TestPipelineOptions(run_unit=True, run_integration=False, run_e2e=False, generate_coverage=False)

        result = await pipeline.run_pipeline(_code(UNIT_TEST, INTEGRATION_TEST, E2E_TEST), options)

        assert result.success is True
        assert result.categories_run == ["unit"]
        assert runner.run.call_count == 1
        command = runner.run.call_args.args[0]
        assert "Badge.test.tsx" in command
        assert "route.integration.test.ts" not in command

    @pytest.mark.asyncio
    async def test_categories_run_in_order(self, pipeline, runner):
        options = TestPipelineOptions(run_e2e=True, generate_coverage=False)

        result = await pipeline.run_pipeline(_code(E2E_TEST, INTEGRATION_TEST, UNIT_TEST), options)

        assert result.categories_run == ["unit", "integration", "e2e"]
        assert result.tests_passed == 9

    @pytest.mark.asyncio
    async def test_nothing_to_run(self, pipeline, runner):
        result = await pipeline.run_pipeline(_code(E2E_TEST), TestPipelineOptions(run_e2e=False))

        assert result.success is True
        assert result.categories_run == []
        assert "No generated tests in the requested categories" in result.warnings
        runner.run.assert_not_called()


class TestFailures:
    """Runner outcomes are folded into errors."""

    @pytest.mark.asyncio
    async def test_failed_tests(self, pipeline, runner):
        runner.run.return_value = TestExecutionResult(
            passed=False,
            exit_code=1,
            passed_tests=2,
            failed_tests=1,
            failures=[TestFailure(test_name="Badge > renders", message="expected 1 to be 2")],
        )

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions())

        assert result.success is False
        assert result.tests_passed == 2
        assert result.tests_failed == 1
        assert result.errors == [{
            "kind": "test_failure",
            "category": "unit",
            "message": "Badge > renders: expected 1 to be 2",
        }]
        assert "Coverage skipped because tests did not pass" in result.warnings
        # Only the test command ran, not coverage
        assert runner.run.call_count == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_parsed_failures(self, pipeline, runner):
        runner.run.return_value = TestExecutionResult(passed=False, exit_code=2, stderr="config error")

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert result.success is False
        assert result.tests_failed == 1
        assert result.errors[0]["message"] == "Test command exited with code 2"

    @pytest.mark.asyncio
    async def test_timeout(self, pipeline, runner):
        runner.run.return_value = TestExecutionResult(
            passed=False, exit_code=None, timed_out=True, timeout_seconds=5
        )

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(timeout_seconds=5))

        assert result.success is False
        assert result.timed_out is True
        assert result.errors[0]["kind"] == "timeout"
        assert result.error_messages() == ["[timeout] unit: Test execution timed out after 5s"]

    @pytest.mark.asyncio
    async def test_runner_could_not_start(self, pipeline, runner):
        runner.run.return_value = TestExecutionResult(
            passed=False, exit_code=None, error_message="Command not found: npx"
        )

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions())

        assert result.errors[0]["kind"] == "test_runner"
        assert result.errors[0]["message"] == "Command not found: npx"

    @pytest.mark.asyncio
    async def test_invalid_test_file(self, pipeline, runner):
        broken = TestFile(path="src/lib/a.test.ts", content="export {};\n", type="unit")

        result = await pipeline.run_pipeline(_code(broken), TestPipelineOptions())

        assert result.success is False
        assert result.errors[0]["kind"] == "validation"
        runner.run.assert_not_called()


class TestCoverage:
    @pytest.mark.asyncio
    async def test_coverage_collected_after_passing_run(self, pipeline, runner):
        runner.run.side_effect = [
            _ok(),
            _ok(output="All files |   90 |   80 |   100 |   90 |"),
        ]

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions())

        assert result.success is True
        assert result.coverage.statements == 90.0
        assert result.coverage.functions == 100.0
        assert "--coverage" in runner.run.call_args_list[1].args[0]

    @pytest.mark.asyncio
    async def test_coverage_not_configured(self, runner, tmp_path):
        pipeline = TestingPipeline(runner, project_root=tmp_path, coverage_command="")

        result = await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions())

        assert result.coverage is None
        assert "Coverage command not configured" in result.warnings


class TestStaging:
    """Generated files are written to a staging dir under the project root."""

    @pytest.mark.asyncio
    async def test_files_exist_while_running_and_are_removed_after(self, runner, tmp_path):
        seen = {}

        def fake_run(command, cwd, timeout):
            staged = list((tmp_path / STAGING_DIR_NAME).glob("run-*"))
            seen["staging"] = staged
            seen["source_exists"] = (staged[0] / "src/components/Badge.tsx").exists()
            seen["cwd"] = cwd
            seen["command"] = command
            return _ok()

        runner.run.side_effect = fake_run
        pipeline = TestingPipeline(runner, project_root=tmp_path)

        await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert len(seen["staging"]) == 1
        assert seen["source_exists"] is True
        assert seen["cwd"] == tmp_path.resolve()
        assert f"{STAGING_DIR_NAME}/run-" in seen["command"]
        assert not (tmp_path / STAGING_DIR_NAME).exists()

    @pytest.mark.asyncio
    async def test_real_command_sees_staged_tests(self, tmp_path):
        pipeline = TestingPipeline(TestRunner(), project_root=tmp_path, test_command="ls {paths}")

        result = await pipeline.run_pipeline(
            _code(UNIT_TEST, INTEGRATION_TEST),
            TestPipelineOptions(generate_coverage=False),
        )

        assert result.success is True
        assert "Badge.test.tsx" in result.output
        assert "route.integration.test.ts" in result.output

    @pytest.mark.asyncio
    async def test_staging_root_kept_while_another_run_uses_it(self, runner, tmp_path):
        other_run = tmp_path / STAGING_DIR_NAME / "run-other"
        other_run.mkdir(parents=True)
        pipeline = TestingPipeline(runner, project_root=tmp_path)

        await pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert list((tmp_path / STAGING_DIR_NAME).iterdir()) == [other_run]


class TestQualityChecks:
    """Lint and type check commands run over the staged sources."""

    LINT = "npx eslint --format=json {paths}"
    TYPECHECK = "npx tsc --noEmit"

    @pytest.fixture
    def quality_pipeline(self, runner, tmp_path):
        return TestingPipeline(
            runner,
            project_root=tmp_path,
            lint_command=self.LINT,
            typecheck_command=self.TYPECHECK,
        )

    @staticmethod
    def _route(lint=None, typecheck=None):
        def fake_run(command, cwd, timeout):
            if "eslint" in command:
                return lint(command, cwd) if lint else _ok(output="[]")
            if "tsc" in command:
                return typecheck or TestExecutionResult(passed=True, exit_code=0)
            return _ok()
        return fake_run

    @pytest.mark.asyncio
    async def test_eslint_errors_and_warnings(self, quality_pipeline, runner):
        def lint(command, cwd):
            staged = Path(cwd) / command.split()[-1]
            report = [{
                "filePath": str(staged),
                "messages": [
                    {"severity": 2, "message": "Missing return type"},
                    {"severity": 1, "message": "Unexpected console statement"},
                ],
            }]
            return TestExecutionResult(passed=False, exit_code=1, stdout=json.dumps(report))

        runner.run.side_effect = self._route(lint=lint)

        result = await quality_pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert result.success is False
        assert result.tests_passed == 3
        assert result.errors == [{
            "kind": "quality",
            "category": "lint",
            "message": "src/components/Badge.tsx: Missing return type",
        }]
        assert "src/components/Badge.tsx: Unexpected console statement" in result.warnings

    @pytest.mark.asyncio
    async def test_only_typescript_sources_are_linted(self, quality_pipeline, runner):
        runner.run.side_effect = self._route()
        code = GeneratedCode(
            files=[
                CodeFile(path="src/components/Badge.tsx", content="export const Badge = () => null;\n"),
                CodeFile(path="public/badge.css", content=".badge {}\n"),
            ],
            tests=[UNIT_TEST],
        )

        await quality_pipeline.run_pipeline(code, TestPipelineOptions(generate_coverage=False))

        lint_command = next(c.args[0] for c in runner.run.call_args_list if "eslint" in c.args[0])
        assert "Badge.tsx" in lint_command
        assert "badge.css" not in lint_command
        assert "Badge.test.tsx" not in lint_command

    @pytest.mark.asyncio
    async def test_unparseable_eslint_output_is_a_warning(self, quality_pipeline, runner):
        runner.run.side_effect = self._route(
            lint=lambda command, cwd: TestExecutionResult(passed=False, exit_code=2, stdout="Oops! Something went wrong")
        )

        result = await quality_pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert result.success is True
        assert "ESLint output could not be parsed" in result.warnings

    @pytest.mark.asyncio
    async def test_type_errors(self, quality_pipeline, runner):
        runner.run.side_effect = self._route(typecheck=TestExecutionResult(
            passed=False,
            exit_code=2,
            stdout="src/components/Badge.tsx(1,14): error TS2322: Type 'string' is not assignable to type 'number'.\n"
                   "Found 1 error.\n",
        ))

        result = await quality_pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert result.success is False
        assert result.errors == [{
            "kind": "quality",
            "category": "typecheck",
            "message": "src/components/Badge.tsx(1,14): error TS2322: Type 'string' is not assignable to type 'number'.",
        }]

    @pytest.mark.asyncio
    async def test_missing_tool_is_a_warning(self, quality_pipeline, runner):
        runner.run.side_effect = self._route(typecheck=TestExecutionResult(
            passed=False, exit_code=None, error_message="Command not found: npx"
        ))

        result = await quality_pipeline.run_pipeline(_code(UNIT_TEST), TestPipelineOptions(generate_coverage=False))

        assert result.success is True
        assert "Quality check 'typecheck' could not run: Command not found: npx" in result.warnings

    @pytest.mark.asyncio
    async def test_run_without_generated_tests(self, quality_pipeline, runner):
        runner.run.side_effect = self._route()

        result = await quality_pipeline.run_pipeline(_code(), TestPipelineOptions())

        assert result.success is True
        assert result.categories_run == []
        assert runner.run.call_count == 2

    @pytest.mark.asyncio
    async def test_disabled_by_options(self, quality_pipeline, runner):
        runner.run.side_effect = self._route()

        await quality_pipeline.run_pipeline(
            _code(UNIT_TEST), TestPipelineOptions(generate_coverage=False, run_quality_checks=False)
        )

        assert runner.run.call_count == 1
        assert "vitest" in runner.run.call_args.args[0]


class TestCreateTestReport:
    def test_writes_json(self, tmp_path):
        result = TestPipelineResult(success=True, tests_passed=4, categories_run=["unit"])

        path = create_test_report(result, tmp_path / "reports" / "tags.json")

        data = json.loads(path.read_text())
        assert data["success"] is True
        assert data["tests_passed"] == 4
        assert "generated_at" in data
