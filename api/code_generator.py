"""
Code Generator
==============

Turns component, API endpoint, test and migration descriptions into prompts,
sends them to a generation provider and parses the answer into GeneratedCode.

The provider is expected to answer with fenced code blocks whose first line
is a comment holding the file path:

    ```tsx
    // src/components/PriorityBadge.tsx
    export function PriorityBadge() { ... }
    ```

Files whose path marks them as tests (.test., .spec., test_*.py, *_test.py,
__tests__/) become TestFile entries typed unit / integration / e2e from the
path; everything else becomes a CodeFile typed from the path.

Every provider call is bounded by timeout_seconds. Failures raise
GenerationError (GenerationTimeoutError for deadlines); aggregating per-item
failures is the caller's job.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from api.errors import GenerationError, GenerationTimeoutError
from api.generated_code import CodeFile, GeneratedCode, Migration, TestFile
from api.generation_config import DEFAULT_GENERATION_TIMEOUT
from api.generation_provider import GenerationProvider

_logger = logging.getLogger(__name__)


# =============================================================================
# Specifications
# =============================================================================

@dataclass
class ComponentSpec:
    name: str
    props: dict[str, Any] = field(default_factory=dict)
    functionality: list[str] = field(default_factory=list)
    styling: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "props": self.props,
            "functionality": self.functionality,
            "styling": self.styling,
        }


@dataclass
class APISpec:
    endpoint: str
    method: str = "GET"
    parameters: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)
    validation: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "parameters": self.parameters,
            "response": self.response,
            "validation": self.validation,
        }


@dataclass
class CodeContext:
    """Existing code that tests should be generated for."""
    files: list[str]
    dependencies: list[str] = field(default_factory=list)
    framework: str = "next"
    testing_framework: str = "vitest"


@dataclass
class CodeGenerationOptions:
    session_id: str | None = None
    framework: str = "next"
    typescript: bool = True
    testing_framework: str = "vitest"
    include_tests: bool = True

    @property
    def language(self) -> str:
        return "TypeScript" if self.typescript else "JavaScript"


@dataclass
class CodeValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


# =============================================================================
# Response Parsing
# =============================================================================

# ```lang            (info string optional)
# // path/to/file    (or "# path" / "<!-- path -->")
# ...content...
# ```
FILE_BLOCK_PATTERN = re.compile(
    r"```[\w.+-]*[ \t]*\n?[ \t]*(?://|#|<!--)[ \t]*(?P<path>[^\n]+?)[ \t]*(?:-->)?[ \t]*\n"
    r"(?P<content>.*?)```",
    re.DOTALL,
)

JS_IMPORT_PATTERN = re.compile(
    r"""(?:import\s+(?:[\w*{}\s,]+\s+from\s+)?['"](?P<imp>[^'"]+)['"]|require\(\s*['"](?P<req>[^'"]+)['"]\s*\))"""
)

PY_IMPORT_PATTERN = re.compile(
    r"^\s*(?:from\s+(?P<from>[\w.]+)\s+import|import\s+(?P<imp>[\w.]+))",
    re.MULTILINE,
)

PATH_PATTERN = re.compile(r"^[\w@.\-/\[\]()]+\.[\w]+$")

JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


def is_test_path(path: str) -> bool:
    name = PurePosixPath(path).name
    return (
        ".test." in name
        or ".spec." in name
        or "/__tests__/" in f"/{path}"
        or (name.endswith(".py") and (name.startswith("test_") or name.endswith("_test.py")))
    )


def classify_test_type(path: str) -> str:
    lowered = path.lower()
    if "e2e" in lowered:
        return "e2e"
    if "integration" in lowered:
        return "integration"
    return "unit"


def determine_file_type(path: str) -> str:
    """Classify a generated source file as api, component, config or utility."""
    name = PurePosixPath(path).name
    wrapped = f"/{path}"
    if "/api/" in wrapped or name.startswith("route."):
        return "api"
    if "/components/" in wrapped or name.endswith((".tsx", ".jsx")):
        return "component"
    if "config" in name:
        return "config"
    return "utility"


def _extract_dependencies(files: list[CodeFile], tests: list[TestFile]) -> list[str]:
    dependencies: list[str] = []
    stdlib = getattr(sys, "stdlib_module_names", frozenset())

    def add(dep: str) -> None:
        if dep and dep not in dependencies:
            dependencies.append(dep)

    for item in [*files, *tests]:
        if item.path.endswith(".py"):
            for match in PY_IMPORT_PATTERN.finditer(item.content):
                module = match.group("from") or match.group("imp")
                if not module or module.startswith("."):
                    continue
                top = module.split(".")[0]
                if top not in stdlib:
                    add(top)
        elif item.path.endswith(JS_EXTENSIONS):
            for match in JS_IMPORT_PATTERN.finditer(item.content):
                dep = match.group("imp") or match.group("req")
                if dep and not dep.startswith((".", "/", "@/")):
                    add(dep)
    return dependencies


def parse_code_response(response: str, session_id: str = "default") -> GeneratedCode:
    """
    Extract files and tests from a provider answer.

    Blocks whose first line is not a path comment are ignored. A path seen
    twice keeps its last content.
    """
    files: dict[str, CodeFile] = {}
    tests: dict[str, TestFile] = {}

    for match in FILE_BLOCK_PATTERN.finditer(response):
        path = match.group("path").strip()
        if path.startswith("./"):
            path = path[2:]
        if not PATH_PATTERN.match(path):
            continue
        content = match.group("content").rstrip() + "\n"

        if is_test_path(path):
            tests[path] = TestFile(path=path, content=content, type=classify_test_type(path))
        else:
            files[path] = CodeFile(path=path, content=content, type=determine_file_type(path))

    file_list = list(files.values())
    test_list = list(tests.values())
    return GeneratedCode(
        files=file_list,
        tests=test_list,
        migrations=[],
        dependencies=_extract_dependencies(file_list, test_list),
        session_id=session_id,
    )


def parse_migration_response(response: str) -> Migration:
    """
    Extract {"id", "up", "down"} from the first JSON object in the answer.

    Raises:
        GenerationError: no JSON object, or id / up missing
    """
    start = response.find("{")
    end = response.rfind("}")
    if start == -1 or end <= start:
        raise GenerationError("Invalid migration response format: no JSON object found")

    try:
        data = json.loads(response[start:end + 1])
    except json.JSONDecodeError as e:
        raise GenerationError(f"Invalid migration response format: {e}") from e

    if not isinstance(data, dict) or not data.get("id") or not data.get("up"):
        raise GenerationError("Invalid migration response format: 'id' and 'up' are required")

    return Migration(id=str(data["id"]), up=str(data["up"]), down=str(data.get("down") or ""))


# =============================================================================
# Prompts
# =============================================================================

def build_component_prompt(spec: ComponentSpec, options: CodeGenerationOptions) -> str:
    lines = [
        f"Generate a {options.framework} {options.language} component with the following specification:",
        "",
        f"Component Name: {spec.name}",
        f"Props: {json.dumps(spec.props, indent=2)}",
        f"Functionality: {', '.join(spec.functionality) or 'not specified'}",
        f"Styling: {spec.styling or 'not specified'}",
        "",
        "Requirements:",
        "- Use functional components and hooks",
        f"- Follow {options.framework} conventions",
        "- Make the component accessible (ARIA attributes)",
        "- Handle error and empty states",
    ]
    if options.include_tests:
        lines += [
            "",
            f"Also generate {options.testing_framework} tests covering rendering, props, "
            "user interactions and edge cases.",
        ]
    lines += ["", _FILE_FORMAT_INSTRUCTIONS]
    return "\n".join(lines)


def build_api_prompt(spec: APISpec, options: CodeGenerationOptions) -> str:
    lines = [
        f"Generate a {options.framework} {options.language} API endpoint with the following specification:",
        "",
        f"Endpoint: {spec.endpoint}",
        f"Method: {spec.method.upper()}",
        f"Parameters: {json.dumps(spec.parameters, indent=2)}",
        f"Response: {json.dumps(spec.response, indent=2)}",
        f"Validation: {', '.join(spec.validation) or 'none'}",
        "",
        "Requirements:",
        "- Validate input and return proper HTTP status codes",
        "- Return JSON envelopes of the form {success, data|error, message?}",
        "- Handle and log errors",
    ]
    if options.include_tests:
        lines += [
            "",
            f"Also generate {options.testing_framework} tests covering successful requests, "
            "error scenarios, input validation and edge cases.",
        ]
    lines += ["", _FILE_FORMAT_INSTRUCTIONS]
    return "\n".join(lines)


def build_test_prompt(context: CodeContext, options: CodeGenerationOptions) -> str:
    return "\n".join([
        f"Generate {options.testing_framework} tests for the following code:",
        "",
        f"Files: {', '.join(context.files)}",
        f"Dependencies: {', '.join(context.dependencies) or 'none'}",
        f"Framework: {context.framework}",
        f"Testing Framework: {context.testing_framework}",
        "",
        "Cover unit behaviour, component interactions, edge cases and error scenarios.",
        "Name unit test files *.test.* and integration test files *.integration.test.*.",
        "",
        _FILE_FORMAT_INSTRUCTIONS,
    ])


def build_migration_prompt(description: str) -> str:
    return "\n".join([
        "Generate a SQL database migration for the following requirement:",
        "",
        description,
        "",
        "Respond with a single JSON object:",
        '{"id": "YYYYMMDD_HHMMSS_short_description", "up": "SQL to apply", "down": "SQL to revert"}',
        "",
        "Use portable SQL (CREATE TABLE IF NOT EXISTS, ALTER TABLE ... ADD COLUMN).",
    ])


_FILE_FORMAT_INSTRUCTIONS = (
    "Return every file as its own fenced code block. The first line inside each "
    "block must be a comment with the project-relative path, e.g. "
    "`// src/components/Example.tsx`. Put tests next to the code they test."
)


# =============================================================================
# Code Generator
# =============================================================================

class CodeGenerator:
    """
    Generate source files, tests and migrations through a provider.

    Usage:
        generator = CodeGenerator(provider, timeout_seconds=120)
        code = await generator.generate_component(ComponentSpec(name="PriorityBadge"))
    """

    def __init__(
        self,
        provider: GenerationProvider | None,
        timeout_seconds: float = DEFAULT_GENERATION_TIMEOUT,
    ):
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def _query(self, prompt: str, options: CodeGenerationOptions, what: str) -> str:
        if self.provider is None:
            raise GenerationError("No generation provider configured")

        try:
            return await asyncio.wait_for(
                self.provider.generate(prompt, session_id=options.session_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            _logger.error("%s timed out after %.0fs", what, self.timeout_seconds)
            raise GenerationTimeoutError(self.timeout_seconds, what)
        except GenerationError:
            raise
        except Exception as e:
            _logger.error("%s failed (%s): %s", what, type(e).__name__, e)
            raise GenerationError(f"{what} failed: {e}") from e

    def _parse_files(self, response: str, options: CodeGenerationOptions, what: str) -> GeneratedCode:
        code = parse_code_response(response, options.session_id or "default")
        if not code.files and not code.tests:
            raise GenerationError(f"{what} failed: provider returned no files")
        return code

    async def generate_component(
        self,
        spec: ComponentSpec,
        options: CodeGenerationOptions | None = None,
    ) -> GeneratedCode:
        options = options or CodeGenerationOptions()
        what = f"Component generation ({spec.name})"
        response = await self._query(build_component_prompt(spec, options), options, what)
        code = self._parse_files(response, options, what)
        _logger.info("%s produced %d files, %d tests", what, len(code.files), len(code.tests))
        return code

    async def generate_api(
        self,
        spec: APISpec,
        options: CodeGenerationOptions | None = None,
    ) -> GeneratedCode:
        options = options or CodeGenerationOptions()
        what = f"API generation ({spec.method.upper()} {spec.endpoint})"
        response = await self._query(build_api_prompt(spec, options), options, what)
        code = self._parse_files(response, options, what)
        _logger.info("%s produced %d files, %d tests", what, len(code.files), len(code.tests))
        return code

    async def generate_tests(
        self,
        context: CodeContext,
        options: CodeGenerationOptions | None = None,
    ) -> GeneratedCode:
        options = options or CodeGenerationOptions(testing_framework=context.testing_framework)
        what = "Test generation"
        response = await self._query(build_test_prompt(context, options), options, what)
        return self._parse_files(response, options, what)

    async def generate_migration(
        self,
        description: str,
        options: CodeGenerationOptions | None = None,
    ) -> Migration:
        options = options or CodeGenerationOptions()
        response = await self._query(build_migration_prompt(description), options, "Migration generation")
        migration = parse_migration_response(response)
        _logger.info("Migration generation produced %s", migration.id)
        return migration

    def validate_generated_code(self, code: GeneratedCode) -> CodeValidationResult:
        """Structural checks: empty or duplicate files are errors, smells are warnings."""
        errors: list[str] = []
        warnings: list[str] = []
        seen: set[str] = set()

        for item in [*code.files, *code.tests]:
            if item.path in seen:
                errors.append(f"Duplicate file path {item.path}")
            seen.add(item.path)
            if not item.content.strip():
                errors.append(f"File {item.path} is empty")
                continue
            if item.path.endswith((".ts", ".tsx")) and re.search(r":\s*any\b", item.content):
                warnings.append(f"File {item.path} uses 'any' type - consider more specific types")
            if "TODO" in item.content:
                warnings.append(f"File {item.path} contains TODO placeholders")

        for f in code.files:
            if (
                f.type == "component"
                and re.search(r"\bReact\.", f.content)
                and "import React" not in f.content
                and "import * as React" not in f.content
            ):
                errors.append(f"File {f.path} uses React but doesn't import it")

        for migration in code.migrations:
            if not migration.up.strip():
                errors.append(f"Migration {migration.id} has no up SQL")
            if not migration.down.strip():
                warnings.append(f"Migration {migration.id} has no down SQL and cannot be rolled back")

        return CodeValidationResult(valid=not errors, errors=errors, warnings=warnings)
