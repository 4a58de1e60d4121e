"""
Builder Settings
================

Process-wide settings read from the environment (after load_dotenv() in the
server). Invalid values fall back to defaults with a warning.

Environment variables:
    TODO_BUILDER_PROJECT_ROOT       project the generated code is written into
    TODO_BUILDER_DATABASE_URL       SQLAlchemy URL ("sqlite://" = in memory)
    TODO_BUILDER_TEST_COMMAND       test command; "{paths}" is replaced by the
                                    staged test paths
    TODO_BUILDER_COVERAGE_COMMAND   coverage command (empty disables coverage)
    TODO_BUILDER_TEST_TIMEOUT       seconds per test command
    TODO_BUILDER_INSTALL_COMMAND    package install command; the generated
                                    dependencies are appended to it
    TODO_BUILDER_LINT_COMMAND       lint command printing ESLint JSON; "{paths}"
                                    is replaced by the staged sources (empty
                                    disables linting)
    TODO_BUILDER_TYPECHECK_COMMAND  type check command (empty disables it)
    TODO_BUILDER_ALLOWED_PREFIXES   comma-separated writable path prefixes
    TODO_BUILDER_LOG_LEVEL          logging level name
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from api.database import get_database_url
from api.generation_config import get_generation_timeout

_logger = logging.getLogger(__name__)

DEFAULT_TEST_COMMAND = "npx vitest run {paths}"
DEFAULT_COVERAGE_COMMAND = "npx vitest run --coverage"
DEFAULT_TEST_TIMEOUT = 300
DEFAULT_INSTALL_COMMAND = "npm install"
DEFAULT_LINT_COMMAND = "npx eslint --format=json {paths}"
DEFAULT_TYPECHECK_COMMAND = "npx tsc --noEmit"
DEFAULT_ALLOWED_PREFIXES = ("src/", "public/", "docs/", "scripts/")
DEFAULT_LOG_LEVEL = "INFO"


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        _logger.warning("Invalid value for %s: '%s'. Defaulting to %d", name, raw, default)
        return default
    return value


def _read_prefixes(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return DEFAULT_ALLOWED_PREFIXES
    prefixes = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            prefixes.append(part if part.endswith("/") else part + "/")
    return tuple(prefixes) or DEFAULT_ALLOWED_PREFIXES


@dataclass(frozen=True)
class BuilderSettings:
    project_root: Path
    database_url: str
    generation_timeout: float
    test_command: str = DEFAULT_TEST_COMMAND
    coverage_command: str = DEFAULT_COVERAGE_COMMAND
    test_timeout: int = DEFAULT_TEST_TIMEOUT
    install_command: str = DEFAULT_INSTALL_COMMAND
    lint_command: str = DEFAULT_LINT_COMMAND
    typecheck_command: str = DEFAULT_TYPECHECK_COMMAND
    allowed_prefixes: tuple[str, ...] = field(default=DEFAULT_ALLOWED_PREFIXES)
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "BuilderSettings":
        project_root = Path(
            os.environ.get("TODO_BUILDER_PROJECT_ROOT", "").strip() or os.getcwd()
        ).resolve()
        database_url = (
            os.environ.get("TODO_BUILDER_DATABASE_URL", "").strip()
            or get_database_url(project_root)
        )
        log_level = os.environ.get("TODO_BUILDER_LOG_LEVEL", "").strip().upper() or DEFAULT_LOG_LEVEL
        if not isinstance(logging.getLevelName(log_level), int):
            _logger.warning("Unknown log level '%s'. Defaulting to %s", log_level, DEFAULT_LOG_LEVEL)
            log_level = DEFAULT_LOG_LEVEL

        return cls(
            project_root=project_root,
            database_url=database_url,
            generation_timeout=get_generation_timeout(),
            test_command=os.environ.get("TODO_BUILDER_TEST_COMMAND", "").strip() or DEFAULT_TEST_COMMAND,
            coverage_command=os.environ.get("TODO_BUILDER_COVERAGE_COMMAND", DEFAULT_COVERAGE_COMMAND).strip(),
            test_timeout=_read_int("TODO_BUILDER_TEST_TIMEOUT", DEFAULT_TEST_TIMEOUT),
            install_command=os.environ.get("TODO_BUILDER_INSTALL_COMMAND", "").strip() or DEFAULT_INSTALL_COMMAND,
            lint_command=os.environ.get("TODO_BUILDER_LINT_COMMAND", DEFAULT_LINT_COMMAND).strip(),
            typecheck_command=os.environ.get("TODO_BUILDER_TYPECHECK_COMMAND", DEFAULT_TYPECHECK_COMMAND).strip(),
            allowed_prefixes=_read_prefixes("TODO_BUILDER_ALLOWED_PREFIXES"),
            log_level=log_level,
        )
