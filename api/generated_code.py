"""
Generated Code Types
====================

Ephemeral containers passed from the code generator to the testing pipeline
and the code integrator. Nothing here is persisted; only the files written
to disk and the registered feature outlive a generation request.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

_logger = logging.getLogger(__name__)

FILE_TYPES = ("component", "api", "utility", "config")
TEST_TYPES = ("unit", "integration", "e2e")


@dataclass
class CodeFile:
    path: str
    content: str
    type: str = "utility"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "type": self.type}


@dataclass
class TestFile:
    __test__ = False

    path: str
    content: str
    type: str = "unit"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "type": self.type}


@dataclass
class Migration:
    """A generated schema change: SQL to apply (up) and to revert (down)."""
    id: str
    up: str
    down: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "up": self.up, "down": self.down}


@dataclass
class GeneratedCode:
    files: list[CodeFile] = field(default_factory=list)
    tests: list[TestFile] = field(default_factory=list)
    migrations: list[Migration] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    session_id: str = "default"

    @property
    def is_empty(self) -> bool:
        return not (self.files or self.tests or self.migrations)

    @property
    def all_paths(self) -> list[str]:
        return [f.path for f in self.files] + [t.path for t in self.tests]

    def to_dict(self, include_content: bool = True) -> dict[str, Any]:
        if include_content:
            files = [f.to_dict() for f in self.files]
            tests = [t.to_dict() for t in self.tests]
        else:
            files = [{"path": f.path, "type": f.type} for f in self.files]
            tests = [{"path": t.path, "type": t.type} for t in self.tests]
        return {
            "files": files,
            "tests": tests,
            "migrations": [m.to_dict() for m in self.migrations],
            "dependencies": self.dependencies,
            "session_id": self.session_id,
        }


def merge_generated_code(
    parts: Iterable[GeneratedCode],
    session_id: str = "default",
    warnings: list[str] | None = None,
) -> GeneratedCode:
    """
    Combine several generation results into one.

    Later files with an already-seen path replace earlier ones. Each such
    collision between two different parts is logged and, when a warnings
    list is given, appended to it. Dependencies and migrations are
    de-duplicated keeping first occurrence.
    """
    files: dict[str, CodeFile] = {}
    tests: dict[str, TestFile] = {}
    owner: dict[str, int] = {}
    migrations: dict[str, Migration] = {}
    dependencies: list[str] = []

    def claim(path: str, index: int) -> None:
        if owner.get(path, index) != index:
            message = f"Generated file {path} was produced more than once; the later version is kept"
            _logger.warning("%s", message)
            if warnings is not None:
                warnings.append(message)
        owner[path] = index

    for index, part in enumerate(parts):
        for f in part.files:
            claim(f.path, index)
            files[f.path] = f
        for t in part.tests:
            claim(t.path, index)
            tests[t.path] = t
        for m in part.migrations:
            migrations.setdefault(m.id, m)
        for dep in part.dependencies:
            if dep not in dependencies:
                dependencies.append(dep)

    return GeneratedCode(
        files=list(files.values()),
        tests=list(tests.values()),
        migrations=list(migrations.values()),
        dependencies=dependencies,
        session_id=session_id,
    )
