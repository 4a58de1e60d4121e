"""
Code Integrator
===============

Writes generated code into the project and registers the feature.

integrate_feature() runs these steps in order:

1. Checks: the id is not registered yet, the declared dependencies are
   acceptable to the registry, every path is a valid project-relative path
   under an allowed prefix, the generated code passes structural
   validation. A dry run stops here and writes nothing.
2. Backup: full-file copies of every file that would be overwritten, into
   <project_root>/.backups/<feature_id>_<timestamp>/.
3. Tests: the testing pipeline runs the generated tests; failures abort
   before anything is written (the backup is kept).
4. Persist: write files and tests, install the packages the generated code
   imports, apply migrations, register the feature with its written paths
   and declared dependencies.
5. Report an IntegrationResult.

Blocking calls run through asyncio.to_thread so a long integration does not
stall the event loop.

There is no automatic rollback. A failure in step 4 leaves what was written
in place; the result carries rollback_info so rollback() can restore the
backup, delete created files and revert the applied migrations.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Sequence

from api.builder_settings import DEFAULT_ALLOWED_PREFIXES, DEFAULT_INSTALL_COMMAND
from api.code_generator import CodeGenerator
from api.errors import FeatureBuilderError, MigrationError, PersistenceError
from api.feature_registry import DependencySpec, FeatureDefinition, FeatureRegistryManager
from api.generated_code import GeneratedCode, TestFile
from api.migration_runner import MigrationRunner
from api.test_runner import TestRunner
from api.testing_pipeline import TestingPipeline, TestPipelineOptions, TestPipelineResult

_logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = ".backups"
DEFAULT_INSTALL_TIMEOUT = 600


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class IntegrationOptions:
    dry_run: bool = False
    create_backup: bool = True
    run_tests: bool = True
    validate_code: bool = True
    test_options: TestPipelineOptions | None = None


@dataclass
class IntegrationCheck:
    can_integrate: bool
    conflicts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_integrate": self.can_integrate,
            "conflicts": self.conflicts,
            "warnings": self.warnings,
        }


@dataclass
class RollbackInfo:
    """What rollback() needs to undo an integration."""
    backup_path: str | None = None
    files_backed_up: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    migrations_applied: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_path": self.backup_path,
            "files_backed_up": self.files_backed_up,
            "files_created": self.files_created,
            "migrations_applied": self.migrations_applied,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class IntegrationResult:
    success: bool
    files_created: list[str] = field(default_factory=list)
    tests_created: list[str] = field(default_factory=list)
    migrations_applied: list[str] = field(default_factory=list)
    dependencies_installed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    rollback_info: RollbackInfo | None = None
    test_result: TestPipelineResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "files_created": self.files_created,
            "tests_created": self.tests_created,
            "migrations_applied": self.migrations_applied,
            "dependencies_installed": self.dependencies_installed,
            "errors": self.errors,
            "warnings": self.warnings,
            "dry_run": self.dry_run,
            "rollback_info": self.rollback_info.to_dict() if self.rollback_info else None,
            "test_result": self.test_result.to_dict() if self.test_result else None,
        }


# =============================================================================
# Integrator
# =============================================================================

class CodeIntegrator:
    """Check, test and persist generated code for one feature at a time."""

    def __init__(
        self,
        registry: FeatureRegistryManager,
        migration_runner: MigrationRunner,
        testing_pipeline: TestingPipeline,
        project_root: str | Path,
        allowed_prefixes: Sequence[str] = DEFAULT_ALLOWED_PREFIXES,
        validator: CodeGenerator | None = None,
        runner: TestRunner | None = None,
        install_command: str = DEFAULT_INSTALL_COMMAND,
        install_timeout: int = DEFAULT_INSTALL_TIMEOUT,
    ):
        self.registry = registry
        self.migration_runner = migration_runner
        self.testing_pipeline = testing_pipeline
        self.project_root = Path(project_root).resolve()
        self.allowed_prefixes = tuple(allowed_prefixes)
        # validate_generated_code() needs no provider
        self.validator = validator or CodeGenerator(provider=None)
        self.runner = runner or TestRunner(default_timeout=install_timeout)
        self.install_command = install_command
        self.install_timeout = install_timeout

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def is_valid_file_path(self, path: str) -> bool:
        """
        Project-relative, no traversal or empty segments, under an allowed prefix.

        "src/components/Badge.tsx" is valid; "../etc/passwd",
        "/etc/passwd" and "src//x.ts" are not.
        """
        if not path or "\\" in path or "\x00" in path:
            return False
        if path.startswith("/") or "//" in path or PurePosixPath(path).is_absolute():
            return False
        if ".." in PurePosixPath(path).parts:
            return False
        if not path.startswith(self.allowed_prefixes):
            return False
        resolved = (self.project_root / path).resolve()
        return resolved.is_relative_to(self.project_root)

    def can_integrate_feature(
        self,
        feature_id: str,
        generated_code: GeneratedCode | None = None,
        dependencies: Iterable[DependencySpec] = (),
        enabled: bool = True,
    ) -> IntegrationCheck:
        """
        Conflicts block integration; warnings only inform.

        Conflicts: feature_id already registered, a declared dependency the
        registry would reject (see check_new_dependencies()), invalid file
        paths.
        Warnings: a path owned by another active feature, an existing file
        that would be overwritten.
        """
        conflicts: list[str] = []
        warnings: list[str] = []

        if self.registry.get_feature(feature_id) is not None:
            conflicts.append(f"Feature '{feature_id}' is already registered")

        conflicts.extend(self.registry.check_new_dependencies(feature_id, dependencies, enabled))

        if generated_code is not None:
            owners: dict[str, str] = {}
            for feature in self.registry.get_active_features():
                if feature.id == feature_id:
                    continue
                for path in feature.files:
                    owners.setdefault(path, feature.id)

            for path in generated_code.all_paths:
                if not self.is_valid_file_path(path):
                    conflicts.append(f"Invalid file path: {path}")
                    continue
                if path in owners:
                    warnings.append(f"File {path} is already owned by feature '{owners[path]}'")
                elif (self.project_root / path).exists():
                    warnings.append(f"File {path} already exists and will be overwritten")

        return IntegrationCheck(can_integrate=not conflicts, conflicts=conflicts, warnings=warnings)

    # -------------------------------------------------------------------------
    # Integration
    # -------------------------------------------------------------------------

    async def integrate_feature(
        self,
        generated_code: GeneratedCode,
        definition: FeatureDefinition,
        options: IntegrationOptions | None = None,
    ) -> IntegrationResult:
        """
        Integrate generated code for definition.

        Raises:
            PersistenceError: the feature store failed; remaining steps are
                not attempted
        """
        options = options or IntegrationOptions()
        result = IntegrationResult(success=False, dry_run=options.dry_run)

        # Step 1: checks
        check = await asyncio.to_thread(
            self.can_integrate_feature,
            definition.id,
            generated_code,
            definition.dependencies,
            definition.enabled,
        )
        result.errors.extend(check.conflicts)
        result.warnings.extend(check.warnings)

        if options.validate_code:
            validation = self.validator.validate_generated_code(generated_code)
            result.errors.extend(validation.errors)
            result.warnings.extend(validation.warnings)

        if options.dry_run:
            if options.run_tests and generated_code.tests:
                result.warnings.append("Tests are not run during a dry run")
            result.files_created = [f.path for f in generated_code.files]
            result.tests_created = [t.path for t in generated_code.tests]
            result.migrations_applied = [m.id for m in generated_code.migrations]
            result.dependencies_installed = list(generated_code.dependencies)
            result.success = not result.errors
            _logger.info(
                "Dry run for %s: success=%s, %d errors",
                definition.id, result.success, len(result.errors),
            )
            return result

        if result.errors:
            _logger.warning("Integration of %s refused: %s", definition.id, result.errors)
            return result

        # Step 2: backup
        rollback_info = RollbackInfo()
        if options.create_backup:
            await asyncio.to_thread(self._create_backup, definition.id, generated_code, rollback_info)
        result.rollback_info = rollback_info

        # Step 3: tests
        if options.run_tests:
            if generated_code.tests:
                test_result = await self.testing_pipeline.run_pipeline(
                    generated_code, options.test_options
                )
                result.test_result = test_result
                result.warnings.extend(test_result.warnings)
                if not test_result.success:
                    result.errors.extend(test_result.error_messages() or [
                        f"{test_result.tests_failed} generated tests failed"
                    ])
                    _logger.warning(
                        "Tests failed for %s; nothing written (backup: %s)",
                        definition.id, rollback_info.backup_path,
                    )
                    return result
            else:
                result.warnings.append("No generated tests to run")

        # Step 4: persist
        try:
            for item in [*generated_code.files, *generated_code.tests]:
                await asyncio.to_thread(self._write_file, item.path, item.content)
                rollback_info.files_created.append(item.path)
                if isinstance(item, TestFile):
                    result.tests_created.append(item.path)
                else:
                    result.files_created.append(item.path)
        except OSError as e:
            result.errors.append(f"Failed to write files: {e}")
            _logger.error("Integration of %s stopped while writing files: %s", definition.id, e)
            return result

        if generated_code.dependencies:
            install_error = await self._install_dependencies(generated_code.dependencies)
            if install_error:
                result.errors.append(install_error)
                _logger.error("Integration of %s stopped: %s", definition.id, install_error)
                return result
            result.dependencies_installed = list(generated_code.dependencies)

        if generated_code.migrations:
            migration_result = await asyncio.to_thread(
                self.migration_runner.apply_migrations,
                generated_code.migrations,
                feature_id=definition.id,
            )
            result.migrations_applied = list(migration_result.applied)
            rollback_info.migrations_applied = list(migration_result.applied)
            if migration_result.skipped:
                result.warnings.append(
                    f"Migrations already applied: {', '.join(migration_result.skipped)}"
                )
            if not migration_result.success:
                result.errors.extend(migration_result.errors)
                return result

        to_register = replace(
            definition,
            files=[*definition.files, *(p for p in generated_code.all_paths if p not in definition.files)],
            database_migrations=definition.database_migrations or [
                m.id for m in generated_code.migrations
            ],
        )
        try:
            await asyncio.to_thread(self.registry.register_feature, to_register)
        except PersistenceError:
            raise
        except FeatureBuilderError as e:
            result.errors.append(e.message)
            _logger.error("Registering %s failed after files were written: %s", definition.id, e)
            return result

        # Step 5
        result.success = True
        _logger.info(
            "Integrated %s: %d files, %d tests, %d migrations",
            definition.id,
            len(result.files_created),
            len(result.tests_created),
            len(result.migrations_applied),
        )
        return result

    def rollback(self, rollback_info: RollbackInfo) -> list[str]:
        """
        Undo an integration: delete created files, restore backed-up files,
        roll back applied migrations.

        Returns:
            Errors encountered; an empty list means a complete rollback
        """
        errors: list[str] = []

        for path in rollback_info.files_created:
            target = self.project_root / path
            try:
                target.unlink(missing_ok=True)
            except OSError as e:
                errors.append(f"Could not delete {path}: {e}")

        if rollback_info.backup_path:
            backup_root = Path(rollback_info.backup_path)
            for path in rollback_info.files_backed_up:
                try:
                    target = self.project_root / path
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(backup_root / path, target)
                except OSError as e:
                    errors.append(f"Could not restore {path}: {e}")

        if rollback_info.migrations_applied:
            try:
                self.migration_runner.rollback_migrations(rollback_info.migrations_applied)
            except MigrationError as e:
                errors.append(str(e))

        if errors:
            _logger.warning("Rollback finished with %d errors", len(errors))
        else:
            _logger.info(
                "Rolled back %d files, restored %d, reverted %d migrations",
                len(rollback_info.files_created),
                len(rollback_info.files_backed_up),
                len(rollback_info.migrations_applied),
            )
        return errors

    # -------------------------------------------------------------------------
    # File helpers
    # -------------------------------------------------------------------------

    def _create_backup(
        self,
        feature_id: str,
        generated_code: GeneratedCode,
        rollback_info: RollbackInfo,
    ) -> None:
        existing = [p for p in generated_code.all_paths if (self.project_root / p).is_file()]
        if not existing:
            return

        stamp = rollback_info.timestamp.strftime("%Y%m%dT%H%M%S%fZ")
        backup_root = self.project_root / BACKUP_DIR_NAME / f"{feature_id}_{stamp}"
        for path in existing:
            target = backup_root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.project_root / path, target)
            rollback_info.files_backed_up.append(path)

        rollback_info.backup_path = str(backup_root)
        _logger.info("Backed up %d files to %s", len(existing), backup_root)

    async def _install_dependencies(self, dependencies: list[str]) -> str | None:
        """Run the install command for dependencies; return an error or None."""
        command = " ".join([self.install_command, *(shlex.quote(d) for d in dependencies)])
        run = await asyncio.to_thread(
            self.runner.run,
            command,
            self.project_root,
            self.install_timeout,
        )
        if run.passed:
            _logger.info("Installed %d packages: %s", len(dependencies), ", ".join(dependencies))
            return None
        if run.timed_out:
            return f"Dependency install timed out after {run.timeout_seconds} seconds"
        detail = run.output or run.error_message or f"exit code {run.exit_code}"
        return f"Dependency install failed: {detail}"

    def _write_file(self, path: str, content: str) -> None:
        target = self.project_root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
