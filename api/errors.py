"""
Domain Errors
=============

Exception types raised by the feature registry, code generator, testing
pipeline and code integrator.

Errors fall into the kinds the HTTP layer understands:

- not found:   UnknownFeatureError
- conflict:    DuplicateFeatureError, HasDependentsError,
               FeatureDisableBlockedError, DependencyCycleError,
               DependencyViolationError, IntegrationConflictError
- validation:  SelfDependencyError
- persistence: PersistenceError

Generation, test-runner and migration errors are normally collected into
result objects instead of aborting a request; they still inherit from
FeatureBuilderError so callers can catch everything in one place.
"""

from __future__ import annotations

from typing import Any


class FeatureBuilderError(Exception):
    """Base class for all domain errors."""

    kind = "internal"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


# =============================================================================
# Registry Errors
# =============================================================================

class UnknownFeatureError(FeatureBuilderError):
    """A referenced feature id does not exist."""

    kind = "not_found"

    def __init__(self, feature_id: str, message: str | None = None):
        self.feature_id = feature_id
        super().__init__(
            message or f"Feature '{feature_id}' not found",
            {"resource": "feature", "id": feature_id},
        )


class DuplicateFeatureError(FeatureBuilderError):
    """A feature with the same id is already registered."""

    kind = "conflict"

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(
            f"Feature '{feature_id}' is already registered",
            {"field": "id", "value": feature_id},
        )


class HasDependentsError(FeatureBuilderError):
    """Removal refused because other features still depend on the target."""

    kind = "conflict"

    def __init__(self, feature_id: str, dependents: list[str]):
        self.feature_id = feature_id
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot remove feature '{feature_id}': "
            f"depended on by {', '.join(self.dependents)}",
            {"feature_id": feature_id, "dependent_features": self.dependents},
        )


class FeatureDisableBlockedError(FeatureBuilderError):
    """Disable refused because enabled features hold a required edge on it."""

    kind = "conflict"

    def __init__(self, feature_id: str, dependents: list[str]):
        self.feature_id = feature_id
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot disable feature '{feature_id}': "
            f"enabled features depend on it ({', '.join(self.dependents)})",
            {"feature_id": feature_id, "dependent_features": self.dependents},
        )


class SelfDependencyError(FeatureBuilderError):
    """A feature cannot depend on itself."""

    kind = "validation"

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(
            f"Feature '{feature_id}' cannot depend on itself",
            {"field": "depends_on", "value": feature_id},
        )


class DependencyCycleError(FeatureBuilderError):
    """Adding the required edge would close a cycle of required edges."""

    kind = "conflict"

    def __init__(self, feature_id: str, depends_on: str, cycle: list[str]):
        self.feature_id = feature_id
        self.depends_on = depends_on
        self.cycle = list(cycle)
        super().__init__(
            f"Required dependency {feature_id} -> {depends_on} would create "
            f"a cycle: {' -> '.join(self.cycle)}",
            {"feature_id": feature_id, "depends_on": depends_on, "cycle": self.cycle},
        )


class DependencyViolationError(FeatureBuilderError):
    """An enabled feature cannot gain a required edge on a disabled feature."""

    kind = "conflict"

    def __init__(self, feature_id: str, depends_on: str):
        self.feature_id = feature_id
        self.depends_on = depends_on
        super().__init__(
            f"Enabled feature '{feature_id}' cannot require disabled "
            f"feature '{depends_on}'",
            {"feature_id": feature_id, "depends_on": depends_on},
        )


class IntegrationConflictError(FeatureBuilderError):
    """The feature cannot be integrated as requested."""

    kind = "conflict"

    def __init__(self, feature_id: str, conflicts: list[str]):
        self.feature_id = feature_id
        self.conflicts = list(conflicts)
        super().__init__(
            f"Feature '{feature_id}' cannot be integrated: {'; '.join(self.conflicts)}",
            {"feature_id": feature_id, "conflicts": self.conflicts},
        )


class PersistenceError(FeatureBuilderError):
    """The feature store could not complete an operation."""

    kind = "persistence"

    def __init__(
        self,
        operation: str,
        original_error: Exception | None = None,
        message: str | None = None,
    ):
        self.operation = operation
        self.original_error = original_error
        if message is None:
            message = f"Feature store error during {operation}"
            if original_error is not None:
                message += f": {original_error}"
        super().__init__(message, {"operation": operation})


# =============================================================================
# External Provider Errors
# =============================================================================

class GenerationError(FeatureBuilderError):
    """The generation provider failed or returned unusable output."""

    kind = "generation"


class GenerationTimeoutError(GenerationError):
    """The generation provider did not answer within the deadline."""

    kind = "timeout"

    def __init__(self, timeout_seconds: float, what: str = "generation"):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{what} timed out after {timeout_seconds:g}s")


class TestRunnerError(FeatureBuilderError):
    """The external test runner failed to execute."""

    __test__ = False
    kind = "test_runner"


class TestRunnerTimeoutError(TestRunnerError):
    """The external test runner did not finish within the deadline."""

    __test__ = False
    kind = "timeout"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Test execution timed out after {timeout_seconds:g}s")


class MigrationError(FeatureBuilderError):
    """A generated migration failed to apply or roll back."""

    kind = "migration"

    def __init__(self, migration_id: str, original_error: Exception | str):
        self.migration_id = migration_id
        super().__init__(
            f"Migration {migration_id} failed: {original_error}",
            {"migration_id": migration_id},
        )


__all__ = [
    "FeatureBuilderError",
    "UnknownFeatureError",
    "DuplicateFeatureError",
    "HasDependentsError",
    "FeatureDisableBlockedError",
    "SelfDependencyError",
    "DependencyCycleError",
    "DependencyViolationError",
    "IntegrationConflictError",
    "PersistenceError",
    "GenerationError",
    "GenerationTimeoutError",
    "TestRunnerError",
    "TestRunnerTimeoutError",
    "MigrationError",
]
