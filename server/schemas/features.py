"""
Feature Pydantic Schemas
========================

Request/Response schemas for the feature registry and feature generation
endpoints.

Successful responses use the envelope {"success": true, "data": ...,
"message"?}; errors use server.exceptions.ErrorResponse.

Mirrors the dataclasses in api/feature_registry.py, api/code_generator.py
and api/feature_generation.py.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator

from api.code_generator import APISpec, ComponentSpec
from api.feature_generation import FeatureGenerationRequest
from api.feature_registry import DependencySpec, FeatureDefinition
from api.testing_pipeline import TestPipelineOptions

# =============================================================================
# Constants (must match api/database.py)
# =============================================================================

DEPENDENCY_TYPES = Literal["required", "optional"]
HTTP_METHODS = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

FEATURE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_\-.]*$"

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope."""

    success: bool = True
    data: T
    message: str | None = None


# =============================================================================
# Registry Schemas
# =============================================================================

class DependencyCreate(BaseModel):
    """Request schema for adding a dependency edge."""

    depends_on: str = Field(..., min_length=1, max_length=100)
    dependency_type: DEPENDENCY_TYPES = Field(default="required")

    def to_spec(self) -> DependencySpec:
        return DependencySpec(self.depends_on, self.dependency_type)


class FeatureCreate(BaseModel):
    """Request schema for registering a feature."""

    id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        pattern=FEATURE_ID_PATTERN,
        description="Immutable feature id"
    )
    name: str = Field(..., min_length=1, max_length=255)
    version: str = Field(default="1.0.0", min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=5000)
    enabled: bool = True
    components: list[Any] = Field(default_factory=list)
    api_endpoints: list[Any] = Field(default_factory=list)
    database_migrations: list[Any] = Field(default_factory=list)
    dependencies: list[DependencyCreate] = Field(default_factory=list)

    @field_validator("dependencies")
    @classmethod
    def validate_unique_dependencies(cls, v: list[DependencyCreate]) -> list[DependencyCreate]:
        targets = [d.depends_on for d in v]
        if len(targets) != len(set(targets)):
            raise ValueError("Each dependency may be declared only once")
        return v

    def to_definition(self) -> FeatureDefinition:
        return FeatureDefinition(
            id=self.id,
            name=self.name,
            version=self.version,
            description=self.description,
            enabled=self.enabled,
            components=list(self.components),
            api_endpoints=list(self.api_endpoints),
            database_migrations=list(self.database_migrations),
            dependencies=[d.to_spec() for d in self.dependencies],
        )


class FeatureUpdate(BaseModel):
    """PATCH body: enable or disable a feature."""

    enabled: bool


class DependencyOut(BaseModel):
    feature_id: str
    depends_on: str
    dependency_type: DEPENDENCY_TYPES
    created_at: datetime | None = None


class FeatureOut(BaseModel):
    id: str
    name: str
    version: str
    enabled: bool
    description: str | None = None
    components: list[Any] = Field(default_factory=list)
    api_endpoints: list[Any] = Field(default_factory=list)
    database_migrations: list[Any] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    dependencies: list[dict[str, Any]] = Field(default_factory=list)
    installed_at: datetime | None = None

    @classmethod
    def from_definition(cls, definition: FeatureDefinition) -> "FeatureOut":
        return cls.model_validate(definition.to_dict())


class DisableCheckOut(BaseModel):
    feature_id: str
    can_disable: bool
    dependent_features: list[str] = Field(default_factory=list)


# =============================================================================
# Generation Schemas
# =============================================================================

class ComponentSpecIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    props: dict[str, Any] = Field(default_factory=dict)
    functionality: list[str] = Field(default_factory=list)
    styling: str = ""

    def to_spec(self) -> ComponentSpec:
        return ComponentSpec(
            name=self.name,
            props=dict(self.props),
            functionality=list(self.functionality),
            styling=self.styling,
        )


class APISpecIn(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=255)
    method: HTTP_METHODS = "GET"
    parameters: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)
    validation: list[str] = Field(default_factory=list)

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def to_spec(self) -> APISpec:
        return APISpec(
            endpoint=self.endpoint,
            method=self.method,
            parameters=dict(self.parameters),
            response=dict(self.response),
            validation=list(self.validation),
        )


class TestOptionsIn(BaseModel):
    __test__ = False

    run_unit: bool = True
    run_integration: bool = True
    run_e2e: bool = False
    generate_coverage: bool = True
    timeout_seconds: int = Field(default=300, ge=1, le=3600)
    run_quality_checks: bool = True

    def to_options(self) -> TestPipelineOptions:
        return TestPipelineOptions(**self.model_dump())


class FeatureGenerateRequest(BaseModel):
    """Request schema for POST /api/features/generate."""

    feature_id: str = Field(..., min_length=1, max_length=100, pattern=FEATURE_ID_PATTERN)
    feature_name: str = Field(..., min_length=1, max_length=255)
    feature_version: str = Field(default="1.0.0", min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=10000)
    components: list[ComponentSpecIn] = Field(default_factory=list)
    api_endpoints: list[APISpecIn] = Field(default_factory=list)
    dependencies: list[DependencyCreate] = Field(default_factory=list)
    generate_tests: bool = True
    generate_migration: bool | None = Field(
        default=None,
        description="None decides from the description (mentions a database or table)"
    )
    dry_run: bool = False
    run_tests: bool = True
    session_id: str | None = Field(default=None, max_length=200)
    framework: str = "next"
    typescript: bool = True
    testing_framework: Literal["vitest", "jest"] = "vitest"
    test_options: TestOptionsIn | None = None

    @model_validator(mode="after")
    def validate_has_work(self) -> "FeatureGenerateRequest":
        if not self.components and not self.api_endpoints and self.generate_migration is not True:
            raise ValueError("Request at least one component, API endpoint or migration")
        return self

    def to_request(self) -> FeatureGenerationRequest:
        return FeatureGenerationRequest(
            feature_id=self.feature_id,
            feature_name=self.feature_name,
            feature_version=self.feature_version,
            description=self.description,
            components=[c.to_spec() for c in self.components],
            api_endpoints=[a.to_spec() for a in self.api_endpoints],
            dependencies=[d.to_spec() for d in self.dependencies],
            generate_tests=self.generate_tests,
            generate_migration=self.generate_migration,
            dry_run=self.dry_run,
            run_tests=self.run_tests,
            session_id=self.session_id,
            framework=self.framework,
            typescript=self.typescript,
            testing_framework=self.testing_framework,
            test_options=self.test_options.to_options() if self.test_options else None,
        )
