"""
Feature Generation Pipeline
===========================

The generate -> test -> integrate flow behind POST /api/features/generate.

Each requested component and API endpoint is generated in declaration order,
one provider call at a time. A failing item does not stop the others: every
item produces an ItemOutcome (ok with files/tests, or failed with the error)
and the code of the successful items is integrated even when some failed.
The report's success is true only when every item and the integration
succeeded.

Usage:
    pipeline = FeatureGenerationPipeline(generator, integrator, registry)
    report = await pipeline.generate_feature(FeatureGenerationRequest(
        feature_id="priority",
        feature_name="Todo Priority",
        description="Adds a priority column to the todos table",
        components=[ComponentSpec(name="PriorityBadge")],
        dependencies=[DependencySpec("base")],
    ))
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from api.code_generator import APISpec, CodeGenerationOptions, CodeGenerator, ComponentSpec
from api.code_integrator import CodeIntegrator, IntegrationOptions, IntegrationResult
from api.database import DEFAULT_FEATURE_VERSION
from api.errors import GenerationError, IntegrationConflictError
from api.feature_registry import DependencySpec, FeatureDefinition, FeatureRegistryManager
from api.generated_code import GeneratedCode, Migration, merge_generated_code
from api.testing_pipeline import CATEGORY_ORDER, TestPipelineOptions

_logger = logging.getLogger(__name__)

MIGRATION_HINT_PATTERN = re.compile(r"\b(?:database|table)s?\b", re.IGNORECASE)

ITEM_COMPONENT = "component"
ITEM_API = "api"
ITEM_MIGRATION = "migration"


@dataclass
class FeatureGenerationRequest:
    feature_id: str
    feature_name: str
    description: str = ""
    feature_version: str = DEFAULT_FEATURE_VERSION
    components: list[ComponentSpec] = field(default_factory=list)
    api_endpoints: list[APISpec] = field(default_factory=list)
    dependencies: list[DependencySpec] = field(default_factory=list)
    generate_tests: bool = True
    # None: decided from the description
    generate_migration: bool | None = None
    dry_run: bool = False
    run_tests: bool = True
    session_id: str | None = None
    framework: str = "next"
    typescript: bool = True
    testing_framework: str = "vitest"
    test_options: TestPipelineOptions | None = None

    def wants_migration(self) -> bool:
        if self.generate_migration is not None:
            return self.generate_migration
        return bool(MIGRATION_HINT_PATTERN.search(self.description or ""))


@dataclass
class ItemOutcome:
    """Result of generating one requested item: ok with code, or failed."""
    kind: str
    name: str
    ok: bool
    files: list[str] = field(default_factory=list)
    tests: list[str] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    code: GeneratedCode | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "ok": self.ok,
            "files": self.files,
            "tests": self.tests,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class FeatureGenerationReport:
    feature_id: str
    success: bool
    dry_run: bool = False
    items: list[ItemOutcome] = field(default_factory=list)
    integration: IntegrationResult | None = None
    generated: GeneratedCode | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def failed_items(self) -> list[ItemOutcome]:
        return [item for item in self.items if not item.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "success": self.success,
            "dry_run": self.dry_run,
            "items": [item.to_dict() for item in self.items],
            "integration": self.integration.to_dict() if self.integration else None,
            "generated": self.generated.to_dict(include_content=False) if self.generated else None,
            "errors": self.errors,
            "warnings": self.warnings,
        }


class FeatureGenerationPipeline:
    """Generate code for a feature request, then hand it to the integrator."""

    def __init__(
        self,
        generator: CodeGenerator,
        integrator: CodeIntegrator,
        registry: FeatureRegistryManager,
    ):
        self.generator = generator
        self.integrator = integrator
        self.registry = registry

    async def _precheck(self, request: FeatureGenerationRequest) -> None:
        check = await asyncio.to_thread(
            self.integrator.can_integrate_feature,
            request.feature_id,
            None,
            request.dependencies,
        )
        if check.conflicts:
            raise IntegrationConflictError(request.feature_id, check.conflicts)

    async def generate_feature(self, request: FeatureGenerationRequest) -> FeatureGenerationReport:
        """
        Run the whole flow for one request.

        Raises:
            IntegrationConflictError: the feature id is taken or a declared
                dependency cannot be satisfied; nothing is generated
            PersistenceError: the feature store failed during integration
        """
        await self._precheck(request)

        options = CodeGenerationOptions(
            session_id=request.session_id,
            framework=request.framework,
            typescript=request.typescript,
            testing_framework=request.testing_framework,
            include_tests=request.generate_tests,
        )
        report = FeatureGenerationReport(
            feature_id=request.feature_id,
            success=False,
            dry_run=request.dry_run,
        )

        for spec in request.components:
            report.items.append(await self._generate_item(
                ITEM_COMPONENT, spec.name, self.generator.generate_component(spec, options)
            ))

        for spec in request.api_endpoints:
            report.items.append(await self._generate_item(
                ITEM_API,
                f"{spec.method.upper()} {spec.endpoint}",
                self.generator.generate_api(spec, options),
            ))

        migration: Migration | None = None
        if request.wants_migration():
            try:
                migration = await self.generator.generate_migration(request.description, options)
                report.items.append(ItemOutcome(kind=ITEM_MIGRATION, name=migration.id, ok=True))
            except GenerationError as e:
                _logger.warning("Migration generation failed for %s: %s", request.feature_id, e)
                report.items.append(ItemOutcome(
                    kind=ITEM_MIGRATION,
                    name=request.feature_id,
                    ok=False,
                    error=e.message,
                    error_kind=e.kind,
                ))

        for item in report.failed_items:
            report.errors.append(f"{item.kind} {item.name}: {item.error}")

        successful = [item.code for item in report.items if item.ok and item.code is not None]
        if not successful and migration is None:
            report.errors.append("No code was generated")
            _logger.warning("Nothing generated for %s", request.feature_id)
            return report

        code = merge_generated_code(
            successful,
            session_id=request.session_id or "default",
            warnings=report.warnings,
        )
        if migration is not None:
            code.migrations.append(migration)
        report.generated = code

        definition = FeatureDefinition(
            id=request.feature_id,
            name=request.feature_name,
            version=request.feature_version or DEFAULT_FEATURE_VERSION,
            description=request.description or None,
            components=[spec.to_dict() for spec in request.components],
            api_endpoints=[spec.to_dict() for spec in request.api_endpoints],
            dependencies=list(request.dependencies),
        )
        integration = await self.integrator.integrate_feature(
            code,
            definition,
            IntegrationOptions(
                dry_run=request.dry_run,
                run_tests=request.run_tests,
                test_options=request.test_options,
            ),
        )
        report.integration = integration
        report.errors.extend(integration.errors)
        report.warnings.extend(integration.warnings)
        report.success = integration.success and not report.failed_items

        _logger.info(
            "Feature generation for %s finished: success=%s, %d/%d items ok",
            request.feature_id,
            report.success,
            len(report.items) - len(report.failed_items),
            len(report.items),
        )
        return report

    async def _generate_item(self, kind: str, name: str, call) -> ItemOutcome:
        try:
            code = await call
        except GenerationError as e:
            _logger.warning("Generation of %s %s failed: %s", kind, name, e)
            return ItemOutcome(kind=kind, name=name, ok=False, error=e.message, error_kind=e.kind)
        return ItemOutcome(
            kind=kind,
            name=name,
            ok=True,
            files=[f.path for f in code.files],
            tests=[t.path for t in code.tests],
            code=code,
        )

    def capabilities(self) -> dict[str, Any]:
        """What POST /api/features/generate accepts."""
        provider = self.generator.provider
        return {
            "generation_types": [ITEM_COMPONENT, ITEM_API, "tests", ITEM_MIGRATION],
            "provider": provider.describe() if provider is not None else None,
            "provider_available": provider is not None,
            "frameworks": ["next", "react"],
            "testing_frameworks": ["vitest", "jest"],
            "test_categories": list(CATEGORY_ORDER),
            "generation_timeout_seconds": self.generator.timeout_seconds,
            "allowed_path_prefixes": list(self.integrator.allowed_prefixes),
            "options": {
                "generate_tests": True,
                "generate_migration": "auto",
                "dry_run": False,
                "run_tests": True,
            },
        }
