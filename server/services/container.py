"""
Service Container
=================

The process-wide services, built once at start-up and shared by every
request through app.state.services.

Usage:
    services = build_services(BuilderSettings.from_env())
    app.state.services = services
    ...
    services.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from api.builder_settings import BuilderSettings
from api.code_generator import CodeGenerator
from api.code_integrator import CodeIntegrator
from api.database import create_database
from api.feature_generation import FeatureGenerationPipeline
from api.feature_registry import FeatureRegistryManager
from api.generation_config import create_generation_provider
from api.generation_provider import GenerationProvider
from api.migration_runner import MigrationRunner
from api.test_runner import TestRunner
from api.testing_pipeline import TestingPipeline

_logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: BuilderSettings
    engine: Engine
    session_maker: sessionmaker
    registry: FeatureRegistryManager
    migration_runner: MigrationRunner
    generator: CodeGenerator
    testing_pipeline: TestingPipeline
    integrator: CodeIntegrator
    pipeline: FeatureGenerationPipeline

    def close(self) -> None:
        self.engine.dispose()
        _logger.info("Feature store connections closed")


def build_services(
    settings: BuilderSettings,
    provider: GenerationProvider | None = None,
    runner: TestRunner | None = None,
) -> ServiceContainer:
    """
    Wire every service from settings.

    provider and runner default to the ones configured by the environment;
    tests pass their own.
    """
    engine, session_maker = create_database(
        project_dir=settings.project_root,
        database_url=settings.database_url,
    )
    registry = FeatureRegistryManager(session_maker)
    migration_runner = MigrationRunner(session_maker)

    if provider is None:
        provider = create_generation_provider(settings.project_root)
    generator = CodeGenerator(provider, timeout_seconds=settings.generation_timeout)

    testing_pipeline = TestingPipeline(
        runner=runner or TestRunner(default_timeout=settings.test_timeout),
        project_root=settings.project_root,
        test_command=settings.test_command,
        coverage_command=settings.coverage_command,
        default_timeout=settings.test_timeout,
        lint_command=settings.lint_command,
        typecheck_command=settings.typecheck_command,
    )
    integrator = CodeIntegrator(
        registry=registry,
        migration_runner=migration_runner,
        testing_pipeline=testing_pipeline,
        project_root=settings.project_root,
        allowed_prefixes=settings.allowed_prefixes,
        validator=generator,
        runner=testing_pipeline.runner,
        install_command=settings.install_command,
    )
    pipeline = FeatureGenerationPipeline(generator, integrator, registry)

    _logger.info(
        "Services ready: project_root=%s, provider=%s",
        settings.project_root,
        provider.describe() if provider is not None else None,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        registry=registry,
        migration_runner=migration_runner,
        generator=generator,
        testing_pipeline=testing_pipeline,
        integrator=integrator,
        pipeline=pipeline,
    )


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built in the lifespan."""
    return request.app.state.services
