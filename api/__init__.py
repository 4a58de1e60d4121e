"""
API Package
============

Feature store, registry and the generate -> test -> integrate pipeline.
"""

from api.database import (
    AppliedMigration,
    Feature,
    FeatureDependency,
    atomic_transaction,
    create_database,
    get_database_path,
    get_database_url,
)
from api.dependency_graph import (
    build_graph_data,
    detect_cycles,
    find_cycle,
    would_create_circular_dependency,
)
from api.errors import (
    DependencyCycleError,
    DependencyViolationError,
    DuplicateFeatureError,
    FeatureBuilderError,
    FeatureDisableBlockedError,
    GenerationError,
    GenerationTimeoutError,
    HasDependentsError,
    IntegrationConflictError,
    MigrationError,
    PersistenceError,
    SelfDependencyError,
    TestRunnerError,
    TestRunnerTimeoutError,
    UnknownFeatureError,
)
from api.feature_registry import (
    DependencySpec,
    DisableCheck,
    FeatureDefinition,
    FeatureRegistryManager,
)
from api.generated_code import (
    CodeFile,
    GeneratedCode,
    Migration,
    TestFile,
    merge_generated_code,
)
from api.code_generator import (
    APISpec,
    CodeContext,
    CodeGenerationOptions,
    CodeGenerator,
    ComponentSpec,
)
from api.testing_pipeline import (
    TestingPipeline,
    TestPipelineOptions,
    TestPipelineResult,
    create_test_report,
)
from api.code_integrator import (
    CodeIntegrator,
    IntegrationCheck,
    IntegrationOptions,
    IntegrationResult,
    RollbackInfo,
)
from api.feature_generation import (
    FeatureGenerationPipeline,
    FeatureGenerationReport,
    FeatureGenerationRequest,
    ItemOutcome,
)

__all__ = [
    # Feature store
    "AppliedMigration",
    "Feature",
    "FeatureDependency",
    "atomic_transaction",
    "create_database",
    "get_database_path",
    "get_database_url",
    # Dependency graph
    "build_graph_data",
    "detect_cycles",
    "find_cycle",
    "would_create_circular_dependency",
    # Errors
    "DependencyCycleError",
    "DependencyViolationError",
    "DuplicateFeatureError",
    "FeatureBuilderError",
    "FeatureDisableBlockedError",
    "GenerationError",
    "GenerationTimeoutError",
    "HasDependentsError",
    "IntegrationConflictError",
    "MigrationError",
    "PersistenceError",
    "SelfDependencyError",
    "TestRunnerError",
    "TestRunnerTimeoutError",
    "UnknownFeatureError",
    # Registry
    "DependencySpec",
    "DisableCheck",
    "FeatureDefinition",
    "FeatureRegistryManager",
    # Generation
    "APISpec",
    "CodeContext",
    "CodeFile",
    "CodeGenerationOptions",
    "CodeGenerator",
    "ComponentSpec",
    "GeneratedCode",
    "Migration",
    "TestFile",
    "merge_generated_code",
    # Testing and integration
    "CodeIntegrator",
    "IntegrationCheck",
    "IntegrationOptions",
    "IntegrationResult",
    "RollbackInfo",
    "TestingPipeline",
    "TestPipelineOptions",
    "TestPipelineResult",
    "create_test_report",
    # Orchestration
    "FeatureGenerationPipeline",
    "FeatureGenerationReport",
    "FeatureGenerationRequest",
    "ItemOutcome",
]
