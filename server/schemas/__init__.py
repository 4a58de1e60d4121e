"""
Pydantic Schemas Package
========================

Request/response schemas for the feature API.
"""

from .features import (
    ApiResponse,
    APISpecIn,
    ComponentSpecIn,
    DependencyCreate,
    DependencyOut,
    DisableCheckOut,
    FeatureCreate,
    FeatureGenerateRequest,
    FeatureOut,
    FeatureUpdate,
    TestOptionsIn,
)

__all__ = [
    "ApiResponse",
    "APISpecIn",
    "ComponentSpecIn",
    "DependencyCreate",
    "DependencyOut",
    "DisableCheckOut",
    "FeatureCreate",
    "FeatureGenerateRequest",
    "FeatureOut",
    "FeatureUpdate",
    "TestOptionsIn",
]
