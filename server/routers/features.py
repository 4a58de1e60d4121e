"""
Features Router
===============

API endpoints for the feature registry.

Implements:
- GET /api/features?active=true - List features (optionally enabled only)
- POST /api/features - Register a feature
- GET /api/features/graph - Dependency graph export
- GET /api/features/{feature_id} - Get a feature
- PATCH /api/features/{feature_id} - Enable / disable a feature
- DELETE /api/features/{feature_id} - Remove a feature
- GET /api/features/{feature_id}/dependencies - Outgoing and incoming edges
- POST /api/features/{feature_id}/dependencies - Add or update an edge
- DELETE /api/features/{feature_id}/dependencies/{depends_on} - Remove an edge
- GET /api/features/{feature_id}/can-disable - Disable check

Handlers are plain functions: FastAPI runs them in its threadpool, so a
writer waiting on the SQLite lock never blocks the event loop.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from api.errors import FeatureDisableBlockedError
from server.exceptions import ErrorResponse, NotFoundError
from server.schemas.features import (
    ApiResponse,
    DependencyCreate,
    DependencyOut,
    DisableCheckOut,
    FeatureCreate,
    FeatureOut,
    FeatureUpdate,
)
from server.services import ServiceContainer, get_services

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/features", tags=["features"])

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Validation error or dependency conflict"},
    404: {"model": ErrorResponse, "description": "Feature not found"},
    500: {"model": ErrorResponse, "description": "Feature store error"},
}


@router.get("", response_model=ApiResponse[list[FeatureOut]])
def list_features(
    active: bool = Query(default=False, description="Only enabled features"),
    services: ServiceContainer = Depends(get_services),
):
    registry = services.registry
    features = registry.get_active_features() if active else registry.get_all_features()
    return ApiResponse(data=[FeatureOut.from_definition(f) for f in features])


@router.post(
    "",
    response_model=ApiResponse[FeatureOut],
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
def create_feature(
    payload: FeatureCreate,
    services: ServiceContainer = Depends(get_services),
):
    """Register a feature with its declared dependencies."""
    feature = services.registry.register_feature(payload.to_definition())
    return ApiResponse(
        data=FeatureOut.from_definition(feature),
        message=f"Feature {feature.id} registered",
    )


@router.get("/graph", response_model=ApiResponse[dict[str, Any]])
def get_dependency_graph(services: ServiceContainer = Depends(get_services)):
    """Nodes, edges and any required-edge cycles of the dependency graph."""
    return ApiResponse(data=services.registry.get_dependency_graph())


@router.get("/{feature_id}", response_model=ApiResponse[FeatureOut], responses=_ERROR_RESPONSES)
def get_feature(
    feature_id: str,
    services: ServiceContainer = Depends(get_services),
):
    feature = services.registry.get_feature(feature_id)
    if feature is None:
        raise NotFoundError("feature", feature_id)
    return ApiResponse(data=FeatureOut.from_definition(feature))


@router.patch("/{feature_id}", response_model=ApiResponse[FeatureOut], responses=_ERROR_RESPONSES)
def update_feature(
    feature_id: str,
    payload: FeatureUpdate,
    services: ServiceContainer = Depends(get_services),
):
    """
    Enable or disable a feature.

    Disabling is refused (400) while enabled features hold a required
    dependency on it. Enabling always succeeds; disabled required
    dependencies are reported in the message.
    """
    registry = services.registry

    if payload.enabled:
        feature = registry.enable_feature(feature_id)
        missing = registry.get_disabled_requirements(feature_id)
        message = f"Feature {feature_id} enabled"
        if missing:
            message += f"; required dependencies are disabled: {', '.join(missing)}"
            _logger.warning("Enabled %s with disabled requirements %s", feature_id, missing)
        return ApiResponse(data=FeatureOut.from_definition(feature), message=message)

    check = registry.disable_feature(feature_id)
    if not check.can_disable:
        raise FeatureDisableBlockedError(feature_id, check.dependent_features)

    feature = registry.get_feature(feature_id)
    if feature is None:
        raise NotFoundError("feature", feature_id)
    return ApiResponse(
        data=FeatureOut.from_definition(feature),
        message=f"Feature {feature_id} disabled",
    )


@router.delete("/{feature_id}", response_model=ApiResponse[dict[str, str]], responses=_ERROR_RESPONSES)
def delete_feature(
    feature_id: str,
    services: ServiceContainer = Depends(get_services),
):
    """Remove a feature; refused (400) while any feature depends on it."""
    services.registry.remove_feature(feature_id)
    return ApiResponse(data={"id": feature_id}, message=f"Feature {feature_id} removed")


@router.get(
    "/{feature_id}/dependencies",
    response_model=ApiResponse[dict[str, list[dict[str, Any]]]],
    responses=_ERROR_RESPONSES,
)
def get_feature_dependencies(
    feature_id: str,
    services: ServiceContainer = Depends(get_services),
):
    registry = services.registry
    return ApiResponse(data={
        "dependencies": registry.get_feature_dependencies(feature_id),
        "dependents": registry.get_feature_dependents(feature_id),
    })


@router.post(
    "/{feature_id}/dependencies",
    response_model=ApiResponse[DependencyOut],
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
def add_feature_dependency(
    feature_id: str,
    payload: DependencyCreate,
    services: ServiceContainer = Depends(get_services),
):
    edge = services.registry.add_feature_dependency(
        feature_id, payload.depends_on, payload.dependency_type
    )
    return ApiResponse(
        data=DependencyOut.model_validate(edge),
        message=f"Dependency {payload.depends_on} added to feature {feature_id}",
    )


@router.delete(
    "/{feature_id}/dependencies/{depends_on}",
    response_model=ApiResponse[dict[str, str]],
    responses=_ERROR_RESPONSES,
)
def remove_feature_dependency(
    feature_id: str,
    depends_on: str,
    services: ServiceContainer = Depends(get_services),
):
    if not services.registry.remove_feature_dependency(feature_id, depends_on):
        raise NotFoundError("dependency", f"{feature_id} -> {depends_on}")
    return ApiResponse(
        data={"feature_id": feature_id, "depends_on": depends_on},
        message=f"Dependency {depends_on} removed from feature {feature_id}",
    )


@router.get(
    "/{feature_id}/can-disable",
    response_model=ApiResponse[DisableCheckOut],
    responses=_ERROR_RESPONSES,
)
def can_disable_feature(
    feature_id: str,
    services: ServiceContainer = Depends(get_services),
):
    check = services.registry.can_disable_feature(feature_id)
    return ApiResponse(data=DisableCheckOut(feature_id=feature_id, **check.to_dict()))
