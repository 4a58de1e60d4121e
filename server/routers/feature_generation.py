"""
Feature Generation Router
=========================

- POST /api/features/generate - Generate, test and integrate a feature
- GET /api/features/generate - Supported generation kinds and options

Generation failures of single components or endpoints do not fail the
request: the response carries the per-item report with success = false.
A taken feature id or an unsatisfiable dependency is a 400 before anything
is generated.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from server.exceptions import ErrorResponse
from server.schemas.features import ApiResponse, FeatureGenerateRequest
from server.services import ServiceContainer, get_services

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/features", tags=["feature-generation"])


@router.post(
    "/generate",
    response_model=ApiResponse[dict[str, Any]],
    responses={
        400: {"model": ErrorResponse, "description": "Feature cannot be integrated"},
        500: {"model": ErrorResponse, "description": "Feature store error"},
    },
)
async def generate_feature(
    payload: FeatureGenerateRequest,
    services: ServiceContainer = Depends(get_services),
):
    _logger.info(
        "Feature generation requested: %s (%d components, %d endpoints, dry_run=%s)",
        payload.feature_id,
        len(payload.components),
        len(payload.api_endpoints),
        payload.dry_run,
    )
    report = await services.pipeline.generate_feature(payload.to_request())

    if report.success:
        message = (
            f"Feature {payload.feature_id} validated (dry run)" if report.dry_run
            else f"Feature {payload.feature_id} generated and integrated"
        )
    else:
        message = f"Feature {payload.feature_id} generation finished with errors"

    return {
        "success": report.success,
        "data": report.to_dict(),
        "message": message,
    }


@router.get("/generate", response_model=ApiResponse[dict[str, Any]])
async def get_generation_capabilities(services: ServiceContainer = Depends(get_services)):
    return ApiResponse(data=services.pipeline.capabilities())
