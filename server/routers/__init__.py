"""
API Routers
===========

FastAPI routers for the feature API. feature_generation_router must be
included before features_router so /generate is not read as a feature id.
"""

from .feature_generation import router as feature_generation_router
from .features import router as features_router

__all__ = [
    "feature_generation_router",
    "features_router",
]
