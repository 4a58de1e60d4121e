"""
Backend Services
================

Process-wide service container and its FastAPI dependency.
"""

from .container import ServiceContainer, build_services, get_services

__all__ = [
    "ServiceContainer",
    "build_services",
    "get_services",
]
