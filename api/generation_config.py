"""
Generation Provider Configuration
=================================

Environment variable configuration and factory for choosing between the
Claude Agent SDK provider and the raw Messages API provider.

Usage:
    from api.generation_config import create_generation_provider, get_generation_timeout

    provider = create_generation_provider(project_dir)
    generator = CodeGenerator(provider, timeout_seconds=get_generation_timeout())
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from api.generation_provider import GenerationProvider

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ENV_VAR_NAME = "TODO_BUILDER_GENERATION_PROVIDER"

PROVIDER_CLAUDE_SDK = "claude_sdk"
PROVIDER_RAW_MESSAGES = "raw_messages"

VALID_VALUES = (PROVIDER_CLAUDE_SDK, PROVIDER_RAW_MESSAGES)

DEFAULT_PROVIDER = PROVIDER_CLAUDE_SDK

MODEL_ENV_VAR = "TODO_BUILDER_MODEL"

TIMEOUT_ENV_VAR = "TODO_BUILDER_GENERATION_TIMEOUT"
DEFAULT_GENERATION_TIMEOUT = 120.0


# =============================================================================
# Environment Variable Reading
# =============================================================================

def get_provider_type() -> str:
    """
    Read TODO_BUILDER_GENERATION_PROVIDER and return the provider type.

    Returns:
        One of PROVIDER_CLAUDE_SDK or PROVIDER_RAW_MESSAGES.
        Defaults to PROVIDER_CLAUDE_SDK if unset or invalid.
    """
    raw = os.environ.get(ENV_VAR_NAME, "").strip().lower()

    if not raw:
        return DEFAULT_PROVIDER

    if raw in VALID_VALUES:
        return raw

    _logger.warning(
        "Unknown value for %s: '%s'. Defaulting to '%s'. Valid values: %s",
        ENV_VAR_NAME,
        raw,
        DEFAULT_PROVIDER,
        VALID_VALUES,
    )
    return DEFAULT_PROVIDER


def get_model() -> str:
    from api.generation_provider import DEFAULT_MODEL

    return os.environ.get(MODEL_ENV_VAR, "").strip() or DEFAULT_MODEL


def get_generation_timeout() -> float:
    """Per-call generation deadline in seconds (positive float)."""
    raw = os.environ.get(TIMEOUT_ENV_VAR, "").strip()
    if not raw:
        return DEFAULT_GENERATION_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if value <= 0:
        _logger.warning(
            "Invalid value for %s: '%s'. Defaulting to %.0fs",
            TIMEOUT_ENV_VAR, raw, DEFAULT_GENERATION_TIMEOUT,
        )
        return DEFAULT_GENERATION_TIMEOUT
    return value


# =============================================================================
# Factory
# =============================================================================

def create_generation_provider(project_dir: Path | None = None) -> Optional["GenerationProvider"]:
    """
    Create the provider selected by TODO_BUILDER_GENERATION_PROVIDER.

    Returns:
        A GenerationProvider, or None if the raw Messages API is selected
        and no ANTHROPIC_API_KEY is available.
    """
    from api.generation_provider import AnthropicMessagesProvider, ClaudeAgentSDKProvider

    provider_type = get_provider_type()
    model = get_model()

    if provider_type == PROVIDER_CLAUDE_SDK:
        _logger.info("Using Claude Agent SDK generation provider (model %s)", model)
        return ClaudeAgentSDKProvider(model=model, project_dir=project_dir)

    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        _logger.info("No ANTHROPIC_API_KEY: no raw_messages generation provider available")
        return None

    _logger.info("Using Messages API generation provider (model %s)", model)
    return AnthropicMessagesProvider(api_key=api_key, model=model)
