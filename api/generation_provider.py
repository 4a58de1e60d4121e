"""
Generation Providers
====================

Adapters that send a prompt to a code-generation model and return the text
of its answer. The code generator treats them as black boxes: no schema is
enforced beyond what it parses out of the returned text.

Two implementations:
- ClaudeAgentSDKProvider: one Claude Agent SDK session per prompt
  (ClaudeSDKClient, no tools, single turn)
- AnthropicMessagesProvider: the raw Messages API via anthropic.AsyncAnthropic,
  retrying transient errors with exponential backoff

Deadlines are applied by the caller (CodeGenerator) with asyncio.wait_for;
providers only translate their own failures into GenerationError.

Usage:
    from api.generation_provider import AnthropicMessagesProvider

    provider = AnthropicMessagesProvider(api_key=os.environ["ANTHROPIC_API_KEY"])
    text = await provider.generate("Generate a TodoBadge component ...")
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from api.errors import GenerationError

_logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MODEL = "claude-sonnet-4-20250514"

DEFAULT_MAX_TOKENS = 8192

# Retries for transient Messages API errors
MAX_ERROR_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 30.0

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior engineer generating production code for a todo "
    "application. Answer only with fenced code blocks. The first line inside "
    "every block is a comment holding the project-relative file path, for "
    "example `// src/components/TodoBadge.tsx` or `# src/api/todos.py`."
)


# =============================================================================
# Error Classification Helpers
# =============================================================================

def _is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable (transient network/server issues)."""
    error_type = type(error).__name__.lower()
    retryable_patterns = [
        "ratelimit", "timeout", "connection",
        "internalserver", "overloaded",
    ]
    if any(p in error_type for p in retryable_patterns):
        return True
    status = getattr(error, "status_code", None)
    if status is not None and (status == 429 or status >= 500):
        return True
    return False


def _get_retry_after(error: Exception) -> float | None:
    """Extract retry-after header value if available."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if headers:
        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except (ValueError, TypeError):
                return None
    return None


def _calculate_backoff(attempt: int, retry_after: float | None = None) -> float:
    """Exponential backoff with jitter, capped at MAX_RETRY_DELAY."""
    if retry_after is not None and retry_after > 0:
        return min(retry_after, MAX_RETRY_DELAY)
    delay = INITIAL_RETRY_DELAY * (2 ** attempt)
    delay += random.uniform(0, delay * 0.1)
    return min(delay, MAX_RETRY_DELAY)


# =============================================================================
# Provider Interface
# =============================================================================

class GenerationProvider(ABC):
    """
    Abstract base class for generation providers.

    Subclasses implement generate(); any failure must surface as
    GenerationError carrying the provider's original message.
    """

    name: str = "abstract"

    @abstractmethod
    async def generate(self, prompt: str, session_id: str | None = None) -> str:
        """Send prompt and return the model's text answer."""

    def describe(self) -> dict[str, Any]:
        return {"provider": self.name}


# =============================================================================
# Claude Agent SDK
# =============================================================================

class ClaudeAgentSDKProvider(GenerationProvider):
    """Generate through a single-turn, tool-less Claude Agent SDK session."""

    name = "claude_sdk"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        project_dir: Path | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_turns: int = 1,
    ):
        self.model = model
        self.project_dir = project_dir
        self.system_prompt = system_prompt
        self.max_turns = max_turns

    def _build_options(self) -> Any:
        from claude_agent_sdk import ClaudeAgentOptions

        kwargs: dict[str, Any] = {
            "model": self.model,
            "system_prompt": self.system_prompt,
            "max_turns": self.max_turns,
            "allowed_tools": [],
        }
        if self.project_dir is not None:
            kwargs["cwd"] = str(self.project_dir)
        return ClaudeAgentOptions(**kwargs)

    async def generate(self, prompt: str, session_id: str | None = None) -> str:
        from claude_agent_sdk import ClaudeSDKClient

        response_text = ""
        try:
            async with ClaudeSDKClient(options=self._build_options()) as client:
                await client.query(prompt, session_id=session_id or "default")

                async for msg in client.receive_response():
                    msg_type = type(msg).__name__

                    if msg_type == "AssistantMessage" and hasattr(msg, "content"):
                        for block in msg.content:
                            if type(block).__name__ == "TextBlock" and hasattr(block, "text"):
                                response_text += block.text

                    elif msg_type == "ResultMessage" and getattr(msg, "is_error", False):
                        raise GenerationError(
                            f"Claude Agent SDK session failed: {getattr(msg, 'result', 'unknown error')}"
                        )
        except GenerationError:
            raise
        except Exception as e:
            _logger.error("Claude Agent SDK query failed (%s): %s", type(e).__name__, e)
            raise GenerationError(f"Claude Agent SDK query failed: {e}") from e

        return response_text

    def describe(self) -> dict[str, Any]:
        return {"provider": self.name, "model": self.model}


# =============================================================================
# Anthropic Messages API
# =============================================================================

class AnthropicMessagesProvider(GenerationProvider):
    """Generate through the Anthropic Messages API."""

    name = "raw_messages"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_error_retries: int = MAX_ERROR_RETRIES,
    ):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.max_error_retries = max_error_retries
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        import anthropic

        if not self.api_key:
            raise GenerationError(
                "No Anthropic API key available. Set ANTHROPIC_API_KEY "
                "or pass api_key to AnthropicMessagesProvider."
            )

        kwargs: dict[str, Any] = {"api_key": self.api_key}
        base_url = os.getenv("ANTHROPIC_BASE_URL")
        if base_url:
            kwargs["base_url"] = base_url
            _logger.info("Using custom API base URL: %s", base_url)

        self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    async def generate(self, prompt: str, session_id: str | None = None) -> str:
        client = self._get_client()

        for attempt in range(self.max_error_retries + 1):
            try:
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=self.system_prompt,
                    messages=[{"role": "user", "content": prompt}],
                )
                return "".join(
                    block.text
                    for block in response.content
                    if getattr(block, "type", None) == "text"
                )
            except Exception as e:
                error_name = type(e).__name__
                if _is_retryable_error(e) and attempt < self.max_error_retries:
                    delay = _calculate_backoff(attempt, _get_retry_after(e))
                    _logger.warning(
                        "Retryable error on attempt %d/%d (%s): %s. Retrying in %.1fs...",
                        attempt + 1,
                        self.max_error_retries + 1,
                        error_name,
                        str(e)[:200],
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                _logger.error(
                    "Messages API error (attempt %d/%d, %s): %s",
                    attempt + 1,
                    self.max_error_retries + 1,
                    error_name,
                    str(e)[:500],
                )
                raise GenerationError(f"Messages API request failed ({error_name}): {e}") from e

        raise GenerationError("Messages API request failed: retries exhausted")

    def describe(self) -> dict[str, Any]:
        return {"provider": self.name, "model": self.model}
