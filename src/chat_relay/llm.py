"""Completion service adapters: send a prompt sequence, get one reply back."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .errors import CompletionServiceError
from .history import PromptEntry

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4"


class CompletionClient(ABC):
    """Abstract base for completion providers."""

    model: str = DEFAULT_MODEL

    @abstractmethod
    async def complete(self, prompt: Sequence[PromptEntry]) -> str:
        """Return the reply text for ``prompt``.

        Raises
        ------
        CompletionServiceError
            On any non-success response, including rate limiting, and when
            the response carries no reply content.
        """


# -----------------------------
# OpenAI
# -----------------------------
class OpenAICompletionClient(CompletionClient):
    """Thin wrapper around :class:`openai.AsyncOpenAI` chat completions."""

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        base_url: Optional[str] = None,
        create_kwargs: Optional[Dict[str, Any]] = None,
        client: Any = None,
    ) -> None:
        """
        Parameters
        ----------
        api_key : str
            API key. An empty key is passed through and rejected by the service.
        model : str
            Model identifier sent with every request.
        base_url : str | None
            Optional OpenAI-compatible endpoint.
        create_kwargs : dict | None
            Extra arguments for ``chat.completions.create`` (e.g. temperature).
        client : Any
            Pre-built client exposing ``chat.completions.create``; used by tests.
        """
        self.model = model
        self.create_kwargs = dict(create_kwargs or {})
        # Replies are returned whole.
        self.create_kwargs.pop("stream", None)
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.client = client

    async def complete(self, prompt: Sequence[PromptEntry]) -> str:
        messages: List[Dict[str, str]] = [
            {"role": e["role"], "content": e["content"]} for e in prompt
        ]
        logger.debug("Requesting completion from %s with %d entries", self.model, len(messages))
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                **self.create_kwargs,
            )
        except Exception as e:
            raise CompletionServiceError(f"{type(e).__name__}: {e}") from e

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise CompletionServiceError("Completion response contained no choices.")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        if not content:
            raise CompletionServiceError("Completion response contained no reply content.")
        return content


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any]) -> OpenAICompletionClient:
    """Create a completion client from the ``openai`` section of a config dict."""
    oa_cfg = (cfg or {}).get("openai", {}) if isinstance(cfg, dict) else {}
    return OpenAICompletionClient(
        api_key=str(oa_cfg.get("api_key") or ""),
        model=str(oa_cfg.get("model") or DEFAULT_MODEL),
        base_url=oa_cfg.get("base_url") or None,
        create_kwargs=oa_cfg.get("create_kwargs") or {},
    )
