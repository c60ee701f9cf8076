"""Deliver reply text back to the originating LINE conversation."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .errors import ReplyDeliveryError


class ReplyClient(ABC):
    @abstractmethod
    async def reply(self, reply_token: str, text: str) -> Any:
        """Send ``text`` using ``reply_token``; raise ReplyDeliveryError on failure."""

    async def aclose(self) -> None:
        return None


class LineReplyClient(ReplyClient):
    """Reply through the LINE Messaging API (``line-bot-sdk`` v3, async client).

    ``api`` may be injected (anything with an async ``reply_message``).
    Otherwise the SDK client is built on first use, inside the running loop.
    """

    def __init__(self, channel_access_token: str = "", *, api: Any = None) -> None:
        self._token = channel_access_token
        self._api_client = None
        self._api = api

    def _ensure_api(self) -> Any:
        if self._api is None:
            from linebot.v3.messaging import AsyncApiClient, AsyncMessagingApi, Configuration

            self._api_client = AsyncApiClient(Configuration(access_token=self._token))
            self._api = AsyncMessagingApi(self._api_client)
        return self._api

    async def reply(self, reply_token: str, text: str) -> Any:
        from linebot.v3.messaging import ReplyMessageRequest, TextMessage

        request = ReplyMessageRequest(reply_token=reply_token, messages=[TextMessage(text=text)])
        try:
            return await self._ensure_api().reply_message(request)
        except Exception as e:
            raise ReplyDeliveryError(f"{type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
            self._api = None


def create_from_config(cfg: Dict[str, Any], api: Optional[Any] = None) -> LineReplyClient:
    line_cfg = (cfg or {}).get("line", {}) if isinstance(cfg, dict) else {}
    return LineReplyClient(str(line_cfg.get("channel_access_token") or ""), api=api)
