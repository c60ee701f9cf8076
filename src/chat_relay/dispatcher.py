"""Drive each inbound event through store -> assemble -> complete -> store -> reply.

One asyncio task per event. Tasks share no mutable state, so a failure or
a slow downstream call in one event never blocks the others. Within an
event the stages run strictly in order.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, List, Optional, Sequence, Type

from .errors import (
    CompletionServiceError,
    RelayError,
    ReplyDeliveryError,
    StoreReadError,
    StoreWriteError,
    UnsupportedEventError,
)
from .history import HistoryWindow, PromptEntry, assemble
from .llm import CompletionClient
from .models import ASSISTANT_ROLE, USER_ROLE, EventResult, Message, WebhookEvent
from .reply import ReplyClient
from .store import MessageStore

logger = logging.getLogger(__name__)

ASSISTANT_TURN_NOT_RECORDED = "assistant_turn_not_recorded"


class EventDispatcher:
    """Handles batches of webhook events with injected collaborators."""

    def __init__(
        self,
        store: MessageStore,
        completion: CompletionClient,
        replier: ReplyClient,
        *,
        preamble: Sequence[PromptEntry] = (),
        window: Optional[HistoryWindow] = None,
        call_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.completion = completion
        self.replier = replier
        self.preamble = list(preamble)
        self.window = window
        self.call_timeout = call_timeout

    # -------------------------
    # Batch
    # -------------------------
    async def dispatch(self, events: Sequence[WebhookEvent]) -> List[Optional[EventResult]]:
        """Process ``events`` concurrently; results keep input order.

        Each entry is an :class:`EventResult` or ``None`` for a skipped event.
        """
        outcomes = await asyncio.gather(
            *(self.handle_event(e) for e in events), return_exceptions=True
        )
        results: List[Optional[EventResult]] = []
        for event, outcome in zip(events, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(
                    "Unexpected error handling %s event: %s",
                    event.type, outcome, exc_info=outcome,
                )
                outcome = EventResult(
                    status="failed", error=type(outcome).__name__, detail=str(outcome)
                )
            results.append(outcome)
        return results

    # -------------------------
    # Single event
    # -------------------------
    async def handle_event(self, event: WebhookEvent) -> Optional[EventResult]:
        try:
            user_id, text, reply_token = self._filter(event)
        except UnsupportedEventError as e:
            logger.debug("Skipping event: %s", e)
            return None

        try:
            return await self._run_pipeline(user_id, text, reply_token)
        except RelayError as e:
            logger.warning("Event for %s failed: %s: %s", user_id, type(e).__name__, e)
            return EventResult(status="failed", error=type(e).__name__, detail=str(e))

    def _filter(self, event: WebhookEvent):
        if event.type != "message" or event.message is None:
            raise UnsupportedEventError(f"event type {event.type!r}")
        if event.message.type != "text" or event.message.text is None:
            raise UnsupportedEventError(f"message type {event.message.type!r}")
        user_id = event.source.user_id if event.source else None
        if not user_id:
            raise UnsupportedEventError("message event without a source userId")
        if not event.reply_token:
            raise UnsupportedEventError("message event without a replyToken")
        return user_id, event.message.text, event.reply_token

    async def _run_pipeline(self, user_id: str, text: str, reply_token: str) -> EventResult:
        warnings: List[str] = []

        await self._call(
            self.store.append(Message(user_id=user_id, role=USER_ROLE, content=text)),
            StoreWriteError, "recording user turn",
        )

        history = await self._call(
            self.store.list_by_user(user_id), StoreReadError, "fetching history",
        )

        prompt = assemble(history, self.preamble, self.window)
        reply_text = await self._call(
            self.completion.complete(prompt), CompletionServiceError, "completion",
        )

        try:
            await self._call(
                self.store.append(Message(user_id=user_id, role=ASSISTANT_ROLE, content=reply_text)),
                StoreWriteError, "recording assistant turn",
            )
        except StoreWriteError as e:
            # The reply is already computed; deliver it and flag the gap in history.
            logger.warning(
                "Assistant turn for %s not recorded, replying anyway: %s", user_id, e
            )
            warnings.append(ASSISTANT_TURN_NOT_RECORDED)

        await self._call(
            self.replier.reply(reply_token, reply_text), ReplyDeliveryError, "reply",
        )
        return EventResult(status="replied", reply=reply_text, warnings=warnings)

    async def _call(self, aw: Awaitable[Any], error_cls: Type[RelayError], stage: str) -> Any:
        """Await ``aw`` under the per-call timeout; expiry raises ``error_cls``.

        A timeout only stops waiting. Backends that run in a worker thread
        (disk, DynamoDB) cannot be interrupted, so a write reported as timed
        out may still be stored afterwards. ``assistant_turn_not_recorded``
        therefore means the write was not confirmed, not that it is absent.
        """
        if self.call_timeout is None:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{stage} timed out after {self.call_timeout}s") from e
