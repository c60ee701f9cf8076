"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.errors import CompletionServiceError, ReplyDeliveryError, StoreWriteError  # noqa: E402
from chat_relay.llm import CompletionClient  # noqa: E402
from chat_relay.models import Message  # noqa: E402
from chat_relay.reply import ReplyClient  # noqa: E402
from chat_relay.store import InMemoryMessageStore  # noqa: E402


# -----------------------------
# Fakes
# -----------------------------
class RecordingStore(InMemoryMessageStore):
    """In-memory store that records calls and can fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.appended: List[Message] = []
        self.list_calls: List[str] = []
        self.fail_append_roles: set[str] = set()

    async def append(self, message: Message) -> None:
        if message.role in self.fail_append_roles:
            raise StoreWriteError(f"cannot write {message.role} turn")
        self.appended.append(message)
        await super().append(message)

    async def list_by_user(self, user_id: str) -> List[Message]:
        self.list_calls.append(user_id)
        return await super().list_by_user(user_id)


class FakeCompletion(CompletionClient):
    """Returns ``reply`` (or ``reply_for(prompt)``) and records every prompt."""

    model = "fake-model"

    def __init__(self, reply: str = "ok", *, fail_on: Optional[str] = None, delay: float = 0.0) -> None:
        self.reply = reply
        self.fail_on = fail_on
        self.delay = delay
        self.prompts: List[List[Dict[str, str]]] = []

    async def complete(self, prompt: Sequence[Dict[str, str]]) -> str:
        self.prompts.append(list(prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on is not None and prompt and prompt[-1]["content"] == self.fail_on:
            raise CompletionServiceError("rate limited")
        return f"{self.reply}:{prompt[-1]['content']}" if self.reply == "echo" else self.reply


class FakeReplier(ReplyClient):
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[tuple[str, str]] = []
        self.closed = False

    async def reply(self, reply_token: str, text: str) -> Any:
        if self.fail:
            raise ReplyDeliveryError("invalid reply token")
        self.sent.append((reply_token, text))
        return {}

    async def aclose(self) -> None:
        self.closed = True


def text_event(user_id: str, text: str, reply_token: str = "rt") -> Dict[str, Any]:
    """A LINE text message event as it appears in the webhook body."""
    return {
        "type": "message",
        "replyToken": reply_token,
        "timestamp": 1680000000000,
        "source": {"type": "user", "userId": user_id},
        "message": {"type": "text", "id": "m1", "text": text},
    }


# -----------------------------
# Fixtures
# -----------------------------
@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion(reply="hi there")


@pytest.fixture
def replier() -> FakeReplier:
    return FakeReplier()


@pytest.fixture
def preamble() -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": "You are JOJI."},
        {"role": "system", "content": "Use lots of emoji."},
    ]


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["CHAT_RELAY_CONFIG", "CHANNEL_SECRET", "CHANNEL_ACCESS_TOKEN", "OPEN_AI_SECRET"]:
        monkeypatch.delenv(var, raising=False)
    yield
