from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from chat_relay.dispatcher import ASSISTANT_TURN_NOT_RECORDED, EventDispatcher
from chat_relay.errors import StoreReadError
from chat_relay.history import HistoryWindow
from chat_relay.models import Message, WebhookEvent
from chat_relay.store import DiskMessageStore

from conftest import FakeCompletion, FakeReplier, RecordingStore, text_event


def _events(*raw):
    return [WebhookEvent.model_validate(r) for r in raw]


@pytest.mark.asyncio
async def test_first_turn_scenario(store, completion, replier, preamble):
    dispatcher = EventDispatcher(store, completion, replier, preamble=preamble)

    results = await dispatcher.dispatch(_events(text_event("u1", "hello", reply_token="tok")))

    assert [m.role for m in store.appended] == ["user", "assistant"]
    assert store.appended[0].content == "hello"
    assert store.appended[1].content == "hi there"
    assert completion.prompts == [preamble + [{"role": "user", "content": "hello"}]]
    assert replier.sent == [("tok", "hi there")]
    assert results[0].status == "replied"
    assert results[0].reply == "hi there"
    assert results[0].warnings == []


@pytest.mark.asyncio
async def test_second_turn_replays_history_in_order(store, completion, replier, preamble):
    dispatcher = EventDispatcher(store, completion, replier, preamble=preamble)
    await dispatcher.dispatch(_events(text_event("u1", "hello")))
    await dispatcher.dispatch(_events(text_event("u1", "how are you?")))

    assert completion.prompts[-1] == preamble + [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
        {"role": "user", "content": "how are you?"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    {"type": "follow", "replyToken": "rt", "source": {"type": "user", "userId": "u1"}},
    {"type": "message", "replyToken": "rt", "source": {"type": "user", "userId": "u1"},
     "message": {"type": "sticker", "id": "1", "packageId": "1", "stickerId": "2"}},
    {"type": "message", "replyToken": "rt", "source": {"type": "group", "groupId": "g1"},
     "message": {"type": "text", "id": "1", "text": "no user"}},
    {"type": "unfollow", "source": {"type": "user", "userId": "u1"}},
])
async def test_unsupported_events_are_skipped_without_side_effects(store, completion, replier, raw):
    dispatcher = EventDispatcher(store, completion, replier)
    assert await dispatcher.dispatch(_events(raw)) == [None]
    assert store.appended == []
    assert store.list_calls == []
    assert completion.prompts == []
    assert replier.sent == []


@pytest.mark.asyncio
async def test_batch_with_one_failed_completion(store, replier):
    completion = FakeCompletion(reply="echo", fail_on="two")
    dispatcher = EventDispatcher(store, completion, replier)

    results = await dispatcher.dispatch(_events(
        text_event("u1", "one", reply_token="t1"),
        text_event("u2", "two", reply_token="t2"),
        text_event("u3", "three", reply_token="t3"),
    ))

    assert len(results) == 3
    assert results[0].status == "replied" and results[0].reply == "echo:one"
    assert results[1].status == "failed" and results[1].error == "CompletionServiceError"
    assert results[2].status == "replied" and results[2].reply == "echo:three"
    assert sorted(replier.sent) == [("t1", "echo:one"), ("t3", "echo:three")]
    # The failed event still recorded its user turn, but no assistant turn.
    assert [m.role for m in await store.list_by_user("u2")] == ["user"]


@pytest.mark.asyncio
async def test_results_keep_input_order_with_mixed_kinds(store, completion, replier):
    dispatcher = EventDispatcher(store, completion, replier)
    results = await dispatcher.dispatch(_events(
        {"type": "follow", "replyToken": "rt", "source": {"type": "user", "userId": "u9"}},
        text_event("u1", "hello"),
    ))
    assert results[0] is None
    assert results[1].status == "replied"


@pytest.mark.asyncio
async def test_assistant_write_failure_still_replies_with_warning(completion, replier):
    store = RecordingStore()
    store.fail_append_roles = {"assistant"}
    dispatcher = EventDispatcher(store, completion, replier)

    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello", reply_token="tok")))

    assert result.status == "replied"
    assert result.warnings == [ASSISTANT_TURN_NOT_RECORDED]
    assert replier.sent == [("tok", "hi there")]
    assert [m.role for m in await store.list_by_user("u1")] == ["user"]


@pytest.mark.asyncio
async def test_user_write_failure_stops_pipeline(completion, replier):
    store = RecordingStore()
    store.fail_append_roles = {"user"}
    dispatcher = EventDispatcher(store, completion, replier)

    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello")))

    assert result.status == "failed"
    assert result.error == "StoreWriteError"
    assert store.list_calls == []
    assert completion.prompts == []
    assert replier.sent == []


@pytest.mark.asyncio
async def test_history_read_failure_is_reported(completion, replier):
    class BrokenReads(RecordingStore):
        async def list_by_user(self, user_id):
            raise StoreReadError("index unavailable")

    dispatcher = EventDispatcher(BrokenReads(), completion, replier)
    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello")))
    assert result.error == "StoreReadError"
    assert completion.prompts == []


@pytest.mark.asyncio
async def test_reply_failure_is_reported_after_history_is_recorded(store, completion):
    dispatcher = EventDispatcher(store, completion, FakeReplier(fail=True))
    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello")))
    assert result.status == "failed"
    assert result.error == "ReplyDeliveryError"
    assert [m.role for m in await store.list_by_user("u1")] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failed_result(store, replier):
    class Exploding(FakeCompletion):
        async def complete(self, prompt):
            raise RuntimeError("boom")

    dispatcher = EventDispatcher(store, Exploding(), replier)
    results = await dispatcher.dispatch(_events(text_event("u1", "a"), text_event("u2", "b")))
    assert [r.error for r in results] == ["RuntimeError", "RuntimeError"]


@pytest.mark.asyncio
async def test_slow_participant_does_not_block_others(store, replier):
    class SlowForU1(FakeCompletion):
        async def complete(self, prompt):
            if prompt[-1]["content"] == "slow":
                await asyncio.sleep(0.3)
            return await super().complete(prompt)

    dispatcher = EventDispatcher(store, SlowForU1(reply="echo"), replier)
    results = await dispatcher.dispatch(_events(
        text_event("u1", "slow", reply_token="t1"),
        text_event("u2", "fast", reply_token="t2"),
    ))

    assert [r.reply for r in results] == ["echo:slow", "echo:fast"]
    # The fast participant's reply went out first.
    assert [tok for tok, _ in replier.sent] == ["t2", "t1"]
    assert [m.content for m in await store.list_by_user("u2")] == ["fast", "echo:fast"]


@pytest.mark.asyncio
async def test_call_timeout_maps_to_stage_error(store, replier):
    dispatcher = EventDispatcher(store, FakeCompletion(delay=1.0), replier, call_timeout=0.05)
    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello")))
    assert result.status == "failed"
    assert result.error == "CompletionServiceError"
    assert "timed out" in result.detail


@pytest.mark.asyncio
async def test_window_limits_replayed_history(store, completion, replier, preamble):
    for i in range(10):
        await store.append(Message(user_id="u1", role="user", content=f"old{i}"))
    dispatcher = EventDispatcher(
        store, completion, replier, preamble=preamble, window=HistoryWindow(max_messages=3)
    )
    await dispatcher.dispatch(_events(text_event("u1", "new")))
    assert completion.prompts[0] == preamble + [
        {"role": "user", "content": "old8"},
        {"role": "user", "content": "old9"},
        {"role": "user", "content": "new"},
    ]


@pytest.mark.asyncio
async def test_timed_out_threaded_write_may_still_land(tmp_path: Path, completion, replier):
    class SlowAssistantWrites(DiskMessageStore):
        def _append_sync(self, message):
            if message.role == "assistant":
                time.sleep(0.3)
            super()._append_sync(message)

    store = SlowAssistantWrites(str(tmp_path))
    dispatcher = EventDispatcher(store, completion, replier, call_timeout=0.1)

    [result] = await dispatcher.dispatch(_events(text_event("u1", "hello", reply_token="tok")))

    assert result.status == "replied"
    assert result.warnings == [ASSISTANT_TURN_NOT_RECORDED]
    assert replier.sent == [("tok", "hi there")]

    # The worker thread was not interrupted; the write completes on its own.
    await asyncio.sleep(0.5)
    assert [m.role for m in await store.list_by_user("u1")] == ["user", "assistant"]
