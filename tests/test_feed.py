import asyncio

import pytest

from app.chat.errors import SubscriptionError
from app.chat.feed import ChangeFeedSubscriber
from app.chat.models import MESSAGES_TABLE, format_ts, utcnow
from app.store.base import ChangeStream, RecordStoreError
from app.store.memory import MemoryRecordStore


def _record(message_id, session_id, content="hi"):
    return {
        "message_id": message_id,
        "session_id": session_id,
        "role": "user",
        "content": content,
        "sent_at": format_ts(utcnow()),
    }


class SharedChannelStream(ChangeStream):
    """Unfiltered stream, like a realtime channel that ignores the filter."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.closed = False

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def aclose(self):
        self.closed = True
        self.queue.put_nowait(None)


class SharedChannelStore(MemoryRecordStore):
    def __init__(self):
        super().__init__()
        self.stream = SharedChannelStream()

    async def subscribe_to_inserts(self, table, filters=None):
        return self.stream


class RefusingStore(MemoryRecordStore):
    async def subscribe_to_inserts(self, table, filters=None):
        raise RecordStoreError("realtime unavailable")


async def _settle():
    await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_delivers_inserts_of_the_subscribed_session():
    store = MemoryRecordStore()
    feed = ChangeFeedSubscriber(store)
    got = []

    handle = await feed.subscribe(1, got.append)
    await store.insert(MESSAGES_TABLE, _record(None, 1, "mine"))
    await store.insert(MESSAGES_TABLE, _record(None, 2, "not mine"))
    await _settle()

    assert [m.content for m in got] == ["mine"]
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_foreign_session_events_are_discarded():
    store = SharedChannelStore()
    feed = ChangeFeedSubscriber(store)
    got = []

    handle = await feed.subscribe("42", got.append)
    store.stream.queue.put_nowait(_record(1, 41, "foreign"))
    store.stream.queue.put_nowait(_record(2, 42, "ours"))
    await _settle()

    assert [m.content for m in got] == ["ours"]
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_redelivered_events_reach_callback_once():
    store = SharedChannelStore()
    feed = ChangeFeedSubscriber(store)
    got = []

    handle = await feed.subscribe(1, got.append)
    row = _record(7, 1)
    for _ in range(3):
        store.stream.queue.put_nowait(dict(row))
    await _settle()

    assert [m.message_id for m in got] == [7]
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_malformed_events_are_skipped():
    store = SharedChannelStore()
    feed = ChangeFeedSubscriber(store)
    got = []

    handle = await feed.subscribe(1, got.append)
    bad = _record(1, 1)
    bad["role"] = "narrator"
    store.stream.queue.put_nowait(bad)
    store.stream.queue.put_nowait(_record(2, 1, "fine"))
    await _settle()

    assert [m.content for m in got] == ["fine"]
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_no_delivery_after_unsubscribe_and_unsubscribe_is_idempotent(inspectable_store):
    store = inspectable_store
    feed = ChangeFeedSubscriber(store)
    got = []

    handle = await feed.subscribe(1, got.append)
    assert feed.active_handles == 1
    await feed.unsubscribe(handle)
    await feed.unsubscribe(handle)

    await store.insert(MESSAGES_TABLE, _record(None, 1))
    await _settle()

    assert got == []
    assert handle.active is False
    assert feed.active_handles == 0
    assert store.open_streams(MESSAGES_TABLE) == []


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited_and_errors_do_not_stop_the_feed():
    store = MemoryRecordStore()
    feed = ChangeFeedSubscriber(store)
    got = []

    async def on_message(message):
        if message.content == "boom":
            raise RuntimeError("callback failed")
        got.append(message.content)

    handle = await feed.subscribe(1, on_message)
    await store.insert(MESSAGES_TABLE, _record(None, 1, "boom"))
    await store.insert(MESSAGES_TABLE, _record(None, 1, "after"))
    await _settle()

    assert got == ["after"]
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_subscribe_failure_raises_subscription_error():
    feed = ChangeFeedSubscriber(RefusingStore())
    with pytest.raises(SubscriptionError):
        await feed.subscribe(1, lambda m: None)
    assert feed.active_handles == 0
