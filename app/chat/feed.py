from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from app.log import get_logger, log_event
from app.metrics import FEED_DELIVERIES_TOTAL
from app.store.base import ChangeStream, RecordStore, RecordStoreError

from .errors import SubscriptionError
from .models import MESSAGES_TABLE, Message

logger = get_logger("chat.feed")

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class SubscriptionHandle:
    """One live change-feed registration, scoped to a single session."""

    session_id: Any
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    active: bool = True
    _stream: Optional[ChangeStream] = field(default=None, repr=False)
    _task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    _seen: Set[Any] = field(default_factory=set, repr=False)


class ChangeFeedSubscriber:
    """Delivers newly inserted messages of one session to one callback.

    Events for other sessions on the shared stream are discarded, and each
    message id reaches the callback at most once per subscription. Callbacks
    are invoked in arrival order from a background task; they may be plain
    callables or coroutine functions.
    """

    def __init__(self, store: RecordStore):
        self.store = store
        self._handles: Dict[int, SubscriptionHandle] = {}

    async def subscribe(self, session_id: Any, on_message: Callable[[Message], Any]) -> SubscriptionHandle:
        try:
            stream = await self.store.subscribe_to_inserts(MESSAGES_TABLE, filters={"session_id": session_id})
        except RecordStoreError as e:
            raise SubscriptionError(f"could not subscribe to messages of session {session_id}: {e}") from e
        handle = SubscriptionHandle(session_id=session_id, _stream=stream)
        handle._task = asyncio.create_task(self._pump(handle, stream, on_message))
        self._handles[handle.handle_id] = handle
        log_event(logger, "feed_subscribed", sessionId=session_id, handleId=handle.handle_id)
        return handle

    async def _pump(self, handle: SubscriptionHandle, stream: ChangeStream, on_message: Callable[[Message], Any]) -> None:
        async for record in stream:
            if not handle.active:
                break
            if str(record.get("session_id")) != str(handle.session_id):
                FEED_DELIVERIES_TOTAL.labels(outcome="foreign").inc()
                continue
            try:
                message = Message.from_record(record)
            except (ValueError, TypeError) as e:
                FEED_DELIVERIES_TOTAL.labels(outcome="malformed").inc()
                log_event(logger, "feed_malformed_event", logging.WARNING, sessionId=handle.session_id, error=str(e))
                continue
            if message.message_id in handle._seen:
                FEED_DELIVERIES_TOTAL.labels(outcome="duplicate").inc()
                continue
            handle._seen.add(message.message_id)
            try:
                result = on_message(message)
                if inspect.isawaitable(result):
                    await result
                FEED_DELIVERIES_TOTAL.labels(outcome="delivered").inc()
            except Exception as e:
                FEED_DELIVERIES_TOTAL.labels(outcome="callback_error").inc()
                logger.exception("feed_callback_error: %s", e)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if not handle.active:
            return
        handle.active = False
        self._handles.pop(handle.handle_id, None)
        if handle._stream is not None:
            await handle._stream.aclose()
        task = handle._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log_event(logger, "feed_unsubscribed", sessionId=handle.session_id, handleId=handle.handle_id)

    @property
    def active_handles(self) -> int:
        return len(self._handles)

    async def aclose(self) -> None:
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)
