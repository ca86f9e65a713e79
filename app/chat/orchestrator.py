from __future__ import annotations

import asyncio
import bisect
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from app.config import Settings
from app.log import get_logger, log_event
from app.metrics import (
    ASSISTANT_TURN_SECONDS,
    ASSISTANT_TURNS_TOTAL,
    SESSIONS_ENDED_TOTAL,
    SESSIONS_STARTED_TOTAL,
)
from app.providers.base import CompletionClient

from .errors import CompletionError, InvalidStateError, SubscriptionError, ValidationError
from .feed import ChangeFeedSubscriber, SubscriptionHandle
from .history import SessionHistory, archive
from .models import Message, MessageRole, Session, SessionStatus, SessionSummary, utcnow
from .repository import SessionRepository

logger = get_logger("chat.orchestrator")


class OrchestratorState(str, Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    ENDED = "ended"
    ARCHIVED = "archived"


_STATE_FOR_STATUS = {
    SessionStatus.ACTIVE: OrchestratorState.ACTIVE,
    SessionStatus.ENDED: OrchestratorState.ENDED,
    SessionStatus.ARCHIVED: OrchestratorState.ARCHIVED,
}


class SessionOrchestrator:
    """Drives the lifecycle of one conversation.

    NO_SESSION -> ACTIVE -> ENDED -> ARCHIVED, with no way back to ACTIVE.

    Lifecycle operations (start, send, end, archive) are serialized by one
    lock and check state inside it: an operation queued behind `end_session`
    gets InvalidStateError instead of racing it.

    The in-memory history has a single writer. Change-feed deliveries are
    only queued by the feed callback; the orchestrator merges them itself,
    deduplicated by message id and ordered by (sent_at, message_id).

    Use as an async context manager (or call `aclose()`) so the feed
    subscription is released even when the session is never ended.
    """

    def __init__(
        self,
        repository: SessionRepository,
        completion: CompletionClient,
        feed: ChangeFeedSubscriber,
        settings: Settings,
        history: Optional[SessionHistory] = None,
    ):
        self.repository = repository
        self.completion = completion
        self.feed = feed
        self.settings = settings
        self.history = history or SessionHistory(repository, page_size=settings.history_page_size)
        self.session: Optional[Session] = None
        self.state = OrchestratorState.NO_SESSION
        self.degraded = False
        self._messages: List[Message] = []
        self._message_ids: Set[Any] = set()
        self._inbox: "asyncio.Queue[Message]" = asyncio.Queue()
        self._listeners: List["asyncio.Queue[Optional[Message]]"] = []
        self._handle: Optional[SubscriptionHandle] = None
        self._pump_task: Optional["asyncio.Task[None]"] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> "SessionOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # -----------------------------
    # Read-side helpers
    # -----------------------------

    @property
    def messages(self) -> List[Message]:
        self._drain_inbox()
        return list(self._messages)

    @property
    def session_id(self) -> Any:
        return self.session.session_id if self.session else None

    @property
    def subscription(self) -> Optional[SubscriptionHandle]:
        return self._handle

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def in_use(self) -> bool:
        """True while an operation holds the lifecycle lock or a listener is attached."""
        return self._lock.locked() or bool(self._listeners)

    def _require(self, state: OrchestratorState, operation: str) -> Session:
        if self._closed or self.state is not state or self.session is None:
            raise InvalidStateError(operation, self.state)
        return self.session

    def _merge(self, message: Message) -> bool:
        if message.message_id in self._message_ids:
            return False
        self._message_ids.add(message.message_id)
        bisect.insort(self._messages, message, key=lambda m: m.sort_key)
        for q in self._listeners:
            q.put_nowait(message)
        return True

    def _drain_inbox(self) -> None:
        while True:
            try:
                message = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._merge(message)

    async def _pump(self) -> None:
        while True:
            message = await self._inbox.get()
            self._merge(message)

    # -----------------------------
    # Lifecycle
    # -----------------------------

    async def start_session(self, owner: Any, title: Optional[str] = None) -> Session:
        async with self._lock:
            if self._closed or self.state is not OrchestratorState.NO_SESSION:
                raise InvalidStateError("start_session", self.state)
            try:
                session, priming = await self.repository.create_session(owner, self.settings.priming_prompt, title)
            except Exception:
                SESSIONS_STARTED_TOTAL.labels(status="error").inc()
                raise
            self.session = session
            self.state = OrchestratorState.ACTIVE
            self._merge(priming)
            log_event(logger, "session_started", sessionId=session.session_id, userId=owner)
            try:
                await self._subscribe(session)
            finally:
                SESSIONS_STARTED_TOTAL.labels(status="degraded" if self.degraded else "ok").inc()
            return session

    async def attach(self, session_id: Any) -> Session:
        """Take ownership of a stored session, e.g. after a process restart.

        Active sessions get a fresh feed subscription; ended or archived ones
        are attached read-only.
        """
        async with self._lock:
            if self._closed or self.state is not OrchestratorState.NO_SESSION:
                raise InvalidStateError("attach", self.state)
            session = await self.repository.get_session(session_id, with_messages=True)
            self.session = session
            self.state = _STATE_FOR_STATUS[session.status]
            for m in session.messages or []:
                self._merge(m)
            if self.state is OrchestratorState.ACTIVE:
                await self._subscribe(session)
            return session

    async def _subscribe(self, session: Session) -> None:
        try:
            self._handle = await self.feed.subscribe(session.session_id, self._inbox.put_nowait)
        except SubscriptionError as e:
            # The session stays usable; callers fall back to refresh()
            self.degraded = True
            e.session = session
            log_event(logger, "session_feed_degraded", logging.WARNING, sessionId=session.session_id, error=str(e))
            raise
        self._pump_task = asyncio.create_task(self._pump())

    async def send_user_message(self, text: str) -> Message:
        """Persist a user message and run exactly one assistant turn.

        Returns the persisted assistant reply. On CompletionError the user
        message stays persisted, no reply is stored and the session stays
        ACTIVE.
        """
        async with self._lock:
            session = self._require(OrchestratorState.ACTIVE, "send_user_message")
            content = (text or "").strip()
            if not content:
                raise ValidationError("message text is empty")
            user_message = await self.repository.append_message(session.session_id, MessageRole.USER, content)
            self._merge(user_message)
            return await self._assistant_turn(session)

    async def _assistant_turn(self, session: Session) -> Message:
        self._drain_inbox()
        context = [{"role": m.role.value, "content": m.content} for m in self._messages]
        t0 = time.monotonic()
        try:
            text = await self.completion.complete(
                context,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except CompletionError as e:
            ASSISTANT_TURNS_TOTAL.labels(outcome=e.kind).inc()
            log_event(
                logger,
                "assistant_turn_failed",
                logging.WARNING,
                sessionId=session.session_id,
                error=e.kind,
                message=str(e)[:256],
            )
            raise
        elapsed = time.monotonic() - t0
        # Minimum perceived latency, measured from the start of the completion call
        floor = self.settings.min_response_delay
        if elapsed < floor:
            await asyncio.sleep(floor - elapsed)
        metadata: Dict[str, str] = {
            "provider": self.completion.provider_name,
            "model": str(self.completion.model or ""),
            "latency_ms": str(int(elapsed * 1000)),
        }
        reply = await self.repository.append_message(session.session_id, MessageRole.ASSISTANT, text, metadata=metadata)
        self._merge(reply)
        ASSISTANT_TURNS_TOTAL.labels(outcome="ok").inc()
        ASSISTANT_TURN_SECONDS.observe(time.monotonic() - t0)
        log_event(
            logger,
            "assistant_turn",
            sessionId=session.session_id,
            messageId=reply.message_id,
            completionMs=int(elapsed * 1000),
            messagesCount=len(self._messages),
        )
        return reply

    async def end_session(self) -> SessionSummary:
        """Summarize, mark ENDED and release the feed subscription.

        Summarization is best-effort: a CompletionError leaves the summary
        empty and is reported on the returned SessionSummary.
        """
        async with self._lock:
            session = self._require(OrchestratorState.ACTIVE, "end_session")
            self._drain_inbox()
            request = [{"role": m.role.value, "content": m.content} for m in self._messages]
            request.append({"role": MessageRole.SYSTEM.value, "content": self.settings.summary_prompt})
            summary_text: Optional[str] = None
            error: Optional[CompletionError] = None
            try:
                summary_text = (
                    await self.completion.complete(
                        request,
                        temperature=self.settings.temperature,
                        max_tokens=self.settings.max_tokens,
                    )
                ).strip() or None
            except CompletionError as e:
                error = e
                log_event(
                    logger,
                    "summary_failed",
                    logging.WARNING,
                    sessionId=session.session_id,
                    error=e.kind,
                    message=str(e)[:256],
                )
            ended = replace(
                session,
                status=SessionStatus.ENDED,
                ended_at=utcnow(),
                summary=summary_text,
                messages=None,
            )
            ended = await self.repository.update_session(ended)
            self.session = ended
            self.state = OrchestratorState.ENDED
            await self._release()
            SESSIONS_ENDED_TOTAL.labels(summary="ok" if error is None else "failed").inc()
            log_event(
                logger,
                "session_ended",
                sessionId=ended.session_id,
                messagesCount=len(self._messages),
                summaryLen=len(summary_text or ""),
                summaryError=error.kind if error else None,
            )
            return SessionSummary(session=ended, text=summary_text, error=error)

    async def archive_session(self, session: Optional[Session] = None) -> Session:
        """Archive this orchestrator's ended session, or another stored one.

        Idempotent for archived sessions; anything not ended is rejected.
        """
        async with self._lock:
            if session is None or (self.session is not None and str(session.session_id) == str(self.session.session_id)):
                if self.state is OrchestratorState.ARCHIVED and self.session is not None:
                    return self.session
                own = self._require(OrchestratorState.ENDED, "archive_session")
                archived = await archive(self.repository, own)
                self.session = archived
                self.state = OrchestratorState.ARCHIVED
                return archived
            current = await self.repository.get_session(session.session_id)
            return await archive(self.repository, current)

    def list_sessions(self, owner: Any, status: Optional[SessionStatus] = None) -> AsyncIterator[Session]:
        return self.history.list_sessions(owner, status=status)

    async def refresh(self) -> List[Message]:
        """Re-read the history from the store; the poll path when the feed is unavailable."""
        if self.session is None:
            raise InvalidStateError("refresh", self.state)
        stored = await self.repository.list_messages(self.session.session_id, session=self.session)
        for m in stored:
            self._merge(m)
        return list(self._messages)

    def add_listener(self) -> "asyncio.Queue[Optional[Message]]":
        """Channel that receives every newly merged message, then None once the feed is released."""
        q: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        if self._closed or self.state is not OrchestratorState.ACTIVE:
            q.put_nowait(None)
        else:
            self._listeners.append(q)
        return q

    def remove_listener(self, q: "asyncio.Queue[Optional[Message]]") -> None:
        if q in self._listeners:
            self._listeners.remove(q)

    async def updates(self) -> AsyncIterator[Message]:
        """Yield messages as they are merged, until the session ends or closes."""
        q = self.add_listener()
        try:
            while True:
                item = await q.get()
                if item is None:
                    return
                yield item
        finally:
            self.remove_listener(q)

    # -----------------------------
    # Teardown
    # -----------------------------

    async def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.feed.unsubscribe(handle)
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_inbox()
        listeners, self._listeners = self._listeners, []
        for q in listeners:
            q.put_nowait(None)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release()
