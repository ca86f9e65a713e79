from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from app.log import get_logger, log_event
from app.store.base import RecordStore, RecordStoreError

from .errors import PersistenceError, SessionNotFound
from .models import (
    MESSAGES_TABLE,
    SESSIONS_TABLE,
    Message,
    MessageRole,
    Session,
    SessionStatus,
    utcnow,
)

logger = get_logger("chat.repository")

# Sessions younger than this may still have their priming write in flight elsewhere
REPAIR_GRACE_SECONDS = 5.0


class SessionRepository:
    """Reads and writes sessions and messages; no lifecycle rules live here.

    The store has no cross-row transactions, so a session row whose priming
    System message never made it is repaired on the next read. Sessions
    whose priming write is in flight here, or that started less than
    `repair_grace` seconds ago, are left alone; the repair re-reads the
    System row right before writing one.
    """

    def __init__(self, store: RecordStore, priming_text: str = "", repair_grace: float = REPAIR_GRACE_SECONDS):
        self.store = store
        self.priming_text = priming_text
        self.repair_grace = max(0.0, float(repair_grace))
        self._creating: Set[str] = set()

    async def create_session(
        self,
        owner: Any,
        priming_text: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[Session, Message]:
        started = utcnow()
        draft = Session(session_id=None, user_id=owner, status=SessionStatus.ACTIVE, started_at=started, title=title)
        try:
            row = await self.store.insert(SESSIONS_TABLE, draft.to_record())
        except RecordStoreError as e:
            raise PersistenceError(f"could not create session: {e}") from e
        session = Session.from_record(row)
        key = str(session.session_id)
        self._creating.add(key)
        try:
            priming = await self._insert_priming(session, priming_text)
        finally:
            self._creating.discard(key)
        session.messages = [priming]
        return session, priming

    async def _insert_priming(self, session: Session, priming_text: Optional[str] = None) -> Message:
        text = priming_text if priming_text is not None else self.priming_text
        draft = Message(
            message_id=None,
            session_id=session.session_id,
            role=MessageRole.SYSTEM,
            content=text,
            sent_at=session.started_at,
        )
        try:
            row = await self.store.insert(MESSAGES_TABLE, draft.to_record())
        except RecordStoreError as e:
            log_event(
                logger,
                "priming_insert_failed",
                logging.WARNING,
                sessionId=session.session_id,
                error=str(e)[:256],
            )
            raise PersistenceError(f"could not insert priming message for session {session.session_id}: {e}") from e
        return Message.from_record(row)

    async def append_message(
        self,
        session_id: Any,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Message:
        draft = Message(
            message_id=None,
            session_id=session_id,
            role=role,
            content=content,
            sent_at=utcnow(),
            metadata=metadata,
        )
        try:
            row = await self.store.insert(MESSAGES_TABLE, draft.to_record())
        except RecordStoreError as e:
            raise PersistenceError(f"could not save {role.value} message: {e}") from e
        return Message.from_record(row)

    async def list_messages(self, session_id: Any, session: Optional[Session] = None) -> List[Message]:
        try:
            rows = await self.store.select(MESSAGES_TABLE, filters={"session_id": session_id}, order_by="sent_at")
        except RecordStoreError as e:
            raise PersistenceError(f"could not read messages of session {session_id}: {e}") from e
        messages = sorted((Message.from_record(r) for r in rows), key=lambda m: m.sort_key)
        if not messages or messages[0].role is not MessageRole.SYSTEM:
            if session is None:
                session = await self.get_session(session_id)
            messages = await self._repair(session, messages)
        return messages

    async def _repair(self, session: Session, messages: List[Message]) -> List[Message]:
        """Insert the missing priming message of a dangling session."""
        if any(m.role is MessageRole.SYSTEM for m in messages):
            return messages
        key = str(session.session_id)
        if key in self._creating:
            return messages
        if (utcnow() - session.started_at).total_seconds() < self.repair_grace:
            return messages
        self._creating.add(key)
        try:
            try:
                rows = await self.store.select(
                    MESSAGES_TABLE,
                    filters={"session_id": session.session_id, "role": MessageRole.SYSTEM.value},
                    limit=1,
                )
            except RecordStoreError as e:
                raise PersistenceError(f"could not read priming message of session {session.session_id}: {e}") from e
            if rows:
                # Written since our read began
                existing = Message.from_record(rows[0])
                by_id = {m.message_id: m for m in messages}
                by_id[existing.message_id] = existing
                return sorted(by_id.values(), key=lambda m: m.sort_key)
            log_event(logger, "session_repair_priming", logging.WARNING, sessionId=session.session_id)
            priming = await self._insert_priming(session)
        finally:
            self._creating.discard(key)
        return [priming] + messages

    async def get_session(self, session_id: Any, with_messages: bool = False) -> Session:
        try:
            rows = await self.store.select(SESSIONS_TABLE, filters={"session_id": session_id}, limit=1)
        except RecordStoreError as e:
            raise PersistenceError(f"could not read session {session_id}: {e}") from e
        if not rows:
            raise SessionNotFound(session_id)
        session = Session.from_record(rows[0])
        if with_messages:
            session.messages = await self.list_messages(session.session_id, session=session)
        return session

    async def update_session(self, session: Session) -> Session:
        try:
            row = await self.store.upsert(SESSIONS_TABLE, session.to_record(), on_conflict="session_id")
        except RecordStoreError as e:
            raise PersistenceError(f"could not update session {session.session_id}: {e}") from e
        updated = Session.from_record(row)
        updated.messages = session.messages
        return updated

    async def list_sessions(
        self,
        owner: Any,
        limit: int,
        offset: int = 0,
        status: Optional[SessionStatus] = None,
        with_messages: bool = True,
    ) -> List[Session]:
        filters: Dict[str, Any] = {"user_id": owner}
        if status is not None:
            filters["status"] = status.value
        try:
            rows = await self.store.select(
                SESSIONS_TABLE,
                filters=filters,
                order_by="started_at",
                descending=True,
                limit=limit,
                offset=offset,
            )
        except RecordStoreError as e:
            raise PersistenceError(f"could not list sessions for {owner}: {e}") from e
        sessions = [Session.from_record(r) for r in rows]
        if with_messages:
            for s in sessions:
                s.messages = await self.list_messages(s.session_id, session=s)
        return sessions
