from __future__ import annotations

from dataclasses import replace
from typing import Any, AsyncIterator, List, Optional

from app.log import get_logger, log_event

from .errors import InvalidStateError
from .models import Session, SessionStatus
from .repository import SessionRepository

logger = get_logger("chat.history")

DEFAULT_PAGE_SIZE = 50


async def archive(repository: SessionRepository, session: Session) -> Session:
    """Relabel an ended session as archived.

    Archiving an archived session is a no-op; any other state is rejected.
    Message history is untouched.
    """
    if session.status is SessionStatus.ARCHIVED:
        return session
    if session.status is not SessionStatus.ENDED:
        raise InvalidStateError("archive_session", session.status)
    archived = await repository.update_session(replace(session, status=SessionStatus.ARCHIVED))
    log_event(logger, "session_archived", sessionId=session.session_id)
    return archived


class SessionHistory:
    """Read-only listing of stored sessions, plus archiving."""

    def __init__(self, repository: SessionRepository, page_size: int = DEFAULT_PAGE_SIZE):
        self.repository = repository
        self.page_size = max(1, int(page_size))

    async def fetch_page(self, owner: Any, page: int = 0, status: Optional[SessionStatus] = None) -> List[Session]:
        return await self.repository.list_sessions(
            owner,
            limit=self.page_size,
            offset=max(0, int(page)) * self.page_size,
            status=status,
        )

    async def list_sessions(
        self,
        owner: Any,
        status: Optional[SessionStatus] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Session]:
        """Newest-first sessions with their messages, read one page at a time.

        Each call starts a fresh iteration from the newest session.
        """
        yielded = 0
        page = 0
        while limit is None or yielded < limit:
            rows = await self.fetch_page(owner, page=page, status=status)
            for session in rows:
                if limit is not None and yielded >= limit:
                    return
                yield session
                yielded += 1
            if len(rows) < self.page_size:
                return
            page += 1

    async def get_session(self, session_id: Any) -> Session:
        return await self.repository.get_session(session_id, with_messages=True)

    async def archive_session(self, session_id: Any) -> Session:
        session = await self.repository.get_session(session_id)
        return await archive(self.repository, session)
