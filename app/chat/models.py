from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

SESSIONS_TABLE = "chatsessions"
MESSAGES_TABLE = "chatmessages"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    # Fixed precision keeps lexical order equal to time order in the store
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Message:
    message_id: Any
    session_id: Any
    role: MessageRole
    content: str
    sent_at: datetime
    metadata: Optional[Dict[str, str]] = None

    @property
    def sort_key(self) -> tuple:
        # Store ids may be ints or uuids; compare them as strings only on sent_at ties
        mid = self.message_id
        return (self.sent_at, 0 if isinstance(mid, int) else 1, mid if isinstance(mid, int) else str(mid))

    def to_record(self) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "sent_at": format_ts(self.sent_at),
            "metadata": dict(self.metadata) if self.metadata else None,
        }
        if self.message_id is not None:
            rec["message_id"] = self.message_id
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Message":
        meta = rec.get("metadata")
        return cls(
            message_id=rec.get("message_id"),
            session_id=rec.get("session_id"),
            role=MessageRole(str(rec.get("role") or "").lower()),
            content=str(rec.get("content") or ""),
            sent_at=parse_ts(rec.get("sent_at")) or utcnow(),
            metadata={str(k): str(v) for k, v in meta.items()} if isinstance(meta, dict) else None,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "sessionId": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "sentAt": format_ts(self.sent_at),
            "metadata": self.metadata,
        }


@dataclass
class Session:
    """One conversation. `ended_at` is set iff status is ended or archived."""

    session_id: Any
    user_id: Any
    status: SessionStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    summary: Optional[str] = None
    title: Optional[str] = None
    messages: Optional[List[Message]] = field(default=None, compare=False)

    def to_record(self) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "user_id": self.user_id,
            "status": self.status.value,
            "started_at": format_ts(self.started_at),
            "ended_at": format_ts(self.ended_at),
            "summary": self.summary,
            "title": self.title,
        }
        if self.session_id is not None:
            rec["session_id"] = self.session_id
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Session":
        return cls(
            session_id=rec.get("session_id"),
            user_id=rec.get("user_id"),
            status=SessionStatus(str(rec.get("status") or SessionStatus.ACTIVE.value).lower()),
            started_at=parse_ts(rec.get("started_at")) or utcnow(),
            ended_at=parse_ts(rec.get("ended_at")),
            summary=rec.get("summary"),
            title=rec.get("title"),
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "status": self.status.value,
            "startedAt": format_ts(self.started_at),
            "endedAt": format_ts(self.ended_at),
            "summary": self.summary,
            "title": self.title,
        }
        if self.messages is not None:
            out["messages"] = [m.to_json() for m in self.messages]
        return out


@dataclass
class SessionSummary:
    """Outcome of ending a session.

    Summarization is best-effort: when it fails, `text` is None and `error`
    holds the completion failure while the session is still ended.
    """

    session: Session
    text: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None
