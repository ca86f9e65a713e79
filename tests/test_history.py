import pytest

from app.chat.errors import InvalidStateError, SessionNotFound
from app.chat.history import SessionHistory
from app.chat.models import SessionStatus, utcnow
from app.chat.repository import SessionRepository
from app.store.memory import MemoryRecordStore


async def _seed(repo, owner, n):
    ids = []
    for _ in range(n):
        session, _ = await repo.create_session(owner)
        ids.append(session.session_id)
    return ids


async def _collect(gen):
    return [s async for s in gen]


@pytest.mark.asyncio
async def test_lists_newest_first_across_pages():
    repo = SessionRepository(MemoryRecordStore(), priming_text="p")
    ids = await _seed(repo, "u", 7)
    await _seed(repo, "someone-else", 2)
    history = SessionHistory(repo, page_size=3)

    sessions = await _collect(history.list_sessions("u"))

    assert [s.session_id for s in sessions] == list(reversed(ids))
    assert all(s.messages and s.messages[0].content == "p" for s in sessions)


@pytest.mark.asyncio
async def test_exact_multiple_of_page_size_terminates():
    repo = SessionRepository(MemoryRecordStore(), priming_text="p")
    await _seed(repo, "u", 4)
    history = SessionHistory(repo, page_size=2)

    assert len(await _collect(history.list_sessions("u"))) == 4
    assert await history.fetch_page("u", page=2) == []


@pytest.mark.asyncio
async def test_iteration_is_restartable_and_limited():
    repo = SessionRepository(MemoryRecordStore(), priming_text="p")
    ids = await _seed(repo, "u", 5)
    history = SessionHistory(repo, page_size=2)

    first = await _collect(history.list_sessions("u", limit=3))
    second = await _collect(history.list_sessions("u", limit=3))

    assert [s.session_id for s in first] == [s.session_id for s in second] == list(reversed(ids))[:3]


@pytest.mark.asyncio
async def test_unknown_owner_has_no_sessions():
    history = SessionHistory(SessionRepository(MemoryRecordStore()))
    assert await _collect(history.list_sessions("nobody")) == []


@pytest.mark.asyncio
async def test_status_filter_and_archive():
    repo = SessionRepository(MemoryRecordStore(), priming_text="p")
    active_id, ended_id = await _seed(repo, "u", 2)
    ended = await repo.get_session(ended_id)
    ended.status = SessionStatus.ENDED
    ended.ended_at = utcnow()
    await repo.update_session(ended)
    history = SessionHistory(repo)

    with pytest.raises(InvalidStateError):
        await history.archive_session(active_id)

    archived = await history.archive_session(ended_id)
    assert archived.status is SessionStatus.ARCHIVED
    assert (await history.archive_session(ended_id)).status is SessionStatus.ARCHIVED

    only_archived = await _collect(history.list_sessions("u", status=SessionStatus.ARCHIVED))
    assert [s.session_id for s in only_archived] == [ended_id]

    full = await history.get_session(ended_id)
    assert [m.content for m in full.messages] == ["p"]


@pytest.mark.asyncio
async def test_get_unknown_session():
    history = SessionHistory(SessionRepository(MemoryRecordStore()))
    with pytest.raises(SessionNotFound):
        await history.get_session(123)


@pytest.mark.asyncio
async def test_limit_on_page_boundary_reads_no_extra_page(monkeypatch: pytest.MonkeyPatch):
    repo = SessionRepository(MemoryRecordStore(), priming_text="p")
    await _seed(repo, "u", 6)
    history = SessionHistory(repo, page_size=2)
    pages = []
    fetch_page = history.fetch_page

    async def counting_fetch_page(owner, page=0, status=None):
        pages.append(page)
        return await fetch_page(owner, page=page, status=status)

    monkeypatch.setattr(history, "fetch_page", counting_fetch_page)

    sessions = await _collect(history.list_sessions("u", limit=4))

    assert len(sessions) == 4
    assert pages == [0, 1]
