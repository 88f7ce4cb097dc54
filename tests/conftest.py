from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from loopedin.db import Base, Loop, LoopMember, Update, User


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sent_sms(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, str]]:
    """Capture outbound SMS instead of calling Twilio."""
    sent: list[tuple[str, str]] = []

    def fake_send_sms(to: str, body: str) -> None:
        sent.append((to, body))

    monkeypatch.setattr("loopedin.twilio_client.send_sms", fake_send_sms)
    return sent


@pytest.fixture
def client(
    session_factory: sessionmaker[Session], sent_sms: list[tuple[str, str]]
) -> Iterator[TestClient]:
    from loopedin.auth import get_db
    from loopedin.main import app, get_ingestor

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ingestor] = lambda: None
    # No context manager: lifespan (bucket setup, reminder task) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(
        phone: str | None = None,
        first_name: str = "Test",
        last_name: str = "User",
        privileged: bool = False,
        token: str | None = None,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            phone_number=phone or f"1555000{n:04d}",
            first_name=first_name,
            last_name=last_name,
            is_privileged=privileged,
            api_token=token or f"token-{n}",
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_loop(db: Session) -> Callable[..., Loop]:
    def _make(
        name: str,
        creator: User,
        members: list[User] | None = None,
        vibe: list[str] | None = None,
        reminder_schedule: list[dict[str, Any]] | None = None,
    ) -> Loop:
        loop = Loop(
            name=name,
            frequency="monthly",
            vibe=vibe if vibe is not None else ["warm", "funny"],
            reminder_schedule=reminder_schedule or [],
            creator_id=creator.id,
        )
        loop.members.append(LoopMember(user_id=creator.id, context="Loop Creator"))
        for member in members or []:
            loop.members.append(LoopMember(user_id=member.id))
        db.add(loop)
        db.commit()
        db.refresh(loop)
        return loop

    return _make


@pytest.fixture
def make_update(db: Session) -> Callable[..., Update]:
    def _make(loop: Loop, author: User, content: str, media_urls: list[str] | None = None) -> Update:
        update = Update(
            loop_id=loop.id, user_id=author.id, content=content, media_urls=media_urls or []
        )
        db.add(update)
        db.commit()
        db.refresh(update)
        return update

    return _make


def auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {user.api_token}"}


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    return auth


STATEMENT_DELAY = 0.1
HEARTBEAT = 0.005


@pytest.fixture
def slow_statements(engine: Engine) -> Iterator[Callable[[], float]]:
    """Call the returned function to make every following SQL statement slow."""

    def delay(*args: Any) -> None:
        time.sleep(STATEMENT_DELAY)

    def enable() -> float:
        event.listen(engine, "before_cursor_execute", delay)
        return STATEMENT_DELAY

    yield enable
    if event.contains(engine, "before_cursor_execute", delay):
        event.remove(engine, "before_cursor_execute", delay)


@pytest.fixture
def run_with_heartbeat() -> Callable[[Coroutine[Any, Any, Any]], tuple[Any, float]]:
    """
    Run a coroutine next to a short-period heartbeat task.

    Returns the coroutine's result and the longest time the heartbeat woke up
    late, i.e. how long the event loop was blocked.
    """

    def _run(coro: Coroutine[Any, Any, Any]) -> tuple[Any, float]:
        async def main() -> tuple[Any, float]:
            lateness = [0.0]

            async def heartbeat() -> None:
                last = time.perf_counter()
                while True:
                    await asyncio.sleep(HEARTBEAT)
                    now = time.perf_counter()
                    lateness.append(now - last - HEARTBEAT)
                    last = now

            task = asyncio.create_task(heartbeat())
            await asyncio.sleep(0)
            try:
                result = await coro
            finally:
                task.cancel()
            return result, max(lateness)

        return asyncio.run(main())

    return _run
