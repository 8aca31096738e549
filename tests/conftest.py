"""
Conftest
"""

import asyncio
import os
import tempfile
import uuid
from dataclasses import replace
from typing import Any, AsyncGenerator, Callable, List, Optional, Tuple

# Settings are read at import time
_TEST_DIR = tempfile.mkdtemp(prefix="kindred-tests-")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-that-is-at-least-32-chars")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/app.db")
os.environ.setdefault("DB_AUTO_CREATE", "true")
os.environ.setdefault("INSIGHT_PROVIDER", "MOCK")
os.environ.setdefault("MEDIA_ROOT", os.path.join(_TEST_DIR, "media"))

import pytest
from httpx import ASGITransport, AsyncClient

from kindred.core.deps import get_hub
from kindred.core.security import create_access_token
from kindred.core.time import utcnow
from kindred.games.families import FAMILIES, answer_log
from kindred.infra.db import build_engine, build_session_factory, create_tables, get_db
from kindred.infra.storage import LocalMediaStorage
from kindred.main import create_app
from kindred.models.game import GameAnswer, GamePlayer, GameSession, SessionStatus
from kindred.models.user import Match, MatchStatus, User
from kindred.realtime.hub import RealtimeHub


class FakeConnection:
    """Records every frame instead of writing to a socket"""

    def __init__(self, user_id: str):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.closed = False
        self.sent: List[Tuple[str, Any]] = []

    def send(self, event: str, data: Any) -> bool:
        if self.closed:
            return False
        self.sent.append((event, data))
        return True

    def events(self, name: Optional[str] = None) -> List[Any]:
        return [data for event, data in self.sent if name is None or event == name]

    def names(self) -> List[str]:
        return [event for event, _ in self.sent]

    def last(self, name: str) -> Any:
        matching = self.events(name)
        return matching[-1] if matching else None

    def clear(self) -> None:
        self.sent.clear()


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll until predicate() holds; fails the test on timeout"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def fast_families(round_seconds: float = 0.3, rounds: int = 3, async_rounds: int = 2):
    families = {}
    for key, family in FAMILIES.items():
        if family.is_async:
            families[key] = replace(family, total_rounds=async_rounds)
        else:
            families[key] = replace(family, total_rounds=rounds, round_seconds=round_seconds)
    return families


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def make_hub(session_factory, tmp_path):
    hubs: List[RealtimeHub] = []

    def factory(**overrides: Any) -> RealtimeHub:
        options = dict(
            storage=LocalMediaStorage(root=str(tmp_path / "media"), base_url="/media"),
            families=fast_families(),
            events_per_minute=1000,
            presence_grace_seconds=0.1,
            typing_timeout_seconds=0.1,
            countdown_seconds=0.05,
            reveal_seconds=0.05,
            reconnect_grace_seconds=0.2,
            timer_retry_seconds=0.05,
            insight_mode="INLINE",
            use_mock_insights=True,
        )
        options.update(overrides)
        hub = RealtimeHub(session_factory, **options)
        hubs.append(hub)
        return hub

    yield factory

    for hub in hubs:
        await hub.shutdown()


@pytest.fixture
def hub(make_hub) -> RealtimeHub:
    return make_hub()


async def seed_users(session_factory, *names: str) -> List[str]:
    ids = []
    async with session_factory() as db:
        for name in names:
            user = User(id=str(uuid.uuid4()), display_name=name)
            db.add(user)
            ids.append(user.id)
        await db.commit()
    return ids


async def seed_match(session_factory, a: str, b: str, status: str = MatchStatus.MUTUAL) -> str:
    async with session_factory() as db:
        match = Match.between(a, b, status=status)
        db.add(match)
        await db.commit()
        return match.id


async def seed_finished_session(
    session_factory,
    family_key: str,
    match_id: str,
    player1: str,
    player2: str,
    values: List[Tuple[Any, Any]],
    status: str = SessionStatus.COMPLETED,
    insights: Optional[dict] = None,
) -> str:
    """Persist a finished game whose results are computed from the given answer pairs"""
    family = FAMILIES[family_key]
    now = utcnow()
    session = GameSession(
        id=str(uuid.uuid4()),
        family=family_key,
        match_id=match_id,
        player1_id=player1,
        player2_id=player2,
        status=status,
        question_order=family.bank.ids()[: len(values)],
        current_index=len(values) - 1,
        revealed_index=len(values) - 1,
        invited_at=now,
        completed_at=now,
        expires_at=now,
        insights=insights,
        insights_generated=insights is not None,
        players=[
            GamePlayer(user_id=player1, slot=1, counters={}),
            GamePlayer(user_id=player2, slot=2, counters={}),
        ],
        answers=[],
        voice_notes=[],
    )
    for index, pair_values in enumerate(values):
        for user_id, value in zip((player1, player2), pair_values):
            session.answers.append(
                GameAnswer(
                    user_id=user_id,
                    question_index=index,
                    question_id=session.question_order[index],
                    value=value,
                    timed_out=value is None,
                )
            )
    session.results = family.compute_results(answer_log(session, family.bank))
    async with session_factory() as db:
        db.add(session)
        await db.commit()
    return session.id


@pytest.fixture
async def pair(session_factory) -> Tuple[str, str, str]:
    """Two mutually matched users: (alice, bob, match_id)"""
    alice, bob = await seed_users(session_factory, "Alice", "Bob")
    match_id = await seed_match(session_factory, alice, bob)
    return alice, bob, match_id


@pytest.fixture
async def conversation_id(hub, pair) -> str:
    alice, _, match_id = pair
    conversation, _ = await hub.conversations.start_conversation(alice, match_id)
    return conversation.id


async def connect(hub: RealtimeHub, user_id: str) -> FakeConnection:
    conn = FakeConnection(user_id)
    await hub.connect(conn)
    return conn


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture
async def client(hub, session_factory) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_hub] = lambda: hub

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
