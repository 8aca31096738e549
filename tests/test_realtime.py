"""
Realtime substrate tests: rooms, timers, locks, rate limiting and presence
"""

import asyncio

import pytest

from conftest import FakeConnection, connect, wait_for
from kindred.models.user import User
from kindred.realtime.locks import KeyedLocks
from kindred.realtime.presence import PresenceRegistry
from kindred.realtime.ratelimit import SlidingWindowLimiter
from kindred.realtime.rooms import RoomRouter, conversation_room, user_room
from kindred.realtime.timers import TimerRegistry


def test_room_emission_preserves_order_per_connection():
    rooms = RoomRouter()
    a, b = FakeConnection("a"), FakeConnection("b")
    rooms.join(a, "conversation:1")
    rooms.join(b, "conversation:1")

    for i in range(5):
        rooms.emit_to_room("conversation:1", "message:new", {"n": i})

    assert [d["n"] for d in a.events("message:new")] == [0, 1, 2, 3, 4]
    assert [d["n"] for d in b.events("message:new")] == [0, 1, 2, 3, 4]


def test_emit_except_and_leave_all():
    rooms = RoomRouter()
    a, b = FakeConnection("a"), FakeConnection("b")
    rooms.join(a, "conversation:1")
    rooms.join(b, "conversation:1")
    rooms.join(a, user_room("a"))

    rooms.emit_to_room_except("conversation:1", a, "typing:started", {})
    assert a.events("typing:started") == []
    assert len(b.events("typing:started")) == 1

    assert rooms.leave_all(a) == ["conversation:1", "user:a"]
    assert rooms.members("conversation:1") == [b]
    assert rooms.emit_to_user("a", "x", {}) == 0


def test_closed_connection_is_not_counted():
    rooms = RoomRouter()
    a = FakeConnection("a")
    a.closed = True
    rooms.join(a, "r")
    assert rooms.emit_to_room("r", "x", {}) == 0


@pytest.mark.asyncio
async def test_timer_reschedule_cancels_previous():
    timers = TimerRegistry()
    fired = []

    async def record(tag):
        fired.append(tag)

    timers.schedule("session:1", "round", 0.05, lambda: record("first"))
    timers.schedule("session:1", "round", 0.05, lambda: record("second"))
    assert timers.kinds("session:1") == ["round"]

    await wait_for(lambda: fired)
    await asyncio.sleep(0.05)
    assert fired == ["second"]
    assert not timers.active("session:1", "round")


@pytest.mark.asyncio
async def test_timer_cancel_owner_and_shutdown():
    timers = TimerRegistry()
    fired = []

    async def record():
        fired.append(True)

    timers.schedule("session:1", "round", 0.05, record)
    timers.schedule("session:1", "grace:u", 0.05, record)
    timers.schedule("session:2", "round", 10, record)
    assert timers.cancel_owner("session:1") == 2

    await asyncio.sleep(0.1)
    assert fired == []
    assert len(timers) == 1
    await timers.shutdown()
    assert len(timers) == 0


@pytest.mark.asyncio
async def test_failing_timer_callback_is_contained():
    timers = TimerRegistry()

    async def boom():
        raise RuntimeError("boom")

    timers.schedule("o", "k", 0, boom)
    await asyncio.sleep(0.02)
    assert not timers.active("o", "k")


@pytest.mark.asyncio
async def test_keyed_locks_serialize_and_release():
    locks = KeyedLocks()
    order = []

    async def worker(tag):
        async with locks.hold("conversation:1"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


def test_sliding_window_limiter():
    now = [0.0]
    limiter = SlidingWindowLimiter(3, window_seconds=60, clock=lambda: now[0])

    assert [limiter.allow("c") for _ in range(4)] == [True, True, True, False]
    now[0] = 59.9
    assert not limiter.allow("c")
    now[0] = 60.0
    assert limiter.allow("c")
    assert limiter.allow("other")


@pytest.mark.asyncio
async def test_presence_grace_suppresses_flapping():
    timers = TimerRegistry()
    presence = PresenceRegistry(timers, grace_seconds=0.1)
    transitions = []

    async def listener(user_id, is_online, last_seen):
        transitions.append((user_id, is_online))

    presence.subscribe(listener)
    first = FakeConnection("u")
    assert await presence.attach(first, "u") is True
    await presence.detach(first)

    second = FakeConnection("u")
    assert await presence.attach(second, "u") is False
    await asyncio.sleep(0.15)
    assert transitions == [("u", True)]

    await presence.detach(second)
    await wait_for(lambda: len(transitions) == 2)
    assert transitions[-1] == ("u", False)
    assert not presence.is_online("u")
    await timers.shutdown()


@pytest.mark.asyncio
async def test_second_connection_keeps_user_online():
    timers = TimerRegistry()
    presence = PresenceRegistry(timers, grace_seconds=0.05)
    phone, laptop = FakeConnection("u"), FakeConnection("u")
    await presence.attach(phone, "u")
    await presence.attach(laptop, "u")

    await presence.detach(phone)
    await asyncio.sleep(0.1)
    assert presence.is_online("u")
    assert presence.connections_of("u") == [laptop.id]
    await timers.shutdown()


@pytest.mark.asyncio
async def test_hub_broadcasts_status_to_conversation_rooms(hub, pair, conversation_id, session_factory):
    alice, bob, _ = pair
    bob_conn = await connect(hub, bob)
    assert hub.rooms.is_member(bob_conn, conversation_room(conversation_id))

    alice_conn = await connect(hub, alice)
    online = bob_conn.last("user:status")
    assert online["userId"] == alice
    assert online["isOnline"] is True

    await hub.disconnect(alice_conn)
    await wait_for(lambda: bob_conn.last("user:status")["isOnline"] is False)

    async with session_factory() as db:
        user = await db.get(User, alice)
        assert user.is_online is False
        assert user.last_seen_at is not None
