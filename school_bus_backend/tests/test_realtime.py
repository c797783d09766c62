import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeWebSocket
from src.api.realtime import BusRoomBroker, Subscriber, publish_location
from src.api.schemas.location import LocationEvent


def _subscriber(**kwargs) -> Subscriber:
    sub = Subscriber(FakeWebSocket(blocked=kwargs.pop("blocked", False)), **kwargs)
    sub.start()
    return sub


@pytest.mark.asyncio
async def test_member_receives_room_events_in_publish_order_only():
    broker = BusRoomBroker()
    sub = _subscriber()
    await broker.join(sub, 7)

    for n in range(5):
        await broker.publish(7, {"event": "location-update", "data": {"n": n}})
    await broker.publish(8, {"event": "location-update", "data": {"n": 99}})
    await sub.flush()

    assert sub.websocket.events("location-update") == [{"n": n} for n in range(5)]
    await broker.close()


@pytest.mark.asyncio
async def test_concurrent_publishes_keep_same_order_for_every_member():
    broker = BusRoomBroker()
    a, b = _subscriber(), _subscriber()
    await broker.join(a, 7)
    await broker.join(b, 7)

    await asyncio.gather(*(broker.publish(7, {"event": "e", "data": n}) for n in range(20)))
    await a.flush()
    await b.flush()

    assert a.websocket.events("e") == list(range(20))
    assert b.websocket.events("e") == list(range(20))
    await broker.close()


@pytest.mark.asyncio
async def test_join_is_idempotent_and_single_leave_unsubscribes():
    broker = BusRoomBroker()
    sub = _subscriber()

    await broker.join(sub, 7)
    await broker.join(sub, 7)
    assert broker.members(7) == {sub}

    await broker.leave(sub, 7)
    assert sub not in broker.members(7)
    assert await broker.publish(7, {"event": "e", "data": 1}) == 0
    await sub.flush()
    assert sub.websocket.sent == []
    await broker.close()


@pytest.mark.asyncio
async def test_leave_without_join_is_noop():
    broker = BusRoomBroker()
    sub = _subscriber()
    await broker.join(sub, 8)

    await broker.leave(sub, 7)

    assert broker.members(8) == {sub}
    assert broker.room_ids() == [8]
    await broker.close()


@pytest.mark.asyncio
async def test_disconnect_removes_from_every_room():
    broker = BusRoomBroker()
    sub, other = _subscriber(), _subscriber()
    for bus_id in (3, 5, 7):
        await broker.join(sub, bus_id)
    await broker.join(other, 5)

    await broker.disconnect(sub)

    assert sub.rooms == set()
    assert broker.room_ids() == [5]
    for bus_id in (3, 5, 7):
        await broker.publish(bus_id, {"event": "e", "data": bus_id})
    await sub.flush()
    await other.flush()
    assert sub.websocket.sent == []
    assert other.websocket.events("e") == [5]
    await broker.close()


@pytest.mark.asyncio
async def test_slow_subscriber_is_evicted_without_stalling_others():
    broker = BusRoomBroker()
    slow = _subscriber(blocked=True, queue_size=2)
    fast = _subscriber()
    await broker.join(slow, 7)
    await broker.join(fast, 7)

    for n in range(6):
        await broker.publish(7, {"event": "e", "data": n})
    await fast.flush()

    assert fast.websocket.events("e") == list(range(6))
    assert slow not in broker.members(7)
    assert slow.closed
    assert slow.websocket.close_code == 1008
    await broker.close()


@pytest.mark.asyncio
async def test_close_clears_rooms_and_closes_subscribers():
    broker = BusRoomBroker()
    sub = _subscriber()
    await broker.join(sub, 3)

    await broker.close()

    assert broker.room_ids() == []
    assert sub.rooms == set()
    assert sub.websocket.close_code == 1001


@pytest.mark.asyncio
async def test_publish_location_serializes_fixed_record():
    broker = BusRoomBroker()
    sub = _subscriber()
    await broker.join(sub, 3)

    delivered = await publish_location(
        broker, LocationEvent(bus_id=3, latitude=-0.30, longitude=36.08, speed=40)
    )
    await sub.flush()

    assert delivered == 1
    [data] = sub.websocket.events("location-update")
    assert data == {
        "busId": 3,
        "latitude": -0.30,
        "longitude": 36.08,
        "speed": 40.0,
        "timestamp": None,
        "source": "server",
    }
    await broker.close()


@pytest.mark.asyncio
async def test_publish_location_contains_broker_failures():
    broker = AsyncMock()
    broker.publish.side_effect = RuntimeError("room exploded")

    assert await publish_location(broker, LocationEvent(bus_id=3, latitude=0, longitude=0)) == 0


class _ResetSocket(FakeWebSocket):
    async def send_text(self, text: str) -> None:
        raise ConnectionResetError("peer went away")


@pytest.mark.asyncio
async def test_flush_returns_when_writer_dies_with_frames_queued():
    sub = Subscriber(_ResetSocket())
    for n in range(3):
        assert sub.offer({"event": "location-update", "data": {"n": n}})
    sub.start()

    await asyncio.wait_for(sub.flush(), timeout=1)

    assert sub.closed
    assert sub.websocket.sent == []


@pytest.mark.asyncio
async def test_stop_releases_pending_flush_on_stuck_socket():
    sub = _subscriber(blocked=True)
    sub.offer({"event": "location-update", "data": {"n": 1}})
    sub.offer({"event": "location-update", "data": {"n": 2}})
    waiter = asyncio.create_task(sub.flush())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    sub.stop()

    await asyncio.wait_for(waiter, timeout=1)
