import pytest

from interview_battle.errors import TransportError
from interview_battle.services.broadcaster import (
	MEMBER_ADDED,
	MEMBER_REMOVED,
	SUBSCRIPTION_SUCCEEDED,
	Broadcaster,
	PresenceBroadcaster,
	battle_channel,
)


pytestmark = pytest.mark.anyio


def _drain(sub):
	items = []
	while not sub._queue.empty():
		item = sub._queue.get_nowait()
		if item is not None:
			items.append(item)
	return items


async def test_events_arrive_in_publish_order():
	bus = Broadcaster()
	sub = bus.subscribe("c")
	for i in range(3):
		await bus.publish("c", "tick", {"n": i})

	received = []
	async for event in sub:
		received.append(event.payload["n"])
		if len(received) == 3:
			break
	assert received == [0, 1, 2]


async def test_other_channels_are_isolated():
	bus = Broadcaster()
	sub = bus.subscribe("a")
	assert await bus.publish("b", "tick", {}) == 0
	assert _drain(sub) == []


async def test_lagging_subscriber_is_dropped():
	bus = Broadcaster(queue_size=2)
	slow = bus.subscribe("c")
	for i in range(3):
		await bus.publish("c", "tick", {"n": i})

	assert slow.closed
	assert bus.subscriber_count("c") == 0
	assert [e.payload["n"] async for e in slow] == [0, 1]


async def test_closed_broadcaster_refuses_publish():
	bus = Broadcaster()
	sub = bus.subscribe("c")
	await bus.close()
	assert sub.closed
	with pytest.raises(TransportError):
		await bus.publish("c", "tick", {})


async def test_presence_join_and_leave():
	bus = PresenceBroadcaster()
	channel = battle_channel("ABC")
	alice = await bus.join(channel, "alice", {"name": "Alice"})
	bob = await bus.join(channel, "bob", {"name": "Bob"})

	first = _drain(alice)
	assert first[0].event == SUBSCRIPTION_SUCCEEDED
	assert first[1].event == MEMBER_ADDED and first[1].payload["id"] == "bob"

	welcome = _drain(bob)
	assert [e.event for e in welcome] == [SUBSCRIPTION_SUCCEEDED]
	assert {m["id"] for m in welcome[0].payload["members"]} == {"alice", "bob"}

	assert await bus.leave(channel, "bob", bob)
	removed = _drain(alice)
	assert [(e.event, e.payload["id"]) for e in removed] == [(MEMBER_REMOVED, "bob")]
	assert not bus.is_present(channel, "bob")


async def test_member_with_two_tabs_stays_until_last_leaves():
	bus = PresenceBroadcaster()
	watcher = await bus.join("c", "watcher")
	tab1 = await bus.join("c", "alice")
	tab2 = await bus.join("c", "alice")
	_drain(watcher)

	assert not await bus.leave("c", "alice", tab1)
	assert bus.is_present("c", "alice")
	assert await bus.leave("c", "alice", tab2)
	assert [e.event for e in _drain(watcher)] == [MEMBER_REMOVED]


async def test_sweep_removes_silent_members():
	now = [100.0]
	bus = PresenceBroadcaster(timeout=30.0, clock=lambda: now[0])
	watcher = await bus.join("c", "watcher")
	quiet = await bus.join("c", "quiet")
	_drain(watcher)

	now[0] = 120.0
	bus.heartbeat("c", "watcher")
	now[0] = 140.0

	removed = await bus.sweep()

	assert removed == [("c", "quiet")]
	assert quiet.closed
	assert [e.payload["id"] for e in _drain(watcher)] == ["quiet"]
