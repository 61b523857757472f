from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import time
import uuid

from interview_battle.errors import TransportError


logger = logging.getLogger(__name__)

MEMBER_ADDED = "member-added"
MEMBER_REMOVED = "member-removed"
SUBSCRIPTION_SUCCEEDED = "subscription-succeeded"


def battle_channel(code: str) -> str:
	return f"presence-battle-{code}"


@dataclass(frozen=True)
class Event:
	channel: str
	event: str
	payload: Dict[str, Any]

	def to_message(self) -> dict:
		return {"event": self.event, "payload": self.payload}


class Subscription:
	"""One consumer of a channel. Iterate it to receive events in publish order."""

	def __init__(self, broadcaster: "Broadcaster", channel: str, maxsize: int) -> None:
		self.id = uuid.uuid4().hex
		self.channel = channel
		self._broadcaster = broadcaster
		self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
		self._maxsize = maxsize
		self.closed = False

	def _offer(self, event: Event) -> bool:
		if self.closed:
			return False
		if self._queue.qsize() >= self._maxsize:
			return False
		self._queue.put_nowait(event)
		return True

	def _terminate(self) -> None:
		if self.closed:
			return
		self.closed = True
		# Wake a waiting consumer; the spare slot guarantees room for the sentinel.
		if self._queue.full():
			self._queue.get_nowait()
		self._queue.put_nowait(None)

	def close(self) -> None:
		self._broadcaster._unsubscribe(self)

	async def get(self) -> Optional[Event]:
		return await self._queue.get()

	def __aiter__(self) -> "Subscription":
		return self

	async def __anext__(self) -> Event:
		item = await self._queue.get()
		if item is None:
			raise StopAsyncIteration
		return item


class Broadcaster:
	"""In-process publish/subscribe, ordered per channel.

	Each subscriber gets a bounded queue; one that falls behind is dropped
	rather than blocking the publisher, and is expected to recover by polling.
	"""

	def __init__(self, queue_size: int = 256) -> None:
		self._channels: Dict[str, Dict[str, Subscription]] = {}
		self._queue_size = queue_size
		self._closed = False

	def subscribe(self, channel: str) -> Subscription:
		if self._closed:
			raise TransportError("Broadcaster is closed")
		sub = Subscription(self, channel, self._queue_size)
		self._channels.setdefault(channel, {})[sub.id] = sub
		return sub

	def _unsubscribe(self, sub: Subscription) -> None:
		subs = self._channels.get(sub.channel, {})
		subs.pop(sub.id, None)
		if not subs:
			self._channels.pop(sub.channel, None)
		sub._terminate()

	def subscriber_count(self, channel: str) -> int:
		return len(self._channels.get(channel, {}))

	async def publish(self, channel: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> int:
		"""Deliver to every current subscriber. Returns the number reached."""
		if self._closed:
			raise TransportError("Broadcaster is closed")
		message = Event(channel=channel, event=event, payload=payload)
		delivered = 0
		for sub in list(self._channels.get(channel, {}).values()):
			if sub.id == exclude:
				continue
			if sub._offer(message):
				delivered += 1
			else:
				logger.warning("[%s] subscriber %s fell behind; dropping it", channel, sub.id)
				self._unsubscribe(sub)
		return delivered

	async def close(self) -> None:
		self._closed = True
		for subs in list(self._channels.values()):
			for sub in list(subs.values()):
				self._unsubscribe(sub)


@dataclass
class Member:
	member_id: str
	info: Dict[str, Any]
	last_seen: float
	subscriptions: Dict[str, Subscription] = field(default_factory=dict)

	def to_dict(self) -> dict:
		return {"id": self.member_id, "info": self.info}


class PresenceBroadcaster(Broadcaster):
	"""Broadcaster whose channels also track who is connected.

	A member stays present while at least one of its subscriptions is open
	and it has sent a heartbeat within ``timeout`` seconds. Silent members
	are removed by :meth:`sweep`.
	"""

	def __init__(self, queue_size: int = 256, timeout: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
		super().__init__(queue_size)
		self._members: Dict[str, Dict[str, Member]] = {}
		self._timeout = timeout
		self._clock = clock

	def members(self, channel: str) -> List[dict]:
		return [m.to_dict() for m in self._members.get(channel, {}).values()]

	def is_present(self, channel: str, member_id: str) -> bool:
		return member_id in self._members.get(channel, {})

	async def join(self, channel: str, member_id: str, info: Optional[Dict[str, Any]] = None) -> Subscription:
		sub = self.subscribe(channel)
		roster = self._members.setdefault(channel, {})
		member = roster.get(member_id)
		is_new = member is None
		if is_new:
			member = Member(member_id=member_id, info=dict(info or {}), last_seen=self._clock())
			roster[member_id] = member
		member.last_seen = self._clock()
		member.subscriptions[sub.id] = sub
		sub._offer(Event(channel, SUBSCRIPTION_SUCCEEDED, {"members": self.members(channel), "me": member.to_dict()}))
		if is_new:
			await self.publish(channel, MEMBER_ADDED, member.to_dict(), exclude=sub.id)
		return sub

	async def leave(self, channel: str, member_id: str, subscription: Optional[Subscription] = None) -> bool:
		"""Close one subscription (or all of them). Returns True if the member left."""
		member = self._members.get(channel, {}).get(member_id)
		if member is None:
			if subscription is not None:
				subscription.close()
			return False
		targets = [subscription] if subscription is not None else list(member.subscriptions.values())
		for sub in targets:
			member.subscriptions.pop(sub.id, None)
			sub.close()
		if member.subscriptions:
			return False
		return await self._remove(channel, member)

	async def _remove(self, channel: str, member: Member) -> bool:
		roster = self._members.get(channel, {})
		if roster.pop(member.member_id, None) is None:
			return False
		for sub in list(member.subscriptions.values()):
			sub.close()
		member.subscriptions.clear()
		if not roster:
			self._members.pop(channel, None)
		if not self._closed:
			await self.publish(channel, MEMBER_REMOVED, member.to_dict())
		return True

	def heartbeat(self, channel: str, member_id: str) -> bool:
		member = self._members.get(channel, {}).get(member_id)
		if member is None:
			return False
		member.last_seen = self._clock()
		return True

	async def sweep(self, now: Optional[float] = None) -> List[Tuple[str, str]]:
		now = self._clock() if now is None else now
		stale = [
			(channel, m)
			for channel, roster in self._members.items()
			for m in roster.values()
			if now - m.last_seen > self._timeout
		]
		removed: List[Tuple[str, str]] = []
		for channel, member in stale:
			if await self._remove(channel, member):
				logger.info("[%s] %s timed out", channel, member.member_id)
				removed.append((channel, member.member_id))
		return removed

	async def close(self) -> None:
		await super().close()
		self._members.clear()
