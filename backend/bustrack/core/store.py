"""Shared document store with per-document change subscriptions.

Documents are plain dicts keyed by strings such as ``vehicle:{id}``. Writers
merge partial documents; readers subscribe to a key (or a key prefix) and
receive full snapshots after every change.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

import orjson
import redis.asyncio as aioredis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 10


def vehicle_key(vehicle_id: str) -> str:
    return f"vehicle:{vehicle_id}"


def stop_key(stop_id: str) -> str:
    return f"stop:{stop_id}"


def tracker_key(vehicle_id: str) -> str:
    return f"tracker:{vehicle_id}"


def merge_partial(doc: dict, partial: dict) -> dict:
    """Merge partial fields into doc. Dotted keys ('status.index') set nested fields."""
    merged = copy.deepcopy(doc)
    for key, value in partial.items():
        if "." not in key:
            merged[key] = value
            continue
        target = merged
        *parents, leaf = key.split(".")
        for p in parents:
            nxt = target.get(p)
            if not isinstance(nxt, dict):
                nxt = {}
                target[p] = nxt
            target = nxt
        target[leaf] = value
    return merged


class Store(ABC):
    """Key-value document store capability the engine depends on."""

    @abstractmethod
    async def get(self, key: str) -> dict | None: ...

    @abstractmethod
    async def update(self, key: str, mutator: Callable[[dict], dict]) -> dict:
        """Atomically replace the document with mutator(current) and notify subscribers."""

    @abstractmethod
    async def scan(self, prefix: str) -> list[tuple[str, dict]]: ...

    @abstractmethod
    def subscribe(self, key: str) -> AsyncIterator[dict]: ...

    @abstractmethod
    def subscribe_prefix(self, prefix: str) -> AsyncIterator[tuple[str, dict]]: ...

    async def put(self, key: str, partial: dict) -> dict:
        return await self.update(key, lambda doc: merge_partial(doc, partial))

    async def close(self) -> None:
        return None


class MemoryStore(Store):
    """In-process store. Mutations never await, so each update is atomic on the loop."""

    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._prefix_subscribers: dict[str, set[asyncio.Queue]] = {}

    async def get(self, key: str) -> dict | None:
        doc = self._docs.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def update(self, key: str, mutator: Callable[[dict], dict]) -> dict:
        current = copy.deepcopy(self._docs.get(key, {}))
        new_doc = mutator(current)
        self._docs[key] = new_doc
        self._fan_out(key, new_doc)
        return copy.deepcopy(new_doc)

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        return [
            (k, copy.deepcopy(v))
            for k, v in sorted(self._docs.items())
            if k.startswith(prefix)
        ]

    def _fan_out(self, key: str, doc: dict) -> None:
        for q in self._subscribers.get(key, set()):
            _offer_latest(q, copy.deepcopy(doc))
        for prefix, queues in self._prefix_subscribers.items():
            if key.startswith(prefix):
                for q in queues:
                    _offer_latest(q, (key, copy.deepcopy(doc)))

    async def subscribe(self, key: str) -> AsyncIterator[dict]:
        q: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(key, set()).add(q)
        try:
            if key in self._docs:
                yield copy.deepcopy(self._docs[key])
            while True:
                yield await q.get()
        finally:
            self._subscribers.get(key, set()).discard(q)

    async def subscribe_prefix(self, prefix: str) -> AsyncIterator[tuple[str, dict]]:
        q: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._prefix_subscribers.setdefault(prefix, set()).add(q)
        try:
            for item in await self.scan(prefix):
                yield item
            while True:
                yield await q.get()
        finally:
            self._prefix_subscribers.get(prefix, set()).discard(q)


def _offer_latest(q: asyncio.Queue, item) -> None:
    """Enqueue, dropping the oldest entry when a slow subscriber falls behind."""
    if q.full():
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
    q.put_nowait(item)


class RedisStore(Store):
    """Redis-backed store: orjson blobs plus one pub/sub channel per document."""

    DOC_PREFIX = "bustrack:doc:"
    CHANNEL_PREFIX = "bustrack:changes:"

    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: aioredis.Redis | None = None

    async def connect(self) -> None:
        self._redis = aioredis.from_url(self._url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisStore is not connected")
        return self._redis

    async def get(self, key: str) -> dict | None:
        data = await self._client().get(self.DOC_PREFIX + key)
        return orjson.loads(data) if data else None

    async def update(self, key: str, mutator: Callable[[dict], dict]) -> dict:
        client = self._client()
        doc_key = self.DOC_PREFIX + key
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(doc_key)
                    raw = await pipe.get(doc_key)
                    new_doc = mutator(orjson.loads(raw) if raw else {})
                    payload = orjson.dumps(new_doc)
                    pipe.multi()
                    pipe.set(doc_key, payload)
                    pipe.publish(self.CHANNEL_PREFIX + key, payload)
                    await pipe.execute()
                    return new_doc
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying", key)
                    continue

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        client = self._client()
        keys = []
        async for raw_key in client.scan_iter(match=f"{self.DOC_PREFIX}{prefix}*"):
            keys.append(raw_key.decode() if isinstance(raw_key, bytes) else raw_key)
        keys.sort()
        result = []
        for k in keys:
            data = await client.get(k)
            if data:
                result.append((k[len(self.DOC_PREFIX):], orjson.loads(data)))
        return result

    async def subscribe(self, key: str) -> AsyncIterator[dict]:
        pubsub = self._client().pubsub()
        await pubsub.subscribe(self.CHANNEL_PREFIX + key)
        try:
            current = await self.get(key)
            if current is not None:
                yield current
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                yield orjson.loads(message["data"])
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    async def subscribe_prefix(self, prefix: str) -> AsyncIterator[tuple[str, dict]]:
        pubsub = self._client().pubsub()
        await pubsub.psubscribe(f"{self.CHANNEL_PREFIX}{prefix}*")
        try:
            for item in await self.scan(prefix):
                yield item
            async for message in pubsub.listen():
                if message["type"] != "pmessage":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                yield channel[len(self.CHANNEL_PREFIX):], orjson.loads(message["data"])
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()
