from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger("skincare-sanctuary.action-state")


Listener = Callable[[str, list[str]], None]


class ActionStateBackend(Protocol):
    async def add(self, uid: str, key: str) -> bool: ...

    async def has(self, uid: str, key: str) -> bool: ...

    async def all(self, uid: str) -> set[str]: ...

    async def close(self) -> None: ...


def _normalize_uid(uid: str) -> str:
    if not isinstance(uid, str):
        raise TypeError("uid must be a string")
    normalized = uid.strip()
    if not normalized:
        raise ValueError("uid must be non-empty")
    if len(normalized) > 200:
        raise ValueError("uid too long")
    return normalized


def normalize_action_key(key: str) -> str:
    if not isinstance(key, str):
        raise TypeError("action key must be a string")
    normalized = key.strip()
    if not normalized:
        raise ValueError("action key must be non-empty")
    if len(normalized) > 500:
        raise ValueError("action key too long")
    return normalized


class InMemoryActionStateBackend(ActionStateBackend):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._items: dict[str, set[str]] = {}

    async def add(self, uid: str, key: str) -> bool:
        async with self._lock:
            keys = self._items.setdefault(uid, set())
            if key in keys:
                return False
            keys.add(key)
            return True

    async def has(self, uid: str, key: str) -> bool:
        async with self._lock:
            return key in self._items.get(uid, set())

    async def all(self, uid: str) -> set[str]:
        async with self._lock:
            return set(self._items.get(uid, set()))

    async def close(self) -> None:
        return None


class RedisActionStateBackend(ActionStateBackend):
    def __init__(
        self,
        *,
        redis_url: str,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "completed_actions",
    ) -> None:
        self._key_prefix = key_prefix.strip(":") or "completed_actions"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, uid: str) -> str:
        return f"{self._key_prefix}:{uid}"

    async def add(self, uid: str, key: str) -> bool:
        added = await self._redis.sadd(self._key(uid), key)
        return bool(added)

    async def has(self, uid: str, key: str) -> bool:
        return bool(await self._redis.sismember(self._key(uid), key))

    async def all(self, uid: str) -> set[str]:
        return set(await self._redis.smembers(self._key(uid)))

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            logger.warning("redis_action_state_close_failed err=%s", exc)


class CompletedActionStore:
    """Per-user set of completed chat actions (e.g. a product already added).

    Observers registered with `subscribe` are told about every new key so
    independently rendered action cards can update together.
    """

    def __init__(self, backend: ActionStateBackend, *, backend_kind: str = "memory") -> None:
        self._backend = backend
        self._backend_kind = backend_kind
        self._listeners: list[Listener] = []

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def add(self, uid: str, key: str) -> bool:
        uid = _normalize_uid(uid)
        key = normalize_action_key(key)
        added = await self._backend.add(uid, key)
        if added:
            keys = sorted(await self._backend.all(uid))
            self._notify(uid, keys)
        return added

    async def has(self, uid: str, key: str) -> bool:
        return await self._backend.has(_normalize_uid(uid), normalize_action_key(key))

    async def all(self, uid: str) -> list[str]:
        return sorted(await self._backend.all(_normalize_uid(uid)))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, uid: str, keys: list[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(uid, list(keys))
            except Exception:
                logger.exception("completed_action_listener_failed uid=%s", uid)

    async def close(self) -> None:
        await self._backend.close()


async def build_action_state_store(
    *,
    redis_url: Optional[str] = None,
    connect_timeout_s: float = 1.0,
    socket_timeout_s: float = 1.0,
    key_prefix: Optional[str] = None,
) -> CompletedActionStore:
    url = (redis_url or os.getenv("REDIS_URL") or "").strip() or None
    prefix = key_prefix or (os.getenv("ACTION_STATE_KEY_PREFIX") or "").strip() or "completed_actions"

    if not url:
        logger.info("action_state_backend=memory reason=missing_REDIS_URL")
        return CompletedActionStore(InMemoryActionStateBackend(), backend_kind="memory")

    backend: Optional[RedisActionStateBackend] = None
    try:
        backend = RedisActionStateBackend(
            redis_url=url,
            connect_timeout_s=connect_timeout_s,
            socket_timeout_s=socket_timeout_s,
            key_prefix=prefix,
        )
        await backend.ping()
    except (RedisError, OSError, ValueError) as exc:
        logger.warning("action_state_backend=memory reason=redis_unavailable err=%s", exc)
        if backend is not None:
            await backend.close()
        return CompletedActionStore(InMemoryActionStateBackend(), backend_kind="memory")

    logger.info("action_state_backend=redis")
    return CompletedActionStore(backend, backend_kind="redis")
