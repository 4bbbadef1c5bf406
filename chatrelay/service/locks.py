from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import AsyncIterator, Dict, Optional

from chatrelay.logging import get_logger
from chatrelay.service.errors import ConflictError
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class KeyedLock:
    """Mutual exclusion keyed by an identifier such as a conversation id.

    In-process holders are serialized with one ``asyncio.Lock`` per key; the
    entry is dropped once nobody holds or waits for it. When a Redis cache is
    configured the holder also takes a Redis lock so that several worker
    processes serialize on the same key. The Redis expiry is renewed every
    ``renew_interval`` seconds while the lock is held, so ``ttl_seconds`` only
    bounds how long a crashed holder keeps the key.
    """

    def __init__(
        self,
        namespace: str,
        *,
        cache: Optional[RedisCache] = None,
        ttl_seconds: int = 60,
        renew_interval: Optional[float] = None,
        poll_interval: float = 0.05,
        wait_timeout: Optional[float] = None,
    ) -> None:
        self.namespace = namespace
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.renew_interval = renew_interval if renew_interval is not None else ttl_seconds / 3
        self.poll_interval = poll_interval
        self.wait_timeout = wait_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def busy(self, key: str) -> bool:
        """True while any task holds or waits for ``key`` in this process."""
        return self._users.get(key, 0) > 0

    @contextlib.asynccontextmanager
    async def hold(self, key: str, *, wait: bool = True) -> AsyncIterator[None]:
        if not wait and self.busy(key):
            raise ConflictError("conversation is busy with another message")
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                token = await self._acquire_remote(key, wait=wait)
                renewer = (
                    asyncio.create_task(self._keep_alive(key, token)) if token else None
                )
                try:
                    yield
                finally:
                    if renewer:
                        renewer.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await renewer
                    if token:
                        await self._release_remote(key, token)
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    async def _acquire_remote(self, key: str, *, wait: bool) -> Optional[str]:
        if not self.cache:
            return None
        name = f"{self.namespace}:{key}"
        token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout if self.wait_timeout else None
        while not await self.cache.acquire_lock(name, token, self.ttl_seconds):
            if not wait or (deadline is not None and loop.time() >= deadline):
                raise ConflictError("conversation is busy with another message")
            await asyncio.sleep(self.poll_interval)
        return token

    async def _keep_alive(self, key: str, token: str) -> None:
        name = f"{self.namespace}:{key}"
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                renewed = await self.cache.extend_lock(name, token, self.ttl_seconds)
            except Exception as exc:
                logger.warning("remote_lock_renew_failed", lock=name, error=str(exc))
                continue
            if not renewed:
                logger.warning("remote_lock_lost", lock=name)
                return

    async def _release_remote(self, key: str, token: str) -> None:
        name = f"{self.namespace}:{key}"
        try:
            await self.cache.release_lock(name, token)
        except Exception as exc:
            # The TTL reclaims the key if release fails
            logger.warning("remote_lock_release_failed", lock=name, error=str(exc))
