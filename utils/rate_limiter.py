"""
Upstream concurrency limiter and per-client admission gate
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from utils.errors import AdmissionRejected

T = TypeVar("T")


class ConcurrencyLimiter:
    """Counting semaphore with a FIFO wait queue.

    A released slot is handed directly to the oldest waiter, so callers that
    arrive later never overtake queued ones.
    """

    def __init__(self, limit: int = 2):
        self.limit = max(1, limit)
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._active < self.limit and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was already handed over; pass it on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active = max(0, self._active - 1)

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        await self.acquire()
        try:
            return await task()
        finally:
            self.release()

    def get_status(self) -> Dict[str, int]:
        return {"limit": self.limit, "active": self.active, "waiting": self.waiting}


class ClientAdmissionGate:
    """Caps simultaneous in-flight turns per client identity"""

    def __init__(self, max_per_client: int = 1):
        self.max_per_client = max(1, max_per_client)
        self._active: Dict[str, int] = {}
        self._total_requests = 0
        self._rejected = 0

    def enter(self, identity: str) -> None:
        current = self._active.get(identity, 0)
        if current >= self.max_per_client:
            self._rejected += 1
            raise AdmissionRejected("请求过多：上一回合仍在生成中，请稍后再试。")
        self._active[identity] = current + 1
        self._total_requests += 1

    def leave(self, identity: str) -> None:
        remaining = self._active.get(identity, 0) - 1
        if remaining > 0:
            self._active[identity] = remaining
        else:
            self._active.pop(identity, None)

    @asynccontextmanager
    async def admit(self, identity: str):
        self.enter(identity)
        try:
            yield
        finally:
            self.leave(identity)

    def count(self, identity: str) -> int:
        return self._active.get(identity, 0)

    def active_clients(self) -> int:
        return len(self._active)

    def get_status(self) -> Dict[str, Any]:
        return {
            "max_per_client": self.max_per_client,
            "active_clients": self.active_clients(),
            "total_requests": self._total_requests,
            "rejected": self._rejected,
        }


def client_identity(forwarded_for: Optional[str], peer_host: Optional[str]) -> str:
    """First X-Forwarded-For token, else the peer address"""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return peer_host or "unknown"
