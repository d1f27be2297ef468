import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Deque, Dict, TypeVar

T = TypeVar("T")


class KeyedLock:
    """FIFO mutual exclusion scoped by key.

    Each key maps to a deque of futures: the head belongs to the current
    holder, the rest are waiters in arrival order. A key's entry exists only
    while someone holds or waits on it.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[asyncio.Future]] = {}

    def __len__(self) -> int:
        return len(self._queues)

    def locked(self, key: str) -> bool:
        return key in self._queues

    def waiting(self, key: str) -> int:
        queue = self._queues.get(key)
        if not queue:
            return 0
        return len(queue) - 1

    async def acquire(self, key: str) -> None:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        queue = self._queues.get(key)
        if queue is None:
            fut.set_result(None)
            self._queues[key] = deque([fut])
            return
        queue.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Handed the lock just as we were cancelled; pass it on.
                self.release(key)
            else:
                try:
                    queue.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self, key: str) -> None:
        queue = self._queues.get(key)
        if not queue:
            raise RuntimeError(f"release of unlocked key {key!r}")
        queue.popleft()
        while queue:
            nxt = queue[0]
            if not nxt.done():
                nxt.set_result(None)
                return
            queue.popleft()
        del self._queues[key]

    @asynccontextmanager
    async def hold(self, key: str):
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.hold(key):
            return await fn()


def conversation_key(user_id: Any, chat_id: Any) -> str:
    return f"{user_id}:{chat_id}"
