import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import UpstreamTimeout
from .locks import KeyedLock

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

_INFERENCE_KEY = "inference"


class InferenceQueue:
    """Process-wide FIFO gate allowing one inference call at a time."""

    def __init__(self) -> None:
        self._lock = KeyedLock()
        self.admitted = 0
        self.failed = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked(_INFERENCE_KEY)

    @property
    def pending(self) -> int:
        return self._lock.waiting(_INFERENCE_KEY)

    def stats(self) -> dict:
        return {"busy": self.busy, "pending": self.pending, "admitted": self.admitted, "failed": self.failed}

    @asynccontextmanager
    async def slot(self, label: str = "inference"):
        """Hold the single inference permit, e.g. across a streamed completion."""
        await self._lock.acquire(_INFERENCE_KEY)
        self.admitted += 1
        try:
            yield
        except Exception:
            self.failed += 1
            raise
        finally:
            self._lock.release(_INFERENCE_KEY)

    async def admit(
        self,
        task: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
        label: str = "inference",
    ) -> T:
        async with self.slot(label):
            if not timeout:
                return await task()
            try:
                return await asyncio.wait_for(task(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("Inference call %s timed out after %.1fs", label, timeout)
                raise UpstreamTimeout(f"{label} timed out after {timeout:g}s") from exc
