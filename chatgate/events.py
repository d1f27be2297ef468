import asyncio
from typing import Any, Dict, List


class ChatEventBus:
    """In-memory fan-out of chat info updates (title, topic, polished answer) for SSE listeners."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def publish(self, chat_key: str, update_type: str, user_id: str, chat_id: str, content: Dict[str, Any]) -> dict:
        payload = {"type": update_type, "user_id": user_id, "chat_id": chat_id, "content": content}
        async with self.lock:
            queues = list(self.subscribers.get(chat_key, []))
        for q in queues:
            await q.put(payload)
        return payload

    async def subscribe(self, chat_key: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(chat_key, []).append(queue)
        return queue

    async def unsubscribe(self, chat_key: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(chat_key, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(chat_key, None)

    def listener_count(self, chat_key: str) -> int:
        return len(self.subscribers.get(chat_key, []))
