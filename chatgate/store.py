import inspect
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import aiosqlite
from pydantic import ValidationError

from .errors import StorageFailure
from .locks import KeyedLock, conversation_key
from .schemas import ConversationRecord

logger = logging.getLogger("uvicorn.error")

Mutator = Callable[[ConversationRecord], Union[Optional[bool], Awaitable[Optional[bool]]]]

_SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS conversations(
    user_id TEXT NOT NULL,
    chat_id TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 0,
    last_message_ts INTEGER NOT NULL DEFAULT 0,
    last_updated_ts INTEGER NOT NULL DEFAULT 0,
    record_json TEXT NOT NULL,
    PRIMARY KEY (user_id, chat_id)
);
CREATE INDEX IF NOT EXISTS idx_conversations_recent
    ON conversations(user_id, last_message_ts DESC);
"""


class ConversationStore:
    """Durable per-conversation records, one JSON row per (user, chat).

    Every save is a single upsert committed in its own transaction, so a
    reader sees either the previous record or the new one. ``update`` runs a
    load-mutate-save cycle serialized per record so background writers and
    turn finalization never overwrite each other's fields.
    """

    def __init__(self, path: str, record_locks: Optional[KeyedLock] = None):
        self.path = path
        self.record_locks = record_locks or KeyedLock()

    async def init(self) -> None:
        try:
            async with aiosqlite.connect(self.path) as db:
                await db.executescript(_SCHEMA)
                await db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageFailure(f"Could not initialise store at {self.path}: {exc}") from exc

    async def load(self, user_id: str, chat_id: str) -> Optional[ConversationRecord]:
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT record_json FROM conversations WHERE user_id=? AND chat_id=?",
                    (user_id, chat_id),
                )
                row = await cursor.fetchone()
                await cursor.close()
        except (sqlite3.Error, OSError) as exc:
            raise StorageFailure(f"Could not read conversation {chat_id}: {exc}") from exc
        if not row:
            return None
        try:
            return ConversationRecord.model_validate_json(row["record_json"])
        except ValidationError as exc:
            raise StorageFailure(f"Stored conversation {chat_id} is corrupt") from exc

    async def get_or_create(self, user_id: str, chat_id: str) -> Tuple[ConversationRecord, bool]:
        async with self.record_locks.hold(conversation_key(user_id, chat_id)):
            record = await self.load(user_id, chat_id)
            if record is not None:
                return record, False
            record = ConversationRecord(user_id=user_id, chat_id=chat_id)
            await self.save(record)
            return record, True

    async def save(self, record: ConversationRecord) -> ConversationRecord:
        record.revision += 1
        payload = record.model_dump_json(exclude_none=True)
        try:
            async with aiosqlite.connect(self.path) as db:
                await db.execute(
                    """
                    INSERT INTO conversations(user_id, chat_id, revision, last_message_ts, last_updated_ts, record_json)
                    VALUES (?,?,?,?,?,?)
                    ON CONFLICT(user_id, chat_id) DO UPDATE SET
                        revision=excluded.revision,
                        last_message_ts=excluded.last_message_ts,
                        last_updated_ts=excluded.last_updated_ts,
                        record_json=excluded.record_json
                    """,
                    (
                        record.user_id,
                        record.chat_id,
                        record.revision,
                        record.last_message_ts,
                        record.last_updated_ts,
                        payload,
                    ),
                )
                await db.commit()
        except (sqlite3.Error, OSError) as exc:
            record.revision -= 1
            raise StorageFailure(f"Could not persist conversation {record.chat_id}: {exc}") from exc
        return record

    async def update(self, user_id: str, chat_id: str, mutate: Mutator) -> Optional[ConversationRecord]:
        """Reload the latest record, apply ``mutate`` and save it.

        ``mutate`` may be sync or async; returning ``False`` skips the save.
        Returns the saved record, or None if the conversation does not exist
        or nothing was saved.
        """

        async def apply() -> Optional[ConversationRecord]:
            record = await self.load(user_id, chat_id)
            if record is None:
                return None
            result = mutate(record)
            if inspect.isawaitable(result):
                result = await result
            if result is False:
                return None
            return await self.save(record)

        return await self.record_locks.run(conversation_key(user_id, chat_id), apply)

    async def delete(self, user_id: str, chat_id: str) -> bool:
        async with self.record_locks.hold(conversation_key(user_id, chat_id)):
            try:
                async with aiosqlite.connect(self.path) as db:
                    cursor = await db.execute(
                        "DELETE FROM conversations WHERE user_id=? AND chat_id=?",
                        (user_id, chat_id),
                    )
                    deleted = cursor.rowcount
                    await cursor.close()
                    await db.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StorageFailure(f"Could not delete conversation {chat_id}: {exc}") from exc
        if deleted:
            logger.info("Deleted conversation %s for %s", chat_id, user_id)
        return bool(deleted)

    async def list_for_owner(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT record_json FROM conversations WHERE user_id=? "
                    "ORDER BY last_message_ts DESC, last_updated_ts DESC",
                    (user_id,),
                )
                rows = await cursor.fetchall()
                await cursor.close()
        except (sqlite3.Error, OSError) as exc:
            raise StorageFailure(f"Could not list conversations for {user_id}: {exc}") from exc
        summaries = []
        for row in rows:
            try:
                record = ConversationRecord.model_validate_json(row["record_json"])
            except ValidationError:
                logger.warning("Skipping corrupt conversation row for %s", user_id)
                continue
            summaries.append(record.summary_view())
        return summaries
