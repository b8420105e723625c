from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from chatstore.schemas.conversation import (
    AnyConversationRecord,
    ConversationMeta,
    ConversationRecord,
    MalformedRecordError,
    decode_record,
    dump_model,
    meta_from_raw,
    migrate_v1_to_v2,
    raw_record_from_file,
    record_to_file,
    record_to_meta,
)
from chatstore.services.index_store import CONVERSATIONS_DIR, INDEX_PATH, IndexStore
from chatstore.utils.config import StoreSettings
from chatstore.utils.file_storage import FileStorage, write_atomic
from chatstore.utils.logging import get_logger
from chatstore.utils.observability import get_metrics, time_operation

log = get_logger(__name__)

CONVERSATIONS_KEY = "conversationHistory"
CONVERSATION_LIST_KEYS = frozenset({CONVERSATIONS_KEY, "conversations"})
CONTENT_FILENAME = "conversation.json"

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _is_safe_id(conversation_id: str) -> bool:
    return bool(_SAFE_ID_PATTERN.match(conversation_id)) and ".." not in conversation_id


def _require_safe_id(conversation_id: str) -> str:
    if not isinstance(conversation_id, str) or not _is_safe_id(conversation_id):
        raise ValueError(f"Conversation id is not usable as a path segment: {conversation_id!r}")
    return conversation_id


def conversation_dir(conversation_id: str) -> str:
    return f"{CONVERSATIONS_DIR}/{_require_safe_id(conversation_id)}"


def conversation_path(conversation_id: str) -> str:
    return f"{conversation_dir(conversation_id)}/{CONTENT_FILENAME}"


def _copy_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_copy_value(item) for item in value]
    if hasattr(value, "model_copy"):
        return value.model_copy(deep=True)
    return value


class MemoryCache:
    """Owned cache behind the synchronous ``get``.

    It is filled once by ``ConversationFileStore.preload_cache`` and then kept
    current by every mutation the store performs. Reads before that point fall
    back to the caller's default.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self.populated = False

    def has(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)


class ConversationFileStore:
    """Per-conversation JSON files plus the listing index.

    Layout under ``base_dir``::

        conversations/index.json
        conversations/{id}/conversation.json
    """

    def __init__(
        self,
        base_dir: str,
        *,
        settings: StoreSettings | None = None,
        storage: FileStorage | None = None,
    ) -> None:
        self.settings = settings or StoreSettings()
        self._storage = storage or FileStorage(base_dir, pretty_print=self.settings.pretty_print)
        self.index = IndexStore(self._storage, debounce_seconds=self.settings.index_debounce_seconds)
        self.cache = MemoryCache()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._initialized = False

    @property
    def storage(self) -> FileStorage:
        return self._storage

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize work on one id; the lock is dropped once nobody holds or waits for it."""

        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[conversation_id] - 1
            if remaining:
                self._lock_users[conversation_id] = remaining
            else:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def initialize(self) -> None:
        await self._storage.ensure_directory(CONVERSATIONS_DIR)
        await self.index.load()
        await self.reconcile_index()
        self._initialized = True
        log.info("conversation_store_initialized", conversation_count=len(self.index.ids()))

    def get(self, key: str, default: Any = None) -> Any:
        cache_key = CONVERSATIONS_KEY if key in CONVERSATION_LIST_KEYS else key
        if not self.cache.has(cache_key):
            get_metrics().increment_counter("cache_miss")
            log.debug("cache_miss", key=key, populated=self.cache.populated)
            return default
        get_metrics().increment_counter("cache_hit")
        return _copy_value(self.cache.get(cache_key))

    def _cached_records(self) -> List[AnyConversationRecord]:
        return list(self.cache.get(CONVERSATIONS_KEY, []))

    def _cache_put(self, record: ConversationRecord) -> None:
        if not self.cache.has(CONVERSATIONS_KEY):
            return
        records = self._cached_records()
        for position, existing in enumerate(records):
            if existing.id == record.id:
                records[position] = record.model_copy(deep=True)
                break
        else:
            records.insert(0, record.model_copy(deep=True))
        self.cache.set(CONVERSATIONS_KEY, records)

    def _cache_drop(self, conversation_id: str) -> None:
        if not self.cache.has(CONVERSATIONS_KEY):
            return
        records = [record for record in self._cached_records() if record.id != conversation_id]
        self.cache.set(CONVERSATIONS_KEY, records)

    def cache_conversations(self, records: Iterable[AnyConversationRecord]) -> None:
        """Replace the cached conversation list with records already on disk."""

        self.cache.set(CONVERSATIONS_KEY, _copy_value(list(records)))
        self.cache.populated = True

    async def preload_cache(self) -> None:
        records = await self.get_all_conversations()
        self.cache_conversations(records)
        log.info("cache_preloaded", conversation_count=len(records))

    async def update(self, key: str, value: Any) -> None:
        if key not in CONVERSATION_LIST_KEYS:
            if value is None:
                self.cache.delete(key)
            else:
                self.cache.set(key, value)
            return
        if value is None:
            await self.clear_all()
            return

        records: List[ConversationRecord] = []
        seen: Set[str] = set()
        for item in value:
            record = item if isinstance(item, ConversationRecord) else migrate_v1_to_v2(item)
            _require_safe_id(record.id)
            if record.id in seen:
                log.warning("update_duplicate_id_skipped", conversation_id=record.id)
                continue
            seen.add(record.id)
            records.append(record)

        previous = {record.id: record for record in self._cached_records()}
        indexed = self.index.ids()
        saved = 0
        for record in records:
            if record.id in indexed and previous.get(record.id) == record:
                continue
            await self.save_conversation(record)
            saved += 1
        removed = 0
        for meta in self.index.entries():
            if meta.id not in seen:
                await self.delete_conversation(meta.id)
                removed += 1
        self.cache_conversations(records)
        log.info("conversation_list_reconciled", saved=saved, removed=removed, total=len(records))

    async def save_conversation(self, record: AnyConversationRecord | Dict[str, Any]) -> ConversationRecord:
        current = record if isinstance(record, ConversationRecord) else migrate_v1_to_v2(record)
        _require_safe_id(current.id)
        # The write runs to completion even if the caller stops waiting for it.
        await asyncio.shield(self._save_locked(current))
        await self.index.schedule_save()
        return current

    async def _save_locked(self, record: ConversationRecord) -> None:
        metrics = get_metrics()
        async with self._conversation_lock(record.id):
            with time_operation(metrics, "save_conversation"):
                try:
                    await write_atomic(
                        self._storage,
                        conversation_path(record.id),
                        dump_model(record_to_file(record)),
                        record_id=record.id,
                    )
                except Exception:
                    metrics.increment_counter("write_failure")
                    raise
            self.index.upsert(record_to_meta(record))
            self._cache_put(record)
        metrics.increment_counter("conversation_saved")
        log.debug("conversation_saved", conversation_id=record.id, message_count=len(record.messages))

    async def _read_payload(self, conversation_id: str) -> Any:
        try:
            return await self._storage.read(conversation_path(conversation_id))
        except ValueError as exc:
            raise MalformedRecordError(conversation_id, f"invalid JSON: {exc}") from exc

    async def load_conversation(self, conversation_id: str) -> Optional[AnyConversationRecord]:
        """Return the stored record (legacy or current) or None when absent."""

        with time_operation(get_metrics(), "load_conversation"):
            payload = await self._read_payload(conversation_id)
        if payload is None:
            if self.index.loaded and conversation_id in self.index.ids():
                log.info("conversation_soft_miss", conversation_id=conversation_id)
            return None
        record = decode_record(raw_record_from_file(payload))
        if record.id != conversation_id:
            raise MalformedRecordError(
                conversation_id, f"stored id {record.id!r} does not match its location"
            )
        return record

    async def delete_conversation(self, conversation_id: str) -> bool:
        deleted = await asyncio.shield(self._delete_locked(conversation_id))
        if self.index.dirty:
            await self.index.schedule_save()
        return deleted

    async def _delete_locked(self, conversation_id: str) -> bool:
        async with self._conversation_lock(conversation_id):
            deleted = await self._storage.delete_directory(conversation_dir(conversation_id))
            self.index.remove(conversation_id)
            self._cache_drop(conversation_id)
        if deleted:
            get_metrics().increment_counter("conversation_deleted")
            log.info("conversation_deleted", conversation_id=conversation_id)
        return deleted

    async def clear_all(self) -> None:
        conversation_ids = self.index.ids() | set(await self._content_ids())
        for conversation_id in sorted(conversation_ids):
            async with self._conversation_lock(conversation_id):
                await self._storage.delete_directory(conversation_dir(conversation_id))
        self.index.reset()
        await self.index.save()
        self.cache.clear()
        self.cache_conversations([])
        log.info("conversations_cleared", removed=len(conversation_ids))

    def list_conversation_ids(self) -> List[str]:
        return [meta.id for meta in self.index.entries()]

    def list_conversations(self) -> List[ConversationMeta]:
        return self.index.entries()

    async def get_all_conversations(self) -> List[AnyConversationRecord]:
        records: List[AnyConversationRecord] = []
        for conversation_id in self.list_conversation_ids():
            try:
                record = await self.load_conversation(conversation_id)
            except MalformedRecordError as exc:
                log.warning("conversation_unreadable", conversation_id=conversation_id, error=exc.reason)
                continue
            if record is not None:
                records.append(record)
        return records

    async def get_stats(self) -> Dict[str, int]:
        stat = await self._storage.stat(INDEX_PATH)
        return {
            "conversation_count": len(self.index.ids()),
            "index_size": stat.size if stat else 0,
        }

    async def _content_ids(self) -> List[str]:
        found: List[str] = []
        for name in await self._storage.list_directories(CONVERSATIONS_DIR):
            if not _is_safe_id(name):
                continue
            if await self._storage.exists(conversation_path(name)):
                found.append(name)
        return found

    async def reconcile_index(self) -> int:
        """Make the index ids equal the set of content files on disk.

        Returns the number of entries added or dropped.
        """

        on_disk = set(await self._content_ids())
        indexed = self.index.ids()
        changes = 0
        for dangling in sorted(indexed - on_disk):
            self.index.remove(dangling)
            changes += 1
            log.warning("index_entry_dangling", conversation_id=dangling)
        for orphan in sorted(on_disk - indexed):
            try:
                payload = await self._read_payload(orphan)
            except MalformedRecordError:
                payload = None
            self.index.upsert(meta_from_raw(orphan, raw_record_from_file(payload)))
            changes += 1
            log.warning("index_entry_missing", conversation_id=orphan)
        if changes:
            get_metrics().increment_counter("index_repaired", changes)
            await self.index.save()
            log.warning("index_repaired", changes=changes, conversation_count=len(on_disk))
        return changes

    async def rebuild_index(self) -> int:
        self.index.reset()
        changes = await self.reconcile_index()
        if not changes:
            await self.index.save()
        return changes

    async def flush(self) -> None:
        await self.index.flush()

    async def close(self) -> None:
        await self.index.close()


async def create_conversation_file_store(
    base_dir: str,
    *,
    settings: StoreSettings | None = None,
    storage: FileStorage | None = None,
) -> ConversationFileStore:
    """Build a store that is ready for synchronous ``get`` calls."""

    store = ConversationFileStore(base_dir, settings=settings, storage=storage)
    await store.initialize()
    await store.preload_cache()
    return store
