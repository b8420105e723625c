from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Set

from pydantic import ValidationError

from chatstore.schemas.conversation import (
    ConversationIndex,
    ConversationMeta,
    IndexCorruptionError,
    dump_model,
    now_ms,
)
from chatstore.utils.debounce import Debouncer
from chatstore.utils.file_storage import FileStorage, WriteFailure, write_atomic
from chatstore.utils.logging import get_logger
from chatstore.utils.observability import get_metrics

log = get_logger(__name__)

CONVERSATIONS_DIR = "conversations"
INDEX_PATH = f"{CONVERSATIONS_DIR}/index.json"
_DEBOUNCE_KEY = "conversation_index"


def _decode_index(payload: Any) -> ConversationIndex:
    if not isinstance(payload, dict):
        raise IndexCorruptionError("index payload is not an object")
    try:
        return ConversationIndex.model_validate(payload)
    except ValidationError as exc:
        raise IndexCorruptionError(str(exc)) from exc


def _sort_entries(entries: List[ConversationMeta]) -> None:
    entries.sort(key=lambda meta: meta.last_updated, reverse=True)


class IndexStore:
    """The single listing of conversation metadata.

    Mutations (``upsert``/``remove``/``reset``) are synchronous and only touch
    memory; ``save`` persists the whole index and ``schedule_save`` batches
    persistence behind a quiet period.
    """

    def __init__(self, storage: FileStorage, *, debounce_seconds: float = 0.0) -> None:
        self._storage = storage
        self._index: Optional[ConversationIndex] = None
        self._debouncer = Debouncer(debounce_seconds)
        self._save_lock = asyncio.Lock()
        self._dirty = False
        self.recovered_from_corruption = False

    @property
    def loaded(self) -> bool:
        return self._index is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def load(self) -> ConversationIndex:
        if self._index is not None:
            return self._index
        index: Optional[ConversationIndex] = None
        try:
            payload = await self._storage.read(INDEX_PATH)
            if payload is not None:
                index = _decode_index(payload)
        except ValueError as exc:
            # JSONDecodeError and IndexCorruptionError are both ValueErrors.
            self.recovered_from_corruption = True
            log.warning("index_corrupt", path=INDEX_PATH, error=str(exc))
        if index is None:
            index = ConversationIndex()
            log.info("index_initialized_empty", path=INDEX_PATH)
        _sort_entries(index.conversations)
        self._index = index
        return index

    async def reload(self) -> ConversationIndex:
        self._index = None
        return await self.load()

    def _require(self) -> ConversationIndex:
        if self._index is None:
            raise RuntimeError("IndexStore.load() must complete before the index is used")
        return self._index

    def entries(self) -> List[ConversationMeta]:
        return [meta.model_copy() for meta in self._require().conversations]

    def ids(self) -> Set[str]:
        return {meta.id for meta in self._require().conversations}

    def get(self, conversation_id: str) -> Optional[ConversationMeta]:
        for meta in self._require().conversations:
            if meta.id == conversation_id:
                return meta.model_copy()
        return None

    def upsert(self, meta: ConversationMeta) -> None:
        entries = self._require().conversations
        for position, existing in enumerate(entries):
            if existing.id == meta.id:
                entries[position] = meta
                break
        else:
            entries.append(meta)
        _sort_entries(entries)
        self._dirty = True

    def remove(self, conversation_id: str) -> bool:
        index = self._require()
        remaining = [meta for meta in index.conversations if meta.id != conversation_id]
        if len(remaining) == len(index.conversations):
            return False
        index.conversations = remaining
        self._dirty = True
        return True

    def reset(self) -> None:
        self._index = ConversationIndex()
        self._dirty = True

    async def save(self) -> None:
        async with self._save_lock:
            index = self._require()
            index.last_updated = now_ms()
            payload = dump_model(index)
            # Mutations made while the write is in flight mark the index dirty again.
            self._dirty = False
            try:
                await write_atomic(self._storage, INDEX_PATH, payload)
            except WriteFailure:
                self._dirty = True
                raise
        get_metrics().increment_counter("index_saved")
        log.debug("index_saved", conversation_count=len(index.conversations))

    async def schedule_save(self) -> None:
        self._dirty = True
        await self._debouncer.schedule(_DEBOUNCE_KEY, self.save)

    async def flush(self) -> None:
        if self._debouncer.pending(_DEBOUNCE_KEY):
            await self._debouncer.flush(_DEBOUNCE_KEY)
        elif self._dirty and self._index is not None:
            await self.save()

    async def close(self) -> None:
        await self.flush()
        self._debouncer.cancel_all()
