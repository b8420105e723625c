from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatstore.schemas.conversation import (
    AnyConversationRecord,
    ConversationMetadata,
    ConversationRecord,
    MalformedRecordError,
    Message,
    PaginatedMessages,
    migrate_v1_to_v2,
    now_ms,
)
from chatstore.services.conversation_file_store import CONVERSATIONS_KEY, ConversationFileStore
from chatstore.utils.config import StoreSettings
from chatstore.utils.file_storage import WriteFailure
from chatstore.utils.logging import get_logger
from chatstore.utils.observability import get_metrics

log = get_logger(__name__)

STORAGE_KEY = CONVERSATIONS_KEY
DEFAULT_PAGE_SIZE = 50
MAX_TITLE_LENGTH = 50
DEFAULT_TITLE = "New Conversation"


@dataclass
class FailedConversation:
    id: str
    error: str


@dataclass
class LoadAllResult:
    successful: List[ConversationRecord] = field(default_factory=list)
    failed: List[FailedConversation] = field(default_factory=list)


def _coerce_messages(messages: Iterable[Message | Dict[str, Any]]) -> List[Message]:
    return [item if isinstance(item, Message) else Message.model_validate(item) for item in messages]


class ConversationManager:
    """Entry point for callers that send, load and delete conversations.

    Legacy records are migrated here and written back before they are
    returned, so storage converges on the current schema.
    """

    def __init__(self, store: ConversationFileStore, *, settings: StoreSettings | None = None) -> None:
        self.store = store
        self.settings = settings or store.settings

    def get_conversations(self) -> List[AnyConversationRecord]:
        return self.store.get(STORAGE_KEY, [])

    def get_conversation(self, conversation_id: str) -> Optional[AnyConversationRecord]:
        for record in self.get_conversations():
            if record.id == conversation_id:
                return record
        return None

    async def _write_back(self, record: AnyConversationRecord) -> ConversationRecord:
        if isinstance(record, ConversationRecord):
            return record
        migrated = migrate_v1_to_v2(record)
        await self.store.save_conversation(migrated)
        get_metrics().increment_counter("migration::v1_to_v2")
        log.info(
            "conversation_migrated",
            conversation_id=migrated.id,
            message_count=len(migrated.messages),
        )
        return migrated

    async def load_all_conversations(self) -> LoadAllResult:
        result = LoadAllResult()
        for conversation_id in self.store.list_conversation_ids():
            try:
                record = await self.store.load_conversation(conversation_id)
                if record is None:
                    continue
                result.successful.append(await self._write_back(record))
            except MalformedRecordError as exc:
                result.failed.append(FailedConversation(id=conversation_id, error=str(exc)))
                log.error("migration_failed", conversation_id=conversation_id, error=exc.reason)
            except (WriteFailure, OSError) as exc:
                result.failed.append(FailedConversation(id=conversation_id, error=str(exc)))
                log.error("conversation_load_failed", conversation_id=conversation_id, error=str(exc))
        self.store.cache_conversations(result.successful)
        log.info(
            "conversations_loaded",
            successful=len(result.successful),
            failed=len(result.failed),
        )
        return result

    async def load_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        record = await self.store.load_conversation(conversation_id)
        if record is None:
            return None
        return await self._write_back(record)

    async def _existing(self, conversation_id: str) -> Optional[ConversationRecord]:
        cached = self.get_conversation(conversation_id)
        if cached is not None:
            return migrate_v1_to_v2(cached)
        try:
            return await self.load_conversation(conversation_id)
        except MalformedRecordError as exc:
            log.warning("conversation_replacing_malformed", conversation_id=conversation_id, error=exc.reason)
            return None

    async def _persist(self, record: ConversationRecord) -> None:
        async for attempt in AsyncRetrying(
            wait=wait_exponential(
                multiplier=self.settings.save_backoff_seconds,
                max=self.settings.save_backoff_max_seconds,
            ),
            stop=stop_after_attempt(self.settings.save_max_attempts),
            retry=retry_if_exception_type(WriteFailure),
            reraise=True,
        ):
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                get_metrics().increment_counter("save_retry::attempt")
                log.warning(
                    "conversation_save_retry",
                    conversation_id=record.id,
                    attempt=attempt_number,
                    max_attempts=self.settings.save_max_attempts,
                )
            with attempt:
                await self.store.save_conversation(record)

    async def save_conversation(
        self,
        conversation_id: str,
        messages: Iterable[Message | Dict[str, Any]],
        *,
        title: str | None = None,
    ) -> ConversationRecord:
        message_list = _coerce_messages(messages)
        existing = await self._existing(conversation_id)
        now = now_ms()
        record = ConversationRecord(
            id=conversation_id,
            title=title or self.generate_title(message_list),
            timestamp=existing.timestamp if existing else now,
            last_updated=now,
            messages=message_list,
            metadata=existing.metadata.model_copy(deep=True) if existing else ConversationMetadata(),
            session_id=existing.session_id if existing else None,
        )
        await self._persist(record)
        return record

    def restore_conversation(self, conversation_id: str) -> Optional[AnyConversationRecord]:
        record = self.get_conversation(conversation_id)
        return record.model_copy(deep=True) if record is not None else None

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await self.store.delete_conversation(conversation_id)

    async def clear_all_conversations(self) -> None:
        await self.store.clear_all()

    async def update_title(self, conversation_id: str, title: str | None = None) -> Optional[ConversationRecord]:
        existing = await self._existing(conversation_id)
        if existing is None:
            return None
        updated = existing.model_copy(
            update={
                "title": title or self.generate_title(existing.messages),
                "last_updated": now_ms(),
            }
        )
        await self._persist(updated)
        return updated

    @staticmethod
    def generate_title(messages: Iterable[Message]) -> str:
        first_user = next((message for message in messages if message.role == "user"), None)
        if first_user is None:
            return DEFAULT_TITLE
        first_line = first_user.text.split("\n")[0].strip()
        if not first_line:
            return DEFAULT_TITLE
        if len(first_line) <= MAX_TITLE_LENGTH:
            return first_line
        return f"{first_line[:MAX_TITLE_LENGTH]}..."

    @staticmethod
    def paginate_messages(
        messages: List[Message],
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> PaginatedMessages:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        total = len(messages)
        total_pages = math.ceil(total / page_size)
        valid_page = max(1, min(page, total_pages or 1))
        start = (valid_page - 1) * page_size
        return PaginatedMessages(
            messages=messages[start : start + page_size],
            page=valid_page,
            page_size=page_size,
            total_messages=total,
            total_pages=total_pages or 1,
            has_next_page=valid_page < total_pages,
            has_previous_page=valid_page > 1,
        )

    def get_paginated_messages(
        self,
        conversation_id: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Optional[PaginatedMessages]:
        record = self.get_conversation(conversation_id)
        if record is None:
            return None
        return self.paginate_messages(record.messages, page, page_size)

    def needs_pagination(self, conversation_id: str, page_size: int = DEFAULT_PAGE_SIZE) -> bool:
        record = self.get_conversation(conversation_id)
        return record is not None and len(record.messages) > page_size

    def get_total_pages(self, conversation_id: str, page_size: int = DEFAULT_PAGE_SIZE) -> int:
        record = self.get_conversation(conversation_id)
        if record is None:
            return 0
        return math.ceil(len(record.messages) / page_size)
