from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

CONVERSATION_INDEX_VERSION = 1
CONVERSATION_FILE_VERSION = 2
CURRENT_RECORD_VERSION = 2
UNKNOWN_RECORD_ID = "unknown"
UNTITLED = "Untitled"


def now_ms() -> int:
    return int(time.time() * 1000)


class MalformedRecordError(ValueError):
    """Raised when a stored conversation cannot be decoded or migrated."""

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"Malformed conversation record {record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class IndexCorruptionError(ValueError):
    """Raised when the listing index cannot be decoded; callers treat it as absent."""


class RecordVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


class MessageMetadata(BaseModel):
    """Agent-to-agent provenance carried on a message."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    sender_id: Optional[str] = Field(default=None, alias="senderId")
    sender_type: Optional[str] = Field(default=None, alias="senderType")
    timestamp: Optional[Union[int, float]] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    role: Literal["user", "model"]
    text: StrictStr
    metadata: Optional[MessageMetadata] = None


class ConversationMeta(BaseModel):
    """Index entry: everything needed to list a conversation without reading it."""

    model_config = ConfigDict(populate_by_name=True)

    id: StrictStr
    title: str
    created_at: int = Field(alias="createdAt")
    last_updated: int = Field(alias="lastUpdated")
    message_count: int = Field(default=0, ge=0, alias="messageCount")
    archived: Optional[bool] = None
    tags: Optional[List[str]] = None


class ConversationIndex(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = CONVERSATION_INDEX_VERSION
    last_updated: int = Field(default_factory=now_ms, alias="lastUpdated")
    conversations: List[ConversationMeta] = Field(default_factory=list)


class ConversationFile(BaseModel):
    """On-disk envelope stored at conversations/{id}/conversation.json."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = CONVERSATION_FILE_VERSION
    metadata: ConversationMeta
    messages: List[Message] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    agent_mode: Optional[str] = Field(default=None, alias="agentMode")
    participating_agents: Optional[List[str]] = Field(default=None, alias="participatingAgents")


class ConversationRecordV1(BaseModel):
    """Legacy record. It has no version tag; the missing tag is the marker."""

    model_config = ConfigDict(populate_by_name=True)

    id: StrictStr = Field(min_length=1)
    title: StrictStr
    timestamp: StrictInt
    messages: List[Message]
    last_updated: Optional[StrictInt] = Field(default=None, alias="lastUpdated")


class ConversationMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_mode: Optional[str] = Field(default=None, alias="agentMode")
    participating_agents: Optional[List[str]] = Field(default=None, alias="participatingAgents")
    tags: Optional[List[str]] = None
    archived: bool = False


class ConversationRecord(BaseModel):
    """Current (V2) conversation record."""

    model_config = ConfigDict(populate_by_name=True)

    version: Literal[2] = CURRENT_RECORD_VERSION
    id: StrictStr = Field(min_length=1)
    title: StrictStr
    timestamp: StrictInt
    last_updated: StrictInt = Field(alias="lastUpdated")
    messages: List[Message]
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


AnyConversationRecord = Union[ConversationRecordV1, ConversationRecord]


def _dump_set_fields(model: BaseModel) -> Dict[str, Any]:
    payload = model.model_dump(mode="json", by_alias=True)
    for name, info in type(model).model_fields.items():
        if name not in model.model_fields_set:
            payload.pop(info.alias or name, None)
    return payload


def dump_message(message: Message) -> Dict[str, Any]:
    """Messages keep exactly the keys they were given, explicit nulls included."""

    payload = _dump_set_fields(message)
    if isinstance(message.metadata, MessageMetadata) and "metadata" in payload:
        payload["metadata"] = _dump_set_fields(message.metadata)
    return payload


def dump_model(model: BaseModel) -> Dict[str, Any]:
    payload = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    messages = getattr(model, "messages", None)
    if isinstance(messages, list) and "messages" in payload:
        payload["messages"] = [dump_message(message) for message in messages]
    return payload


def record_id_of(raw: Any) -> str:
    if isinstance(raw, Mapping):
        value = raw.get("id")
        if isinstance(value, str) and value:
            return value
    return UNKNOWN_RECORD_ID


def detect_version(raw: Any) -> RecordVersion:
    """Only an explicit ``version == 2`` makes a record current."""

    if isinstance(raw, ConversationRecord):
        return RecordVersion.V2
    if isinstance(raw, ConversationRecordV1):
        return RecordVersion.V1
    if isinstance(raw, Mapping):
        version = raw.get("version")
        if not isinstance(version, bool) and version == CURRENT_RECORD_VERSION:
            return RecordVersion.V2
    return RecordVersion.V1


def _describe_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid record"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "record"
    return f"{location}: {first.get('msg', 'invalid value')}"


def decode_record(raw: Any) -> AnyConversationRecord:
    """Decode a raw mapping into the legacy or current record type."""

    if isinstance(raw, (ConversationRecord, ConversationRecordV1)):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(UNKNOWN_RECORD_ID, "record is not an object")
    model = ConversationRecord if detect_version(raw) is RecordVersion.V2 else ConversationRecordV1
    try:
        return model.model_validate(dict(raw))
    except ValidationError as exc:
        raise MalformedRecordError(record_id_of(raw), _describe_validation_error(exc)) from exc


def migrate_v1_to_v2(record: AnyConversationRecord | Mapping[str, Any]) -> ConversationRecord:
    """Upgrade a legacy record. Current records are returned untouched."""

    decoded = decode_record(record)
    if isinstance(decoded, ConversationRecord):
        return decoded
    last_updated = decoded.last_updated if decoded.last_updated is not None else decoded.timestamp
    return ConversationRecord(
        id=decoded.id,
        title=decoded.title,
        timestamp=decoded.timestamp,
        last_updated=last_updated,
        messages=list(decoded.messages),
        metadata=ConversationMetadata(archived=False),
    )


def record_to_meta(record: ConversationRecord) -> ConversationMeta:
    return ConversationMeta(
        id=record.id,
        title=record.title or UNTITLED,
        created_at=record.timestamp,
        last_updated=record.last_updated,
        message_count=len(record.messages),
        archived=record.metadata.archived,
        tags=record.metadata.tags,
    )


def record_to_file(record: ConversationRecord) -> ConversationFile:
    return ConversationFile(
        version=CONVERSATION_FILE_VERSION,
        metadata=record_to_meta(record),
        messages=record.messages,
        session_id=record.session_id,
        agent_mode=record.metadata.agent_mode,
        participating_agents=record.metadata.participating_agents,
    )


def raw_record_from_file(payload: Any) -> Any:
    """Flatten an on-disk payload into the raw record shape ``decode_record`` expects.

    Current envelopes become V2 mappings; the earlier version-1 envelope becomes a
    V1 mapping (no version key); a bare legacy record passes through untouched.
    """

    if not isinstance(payload, Mapping):
        return payload
    metadata = payload.get("metadata")
    if not isinstance(metadata, Mapping) or "messages" not in payload or "id" not in metadata:
        return dict(payload)
    raw: Dict[str, Any] = {
        "id": metadata.get("id"),
        "title": metadata.get("title"),
        "timestamp": metadata.get("createdAt"),
        "lastUpdated": metadata.get("lastUpdated"),
        "messages": payload.get("messages"),
    }
    version = payload.get("version")
    if isinstance(version, bool) or version != CONVERSATION_FILE_VERSION:
        if raw["lastUpdated"] is None:
            raw.pop("lastUpdated")
        return raw
    raw["version"] = CURRENT_RECORD_VERSION
    record_metadata: Dict[str, Any] = {"archived": bool(metadata.get("archived") or False)}
    if metadata.get("tags") is not None:
        record_metadata["tags"] = metadata.get("tags")
    if payload.get("agentMode") is not None:
        record_metadata["agentMode"] = payload.get("agentMode")
    if payload.get("participatingAgents") is not None:
        record_metadata["participatingAgents"] = payload.get("participatingAgents")
    raw["metadata"] = record_metadata
    if payload.get("sessionId") is not None:
        raw["sessionId"] = payload.get("sessionId")
    return raw


def meta_from_raw(directory_id: str, raw: Any) -> ConversationMeta:
    """Best-effort index entry for a content file found on disk without one."""

    try:
        record = migrate_v1_to_v2(raw)
    except MalformedRecordError:
        messages = raw.get("messages") if isinstance(raw, Mapping) else None
        timestamp = raw.get("timestamp") if isinstance(raw, Mapping) else None
        created_at = timestamp if isinstance(timestamp, int) and not isinstance(timestamp, bool) else 0
        title = raw.get("title") if isinstance(raw, Mapping) else None
        return ConversationMeta(
            id=directory_id,
            title=title if isinstance(title, str) and title else UNTITLED,
            created_at=created_at,
            last_updated=created_at,
            message_count=len(messages) if isinstance(messages, list) else 0,
        )
    meta = record_to_meta(record)
    if meta.id != directory_id:
        meta = meta.model_copy(update={"id": directory_id})
    return meta


class PaginatedMessages(BaseModel):
    messages: List[Message]
    page: int
    page_size: int
    total_messages: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
