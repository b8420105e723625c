from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from chatstore.schemas.conversation import MalformedRecordError
from chatstore.services.conversation_file_store import ConversationFileStore
from chatstore.utils.file_storage import WriteFailure, write_atomic
from chatstore.utils.logging import get_logger

log = get_logger(__name__)

LEGACY_STATE_PATH = "state.json"
LEGACY_CONVERSATION_KEYS = ("conversations", "conversationHistory")
IMPORT_MARKER_PATH = "legacy_import.json"
IMPORT_MARKER_VERSION = 3


@dataclass
class LegacyImportResult:
    success: bool = True
    conversations_imported: int = 0
    errors: List[str] = field(default_factory=list)


def _entries(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    return []


class LegacyStateImporter:
    """Moves conversations out of the old single-blob state file.

    The blob is a JSON object whose ``conversations`` and ``conversationHistory``
    keys both held conversation lists in earlier releases. Once everything has
    been imported without errors a marker file is written and the imported keys
    are dropped from the blob.
    """

    def __init__(self, store: ConversationFileStore, *, state_path: str = LEGACY_STATE_PATH) -> None:
        self.store = store
        self.state_path = state_path

    async def _read_state(self) -> Dict[str, Any]:
        try:
            payload = await self.store.storage.read(self.state_path)
        except ValueError as exc:
            log.warning("legacy_state_unreadable", path=self.state_path, error=str(exc))
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def legacy_conversations(state: Dict[str, Any]) -> List[Dict[str, Any]]:
        unique: Dict[str, Dict[str, Any]] = {}
        for key in LEGACY_CONVERSATION_KEYS:
            for item in _entries(state.get(key)):
                if not isinstance(item, dict):
                    continue
                conversation_id = item.get("id")
                if isinstance(conversation_id, str) and conversation_id and conversation_id not in unique:
                    unique[conversation_id] = item
        return list(unique.values())

    async def is_complete(self) -> bool:
        marker = await self.store.storage.read(IMPORT_MARKER_PATH)
        return isinstance(marker, dict) and marker.get("version") == IMPORT_MARKER_VERSION

    async def needs_import(self) -> bool:
        if await self.is_complete():
            return False
        return bool(self.legacy_conversations(await self._read_state()))

    async def import_conversations(self) -> LegacyImportResult:
        result = LegacyImportResult()
        conversations = self.legacy_conversations(await self._read_state())
        if not conversations:
            log.info("legacy_import_nothing_to_do")
            return result

        log.info("legacy_import_started", conversation_count=len(conversations))
        for raw in conversations:
            try:
                await self.store.save_conversation(raw)
                result.conversations_imported += 1
            except (MalformedRecordError, WriteFailure, ValueError) as exc:
                message = f"Failed to import conversation {raw.get('id')}: {exc}"
                result.errors.append(message)
                log.error("legacy_import_conversation_failed", conversation_id=raw.get("id"), error=str(exc))

        await self.store.flush()
        indexed = self.store.index.ids()
        missing = [raw["id"] for raw in conversations if raw["id"] not in indexed]
        if missing:
            warning = f"Import verification: {len(missing)} of {len(conversations)} conversations missing"
            result.success = False
            result.errors.append(warning)
            log.warning("legacy_import_verification_failed", missing=missing)

        log.info(
            "legacy_import_finished",
            imported=result.conversations_imported,
            errors=len(result.errors),
        )
        return result

    async def mark_complete(self) -> None:
        await write_atomic(
            self.store.storage,
            IMPORT_MARKER_PATH,
            {"version": IMPORT_MARKER_VERSION, "completed_at": datetime.now(UTC).isoformat()},
        )

    async def _strip_imported_keys(self) -> None:
        state = await self._read_state()
        if not any(key in state for key in LEGACY_CONVERSATION_KEYS):
            return
        remaining = {key: value for key, value in state.items() if key not in LEGACY_CONVERSATION_KEYS}
        await write_atomic(self.store.storage, self.state_path, remaining)
        log.info("legacy_state_cleared", path=self.state_path)

    async def run_if_needed(self) -> Optional[LegacyImportResult]:
        if not await self.needs_import():
            return None
        result = await self.import_conversations()
        if result.success and not result.errors:
            await self.mark_complete()
            await self._strip_imported_keys()
        return result

    async def reset_marker(self) -> None:
        await self.store.storage.delete(IMPORT_MARKER_PATH)
