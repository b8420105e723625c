import json

import pytest

from chatstore.schemas.conversation import Message
from chatstore.services.conversation_file_store import CONVERSATIONS_KEY, create_conversation_file_store
from chatstore.services.conversation_manager import ConversationManager
from chatstore.services.index_store import INDEX_PATH
from chatstore.utils.config import StoreSettings

pytestmark = pytest.mark.smoke


def _index_ids(tmp_path):
    raw = json.loads((tmp_path / INDEX_PATH).read_text(encoding="utf-8"))
    return [entry["id"] for entry in raw["conversations"]]


@pytest.mark.asyncio
async def test_conversations_survive_restart(tmp_path):
    settings = StoreSettings(index_debounce_seconds=0.05, save_backoff_seconds=0.0)
    store = await create_conversation_file_store(str(tmp_path), settings=settings)
    manager = ConversationManager(store)

    for position in range(5):
        await manager.save_conversation(
            f"conv-{position}",
            [Message(role="user", text=f"question {position}"), Message(role="model", text="answer")],
        )
    await manager.delete_conversation("conv-2")
    await manager.update_title("conv-4", "Pinned")
    await store.close()

    assert sorted(_index_ids(tmp_path)) == ["conv-0", "conv-1", "conv-3", "conv-4"]

    reopened = await create_conversation_file_store(str(tmp_path), settings=settings)
    cached = reopened.get(CONVERSATIONS_KEY, [])
    assert sorted(record.id for record in cached) == ["conv-0", "conv-1", "conv-3", "conv-4"]

    result = await ConversationManager(reopened).load_all_conversations()
    assert result.failed == []
    titles = {record.id: record.title for record in result.successful}
    assert titles["conv-4"] == "Pinned"
    assert titles["conv-0"] == "question 0"
    await reopened.close()


@pytest.mark.asyncio
async def test_generic_update_drives_storage(tmp_path):
    settings = StoreSettings(index_debounce_seconds=0.0)
    store = await create_conversation_file_store(str(tmp_path), settings=settings)
    manager = ConversationManager(store)
    await manager.save_conversation("keep", [Message(role="user", text="keep me")])
    await manager.save_conversation("drop", [Message(role="user", text="drop me")])

    conversations = store.get(CONVERSATIONS_KEY, [])
    kept = [record for record in conversations if record.id != "drop"]
    await store.update(CONVERSATIONS_KEY, kept)
    await store.close()

    assert _index_ids(tmp_path) == ["keep"]
    assert not (tmp_path / "conversations" / "drop").exists()
