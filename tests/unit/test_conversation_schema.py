import pytest

from chatstore.schemas.conversation import (
    ConversationMetadata,
    ConversationRecord,
    ConversationRecordV1,
    MalformedRecordError,
    Message,
    RecordVersion,
    decode_record,
    detect_version,
    dump_message,
    dump_model,
    meta_from_raw,
    migrate_v1_to_v2,
    raw_record_from_file,
    record_to_file,
)

V1_RECORD = {
    "id": "c1",
    "title": "Chat",
    "timestamp": 1700000000000,
    "messages": [{"role": "user", "text": "hi"}],
}


def test_detect_version_requires_explicit_tag():
    assert detect_version(V1_RECORD) is RecordVersion.V1
    assert detect_version({**V1_RECORD, "version": 2}) is RecordVersion.V2
    # V2-shaped fields without the tag still count as legacy
    assert detect_version({**V1_RECORD, "lastUpdated": 5, "metadata": {"archived": False}}) is RecordVersion.V1
    assert detect_version({**V1_RECORD, "version": "2"}) is RecordVersion.V1
    assert detect_version({**V1_RECORD, "version": True}) is RecordVersion.V1


def test_migrate_without_last_updated_falls_back_to_timestamp():
    migrated = migrate_v1_to_v2(V1_RECORD)

    assert isinstance(migrated, ConversationRecord)
    assert migrated.version == 2
    assert migrated.id == "c1"
    assert migrated.title == "Chat"
    assert migrated.timestamp == 1700000000000
    assert migrated.last_updated == 1700000000000
    assert migrated.metadata == ConversationMetadata(archived=False)
    assert migrated.metadata.agent_mode is None
    assert migrated.metadata.participating_agents is None
    assert migrated.metadata.tags is None
    assert [(m.role, m.text) for m in migrated.messages] == [("user", "hi")]


def test_migrate_keeps_last_updated_and_empty_message_list():
    migrated = migrate_v1_to_v2({**V1_RECORD, "messages": [], "lastUpdated": 1700000005000})

    assert migrated.last_updated == 1700000005000
    assert migrated.messages == []


def test_migrate_preserves_message_order():
    messages = [{"role": "user" if i % 2 == 0 else "model", "text": f"m{i}"} for i in range(6)]
    migrated = migrate_v1_to_v2({**V1_RECORD, "messages": messages})

    assert [m.text for m in migrated.messages] == [f"m{i}" for i in range(6)]


def test_migration_is_idempotent():
    once = migrate_v1_to_v2(V1_RECORD)
    assert migrate_v1_to_v2(once) is once

    stored = dump_model(once)
    assert dump_model(migrate_v1_to_v2(stored)) == stored


@pytest.mark.parametrize(
    "broken, expected_id",
    [
        ({"title": "x", "timestamp": 1, "messages": []}, "unknown"),
        ({"id": 42, "title": "x", "timestamp": 1, "messages": []}, "unknown"),
        ({"id": "c2", "timestamp": 1, "messages": []}, "c2"),
        ({"id": "c3", "title": "x", "timestamp": "yesterday", "messages": []}, "c3"),
        ({"id": "c4", "title": 7, "timestamp": 1, "messages": []}, "c4"),
        ({"id": "c5", "title": "x", "timestamp": 1, "messages": [{"role": "robot", "text": "?"}]}, "c5"),
    ],
)
def test_malformed_records_carry_their_id(broken, expected_id):
    with pytest.raises(MalformedRecordError) as excinfo:
        migrate_v1_to_v2(broken)
    assert excinfo.value.record_id == expected_id


def test_decode_rejects_non_objects():
    with pytest.raises(MalformedRecordError) as excinfo:
        decode_record(["not", "a", "record"])
    assert excinfo.value.record_id == "unknown"


def test_message_provenance_round_trips_unchanged():
    messages = [
        {
            "role": "model",
            "text": "ok",
            "metadata": {
                "senderId": "agent-a",
                "senderType": "agent",
                "timestamp": 1700000000001,
                "sessionId": "s-1",
                "hop": 2,
            },
        }
    ]
    migrated = migrate_v1_to_v2({**V1_RECORD, "messages": messages})

    assert dump_model(migrated)["messages"] == messages


def test_current_file_envelope_decodes_back_to_record():
    record = ConversationRecord(
        id="c9",
        title="Planning",
        timestamp=10,
        last_updated=20,
        messages=[Message(role="user", text="plan")],
        metadata=ConversationMetadata(agent_mode="build", participating_agents=["a"], tags=["x"], archived=True),
        session_id="sess-9",
    )
    payload = dump_model(record_to_file(record))

    assert payload["version"] == 2
    assert payload["metadata"]["messageCount"] == 1
    assert payload["agentMode"] == "build"
    assert decode_record(raw_record_from_file(payload)) == record


def test_version_one_envelope_is_treated_as_legacy():
    payload = {
        "version": 1,
        "metadata": {"id": "c5", "title": "Old", "createdAt": 10, "lastUpdated": 20, "messageCount": 1},
        "messages": [{"role": "user", "text": "hello"}],
    }
    decoded = decode_record(raw_record_from_file(payload))

    assert isinstance(decoded, ConversationRecordV1)
    assert decoded.last_updated == 20
    assert migrate_v1_to_v2(decoded).timestamp == 10


def test_meta_from_raw_builds_placeholder_for_malformed_content():
    meta = meta_from_raw("bad", {"id": "bad", "messages": [{"role": "user", "text": "a"}, {}]})

    assert meta.id == "bad"
    assert meta.title == "Untitled"
    assert meta.message_count == 2
    assert meta.created_at == 0


def test_explicit_nulls_in_messages_are_kept():
    messages = [
        {"role": "user", "text": "hi", "metadata": {"senderId": None, "sessionId": "s", "hop": None}},
        {"role": "model", "text": "ok", "metadata": None, "draft": None},
    ]
    migrated = migrate_v1_to_v2({**V1_RECORD, "messages": messages})

    assert dump_model(migrated)["messages"] == messages
    assert dump_message(Message(role="user", text="plain")) == {"role": "user", "text": "plain"}
