import json

import pytest

from chatstore.utils.file_storage import FileStorage, WriteFailure, write_atomic


@pytest.mark.asyncio
async def test_read_missing_file_returns_none(tmp_path):
    storage = FileStorage(tmp_path)

    assert await storage.read("missing.json") is None
    assert await storage.stat("missing.json") is None
    assert await storage.exists("missing.json") is False


@pytest.mark.asyncio
async def test_read_invalid_json_raises_value_error(tmp_path):
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    storage = FileStorage(tmp_path)

    with pytest.raises(ValueError):
        await storage.read("bad.json")


@pytest.mark.asyncio
async def test_write_atomic_replaces_target_without_leftovers(tmp_path):
    storage = FileStorage(tmp_path)

    await write_atomic(storage, "nested/doc.json", {"v": 1})
    await write_atomic(storage, "nested/doc.json", {"v": 2, "text": "héllo"})

    assert await storage.read("nested/doc.json") == {"v": 2, "text": "héllo"}
    assert [path.name for path in (tmp_path / "nested").iterdir()] == ["doc.json"]
    assert "héllo" in (tmp_path / "nested" / "doc.json").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_compact_output_when_pretty_print_disabled(tmp_path):
    storage = FileStorage(tmp_path, pretty_print=False)

    await storage.write("doc.json", {"a": [1, 2]})

    assert (tmp_path / "doc.json").read_text(encoding="utf-8") == json.dumps({"a": [1, 2]})


@pytest.mark.asyncio
async def test_failed_rename_keeps_previous_file_and_cleans_temp(tmp_path, monkeypatch):
    storage = FileStorage(tmp_path)
    await write_atomic(storage, "doc.json", {"v": 1})

    async def broken_rename(source, target):
        raise OSError("disk full")

    monkeypatch.setattr(storage, "rename", broken_rename)

    with pytest.raises(WriteFailure) as excinfo:
        await write_atomic(storage, "doc.json", {"v": 2}, record_id="doc")

    assert excinfo.value.path == "doc.json"
    assert excinfo.value.record_id == "doc"
    assert isinstance(excinfo.value.__cause__, OSError)
    assert await storage.read("doc.json") == {"v": 1}
    assert sorted(path.name for path in tmp_path.iterdir()) == ["doc.json"]


@pytest.mark.asyncio
async def test_directory_helpers(tmp_path):
    storage = FileStorage(tmp_path)
    await storage.write("root/b/file.json", {})
    await storage.write("root/a/file.json", {})
    await storage.write("root/loose.json", {})

    assert await storage.list_directories("root") == ["a", "b"]
    assert await storage.list_directories("absent") == []

    assert await storage.delete_directory("root/a") is True
    assert await storage.delete_directory("root/a") is False
    assert await storage.list_directories("root") == ["b"]

    assert await storage.delete("root/loose.json") is True
    assert await storage.delete("root/loose.json") is False

    stat = await storage.stat("root/b/file.json")
    assert stat is not None and stat.size == len("{}")
