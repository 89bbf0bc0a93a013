import pytest

from pagecapture.storage import LocalStorageTarget, MemoryStorageTarget, StorageMetadata


@pytest.mark.asyncio
async def test_local_target_writes_file(tmp_path):
    target = LocalStorageTarget(str(tmp_path / "captures"))

    stored = await target.save(b"\x89PNG data", StorageMetadata(url="https://example.com/"))

    assert stored.size == 9
    assert stored.location.endswith(".png")
    with open(stored.location, "rb") as fh:
        assert fh.read() == b"\x89PNG data"


@pytest.mark.asyncio
async def test_memory_target_keeps_blob_and_metadata():
    target = MemoryStorageTarget()
    metadata = StorageMetadata(url="https://example.com/", mime_type="application/octet-stream", extra={"device": "pixel-9"})

    stored = await target.save(b"abc", metadata)

    assert stored.location.startswith("memory://capture-")
    assert stored.location.endswith(".bin")
    assert target.get(stored.location) == b"abc"
    assert target.metadata[stored.location].extra == {"device": "pixel-9"}
    assert target.get("memory://missing") is None
