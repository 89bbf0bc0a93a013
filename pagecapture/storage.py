"""
Artifact persistence targets. The pipeline only sees ``save(data, metadata)``.
"""
import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from loguru import logger

log = logger.bind(module="storage")


@dataclass
class StorageMetadata:
    url: str
    mime_type: str = "image/png"
    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StorageResult:
    location: str
    size: int
    metadata: StorageMetadata


class StorageTarget(Protocol):
    async def save(self, data: bytes, metadata: StorageMetadata) -> StorageResult: ...


def _artifact_name(data: bytes, metadata: StorageMetadata) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    digest = hashlib.sha256(data).hexdigest()[:12]
    suffix = "png" if metadata.mime_type == "image/png" else "bin"
    return f"capture-{stamp}-{digest}.{suffix}"


class LocalStorageTarget:
    def __init__(self, base_dir: str) -> None:
        self._base_dir = Path(base_dir)

    async def save(self, data: bytes, metadata: StorageMetadata) -> StorageResult:
        path = self._base_dir / _artifact_name(data, metadata)
        await asyncio.to_thread(self._write, path, data)
        log.info("storage:saved {} ({} bytes)", path, len(data))
        return StorageResult(location=str(path), size=len(data), metadata=metadata)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class MemoryStorageTarget:
    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.metadata: Dict[str, StorageMetadata] = {}

    async def save(self, data: bytes, metadata: StorageMetadata) -> StorageResult:
        location = f"memory://{_artifact_name(data, metadata)}"
        self.blobs[location] = data
        self.metadata[location] = metadata
        return StorageResult(location=location, size=len(data), metadata=metadata)

    def get(self, location: str) -> Optional[bytes]:
        return self.blobs.get(location)
