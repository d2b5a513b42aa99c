from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from pbs_chunk_gc import CHUNKS_DIRNAME, INDEX_HEADER_SIZE, SHARD_COUNT


def make_digest(label: str) -> bytes:
    return hashlib.sha256(label.encode("utf-8")).digest()


class Datastore:
    """Synthetic PBS datastore layout below a temporary directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.chunks = root / CHUNKS_DIRNAME

    @staticmethod
    def digest(label: str) -> bytes:
        return make_digest(label)

    def create_shards(self) -> None:
        self.chunks.mkdir(parents=True, exist_ok=True)
        for index in range(SHARD_COUNT):
            os.mkdir(self.chunks / f"{index:04x}")

    def add_blob(self, digest: bytes) -> Path:
        encoded = digest.hex()
        path = self.chunks / encoded[:4] / encoded
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"chunk")
        return path

    def blob_path(self, digest: bytes) -> Path:
        encoded = digest.hex()
        return self.chunks / encoded[:4] / encoded

    def write_fidx(self, rel: str, digests: list[bytes]) -> Path:
        payload = b"\x00" * INDEX_HEADER_SIZE + b"".join(digests)
        return self._write(rel, payload)

    def write_didx(self, rel: str, digests: list[bytes]) -> Path:
        records = [
            (4096 * (i + 1)).to_bytes(8, "little") + digest
            for i, digest in enumerate(digests)
        ]
        payload = b"\xff" * INDEX_HEADER_SIZE + b"".join(records)
        return self._write(rel, payload)

    def _write(self, rel: str, payload: bytes) -> Path:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        return path


@pytest.fixture
def datastore(tmp_path: Path) -> Datastore:
    root = tmp_path / "store"
    root.mkdir()
    return Datastore(root)
