"""Core typed dataclasses for images, sources, and provisioning results."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol

import cbor2

IMAGE_FS = "IMAGE_FS"
BLOCK_SIZE = 4096
INODE_SIZE = 256
GIB = 1024 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class Image:
    uid: str
    object_path: Path
    # Nominal content size in bytes as reported by the source description.
    size: int = 0

    @property
    def fs_path(self) -> Path:
        return Path(self.object_path) / IMAGE_FS


class Source(Protocol):
    def reader(self) -> BinaryIO:
        """Open the archive byte stream. The caller closes it."""

    def cleanup(self) -> None:
        """Release whatever backs the stream. May raise FileNotFoundError."""


@dataclass(slots=True)
class FileSource:
    """Tar archive on the local filesystem."""

    path: Path
    remove_on_cleanup: bool = False

    def reader(self) -> BinaryIO:
        return Path(self.path).open("rb")

    def cleanup(self) -> None:
        if self.remove_on_cleanup:
            Path(self.path).unlink()


@dataclass(frozen=True, slots=True)
class LoopDevice:
    path: str
    backing_file: Path
    read_only: bool = False


@dataclass(frozen=True, slots=True)
class MinimumSize:
    blocks: int
    block_size: int = BLOCK_SIZE

    @property
    def size_bytes(self) -> int:
        return self.blocks * self.block_size


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    image_uid: str
    fs_path: Path
    allocated_bytes: int
    minimum: MinimumSize
    resolv_conf_linked: bool = False
    schema_version: int = 1

    @property
    def final_bytes(self) -> int:
        return self.minimum.size_bytes

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def digest(self) -> str:
        return hashlib.sha256(self.to_cbor()).hexdigest()

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "image": self.image_uid,
            "fs_path": str(self.fs_path),
            "allocated_bytes": self.allocated_bytes,
            "min_blocks": self.minimum.blocks,
            "block_size": self.minimum.block_size,
            "final_bytes": self.final_bytes,
            "resolv_conf_linked": self.resolv_conf_linked,
        }
