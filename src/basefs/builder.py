"""Sparse file allocation and ext4 formatting."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from basefs.errors import AllocationError, FormatError
from basefs.models import BLOCK_SIZE, INODE_SIZE, Image
from basefs.observability import StructuredLogger
from basefs.tools import ToolRunner

# Lazy inode table and journal init would defer zeroing to the first mount,
# which then happens inside the VM.
MKFS_EXTENDED_OPTIONS = "lazy_itable_init=0,lazy_journal_init=0"


def mkfs_argv(path: str | Path) -> list[str]:
    return [
        "mkfs.ext4",
        "-b",
        str(BLOCK_SIZE),
        "-I",
        str(INODE_SIZE),
        "-F",
        "-E",
        MKFS_EXTENDED_OPTIONS,
        str(path),
    ]


@dataclass(slots=True)
class FilesystemBuilder:
    runner: ToolRunner
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def build(self, image: Image, allocated_bytes: int) -> Path:
        fs_path = image.fs_path
        self.logger.log(
            operation="allocate",
            image=image.uid,
            stage="format",
            message="Allocating image file and formatting it with ext4.",
            extra={"path": str(fs_path), "allocated_bytes": allocated_bytes},
        )
        self._allocate(image, fs_path, allocated_bytes)

        argv = mkfs_argv(fs_path)
        result = self.runner.run(argv)
        if not result.ok:
            diagnostics = result.diagnostics()
            message = f"Failed to format image {image.uid}"
            message += f" (stderr: {diagnostics})." if diagnostics else "."
            self.logger.log(
                operation="format",
                image=image.uid,
                stage="format",
                tool="mkfs.ext4",
                message=message,
                level="error",
            )
            raise FormatError(
                message,
                hint="Check mkfs.ext4 output and free space in the object directory.",
                context={
                    "image": image.uid,
                    "operation": "format",
                    "path": str(fs_path),
                    "returncode": str(result.returncode),
                    "stderr": diagnostics,
                    "command": " ".join(argv),
                },
            )
        return fs_path

    def _allocate(self, image: Image, fs_path: Path, allocated_bytes: int) -> None:
        try:
            fs_path.parent.mkdir(parents=True, exist_ok=True)
            with fs_path.open("wb") as handle:
                # Truncating upward leaves a sparse file; ext4 only claims
                # the blocks it writes.
                os.truncate(handle.fileno(), allocated_bytes)
        except OSError as exc:
            self.logger.log(
                operation="allocate",
                image=image.uid,
                stage="format",
                message=f"Failed to allocate space for image {image.uid}: {exc}",
                level="error",
            )
            raise AllocationError(
                f"Failed to allocate space for image {image.uid}.",
                hint="Check permissions and free space in the object directory.",
                context={
                    "image": image.uid,
                    "operation": "allocate",
                    "path": str(fs_path),
                    "bytes": str(allocated_bytes),
                    "cause": str(exc),
                },
            ) from exc
