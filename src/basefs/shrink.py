"""Shrinking a populated image to its minimum size.

The filesystem is checked and resized through a loop device, then the
backing file itself is truncated. ``resize2fs`` only shrinks the logical
filesystem; the truncate is what gives the space back.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from basefs.errors import ParseError, ResizeError
from basefs.loopdev import LoopDeviceManager
from basefs.models import BLOCK_SIZE, Image, LoopDevice, MinimumSize
from basefs.observability import StructuredLogger
from basefs.parse import parse_trailing_int
from basefs.tools import ToolRunner

# e2fsck exit codes 1 and 2 mean errors were found and corrected.
E2FSCK_CORRECTED = frozenset({1, 2})


@dataclass(slots=True)
class ShrinkEngine:
    runner: ToolRunner
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    loops: LoopDeviceManager = field(init=False)

    def __post_init__(self) -> None:
        self.loops = LoopDeviceManager(runner=self.runner, logger=self.logger)

    def shrink(self, image: Image) -> MinimumSize:
        with self.loops.attached(image.fs_path, image=image.uid) as device:
            self._check(image, device)
            blocks = self._estimate(image, device)
            self._resize(image, device, blocks)
        minimum = MinimumSize(blocks=blocks, block_size=BLOCK_SIZE)
        self._truncate(image, minimum)
        return minimum

    def _check(self, image: Image, device: LoopDevice) -> None:
        # resize2fs refuses to shrink a filesystem that was not freshly checked.
        result = self.runner.run(["e2fsck", "-p", "-f", device.path])
        if result.ok:
            return
        if result.returncode in E2FSCK_CORRECTED:
            self.logger.log(
                operation="fsck",
                image=image.uid,
                stage="shrink",
                tool="e2fsck",
                message="e2fsck corrected filesystem errors.",
                extra={"returncode": result.returncode},
            )
            return
        self.logger.log(
            operation="fsck",
            image=image.uid,
            stage="shrink",
            tool="e2fsck",
            message=f"e2fsck exited with {result.returncode}; continuing with resize.",
            level="warning",
            extra={"returncode": result.returncode, "stderr": result.diagnostics()},
        )

    def _estimate(self, image: Image, device: LoopDevice) -> int:
        self.logger.log(
            operation="estimate",
            image=image.uid,
            stage="shrink",
            tool="resize2fs",
            message=f"Retrieving minimum size for {device.path}.",
            level="debug",
        )
        argv = ["resize2fs", "-P", device.path]
        result = self.runner.run(argv)
        if not result.ok:
            self._log_failure(image, "estimate", f"resize2fs -P failed on {device.path}.")
            raise ResizeError(
                f"Failed to estimate the minimum size of image {image.uid}.",
                context={
                    "image": image.uid,
                    "operation": "estimate",
                    "device": device.path,
                    "returncode": str(result.returncode),
                    "stderr": result.diagnostics(),
                },
            )
        try:
            blocks = parse_trailing_int(result.stdout if result.stdout.strip() else result.stderr)
        except ParseError as exc:
            self._log_failure(image, "estimate", "Could not parse resize2fs -P output.")
            raise exc.annotate(image=image.uid, device=device.path)
        self.logger.log(
            operation="estimate",
            image=image.uid,
            stage="shrink",
            tool="resize2fs",
            message=f"Minimum size: {blocks} blocks.",
            level="debug",
            extra={"blocks": blocks},
        )
        return blocks

    def _resize(self, image: Image, device: LoopDevice, blocks: int) -> None:
        argv = ["resize2fs", device.path, str(blocks)]
        result = self.runner.run(argv)
        if result.ok:
            return
        self._log_failure(image, "resize", f"resize2fs shrink to {blocks} blocks failed.")
        raise ResizeError(
            f"Failed to resize image {image.uid} to {blocks} blocks.",
            context={
                "image": image.uid,
                "operation": "resize",
                "device": device.path,
                "blocks": str(blocks),
                "returncode": str(result.returncode),
                "stderr": result.diagnostics(),
            },
        )

    def _truncate(self, image: Image, minimum: MinimumSize) -> None:
        fs_path = image.fs_path
        self.logger.log(
            operation="truncate",
            image=image.uid,
            stage="shrink",
            message=f"Truncating {fs_path} to {minimum.size_bytes} bytes.",
            level="debug",
        )
        try:
            with fs_path.open("r+b") as handle:
                os.truncate(handle.fileno(), minimum.size_bytes)
        except OSError as exc:
            self._log_failure(image, "truncate", f"Failed to shrink image {image.uid}: {exc}")
            raise ResizeError(
                f"Failed to shrink image {image.uid}.",
                context={
                    "image": image.uid,
                    "operation": "truncate",
                    "path": str(fs_path),
                    "bytes": str(minimum.size_bytes),
                    "cause": str(exc),
                },
            ) from exc

    def _log_failure(self, image: Image, operation: str, message: str) -> None:
        self.logger.log(
            operation=operation,
            image=image.uid,
            stage="shrink",
            message=message,
            level="error",
        )
