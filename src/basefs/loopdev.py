"""Loop device attach/detach via ``losetup``."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from basefs.cleanup import release_after, result_is_gone
from basefs.errors import LoopDeviceError
from basefs.models import LoopDevice
from basefs.observability import StructuredLogger
from basefs.tools import ToolRunner


@dataclass(slots=True)
class LoopDeviceManager:
    runner: ToolRunner
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def attach(
        self, path: str | Path, *, read_only: bool = False, image: str | None = None
    ) -> LoopDevice:
        argv = ["losetup", "--find", "--show"]
        if read_only:
            argv.append("--read-only")
        argv.append(str(path))
        result = self.runner.run(argv)
        if not result.ok:
            raise LoopDeviceError(
                f"Failed to attach {path} to a loop device.",
                hint="Check that the loop module is loaded and a free device exists.",
                context={
                    "image": image or "",
                    "operation": "attach",
                    "path": str(path),
                    "returncode": str(result.returncode),
                    "stderr": result.diagnostics(),
                },
            )
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise LoopDeviceError(
                "losetup did not report a device path.",
                context={"image": image or "", "operation": "attach", "path": str(path)},
            )
        device = LoopDevice(path=lines[-1], backing_file=Path(path), read_only=read_only)
        self.logger.log(
            operation="loop_attach",
            image=image,
            stage=None,
            tool="losetup",
            message=f"Attached {path} to {device.path}.",
            level="debug",
        )
        return device

    def detach(self, device: LoopDevice, *, image: str | None = None) -> None:
        result = self.runner.run(["losetup", "--detach", device.path])
        if result.ok:
            self.logger.log(
                operation="loop_detach",
                image=image,
                stage=None,
                tool="losetup",
                message=f"Detached {device.path}.",
                level="debug",
            )
            return
        if result_is_gone(result):
            self.logger.log(
                operation="loop_detach",
                image=image,
                stage=None,
                tool="losetup",
                message=f"{device.path} was already detached.",
                level="debug",
            )
            return
        raise LoopDeviceError(
            f"Failed to detach loop device {device.path}.",
            hint=f"Detach it manually with `losetup --detach {device.path}`.",
            context={
                "image": image or "",
                "operation": "detach",
                "device": device.path,
                "returncode": str(result.returncode),
                "stderr": result.diagnostics(),
            },
        )

    @contextmanager
    def attached(
        self, path: str | Path, *, read_only: bool = False, image: str | None = None
    ) -> Iterator[LoopDevice]:
        """Attach *path* for the duration of the block; always detach."""
        device = self.attach(path, read_only=read_only, image=image)

        def _suppressed(exc: Exception) -> None:
            self.logger.log(
                operation="loop_detach",
                image=image,
                stage=None,
                tool="losetup",
                message=f"Detach failed after an earlier error: {exc}",
                level="warning",
            )

        with release_after(lambda: self.detach(device, image=image), on_suppressed=_suppressed):
            yield device
