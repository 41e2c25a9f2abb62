"""Shared test fixtures."""

from __future__ import annotations

import io
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

import pytest

from basefs.models import GIB, Image
from basefs.tools import ToolResult

Handler = Callable[[tuple[str, ...], bytes | None], ToolResult]

DEFAULT_LOOP_DEVICE = "/dev/loop7"
RESIZE2FS_ESTIMATE = (
    "resize2fs 1.47.0 (5-Feb-2023)\n"
    "Estimated minimum size of the filesystem: 100000\n"
)


@dataclass
class FakeRunner:
    """Scripted ToolRunner: responses are matched by longest argv prefix."""

    handlers: dict[tuple[str, ...], Handler] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    stdin_payloads: list[bytes] = field(default_factory=list)
    ensured: list[tuple[str, ...]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.on("losetup", "--find", stdout=f"{DEFAULT_LOOP_DEVICE}\n")
        self.on("resize2fs", "-P", stdout=RESIZE2FS_ESTIMATE)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Handler | None = None,
    ) -> None:
        if handler is None:

            def handler(argv: tuple[str, ...], _stdin: bytes | None) -> ToolResult:
                return ToolResult(argv=argv, returncode=returncode, stdout=stdout, stderr=stderr)

        self.handlers[tuple(prefix)] = handler

    def run(self, argv: Sequence[str], *, stdin: BinaryIO | None = None) -> ToolResult:
        call = tuple(argv)
        self.calls.append(call)
        payload = stdin.read() if stdin is not None else None
        if payload is not None:
            self.stdin_payloads.append(payload)
        best: tuple[str, ...] | None = None
        for prefix in self.handlers:
            if call[: len(prefix)] == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return ToolResult(argv=call, returncode=0)
        return self.handlers[best](call, payload)

    def ensure_available(self, tools: Iterable[str]) -> None:
        self.ensured.append(tuple(tools))

    def programs(self) -> list[str]:
        return [call[0] for call in self.calls]


@dataclass
class FakeExtractor:
    files: dict[str, bytes] = field(default_factory=dict)
    error: Exception | None = None
    targets: list[Path] = field(default_factory=list)

    def extract(self, source: object, target_dir: Path) -> None:
        self.targets.append(target_dir)
        if self.error is not None:
            raise self.error
        for relative, content in self.files.items():
            path = target_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)


@dataclass
class FakeSource:
    payload: bytes = b"tar-bytes"
    cleanup_error: Exception | None = None
    cleanups: int = 0

    def reader(self) -> BinaryIO:
        return io.BytesIO(self.payload)

    def cleanup(self) -> None:
        self.cleanups += 1
        if self.cleanup_error is not None:
            raise self.cleanup_error


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def image(tmp_path: Path) -> Image:
    return Image(uid="img-0001", object_path=tmp_path / "objects" / "img-0001", size=2 * GIB)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
