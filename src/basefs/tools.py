"""External tool execution.

Every filesystem operation in the pipeline is delegated to a host tool
(``mkfs.ext4``, ``mount``, ``losetup``, ``e2fsck``, ``resize2fs``, ``tar``).
Components talk to a ``ToolRunner`` so tests can substitute scripted output.
By default commands are prefixed with ``sudo`` when not running as root; set
``privilege="none"`` to run them as the current user.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import BinaryIO, Protocol

from basefs.config import Privilege
from basefs.errors import ToolError

FILESYSTEM_TOOLS = ("mkfs.ext4", "mount", "umount", "losetup", "e2fsck", "resize2fs")
# Only needed when archives are unpacked with the default TarExtractor.
EXTRACT_TOOLS = ("tar",)
REQUIRED_TOOLS = FILESYSTEM_TOOLS + EXTRACT_TOOLS


@dataclass(frozen=True, slots=True)
class ToolResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def diagnostics(self, limit: int = 2000) -> str:
        return self.stderr.strip()[:limit]


class ToolRunner(Protocol):
    def run(self, argv: Sequence[str], *, stdin: BinaryIO | None = None) -> ToolResult:
        """Run *argv* to completion and return its exit status and output."""

    def ensure_available(self, tools: Iterable[str]) -> None:
        """Raise ToolError if any of *tools* cannot be executed."""


@dataclass(slots=True)
class SubprocessRunner:
    name: str = "subprocess"
    privilege: Privilege = "sudo"

    def run(self, argv: Sequence[str], *, stdin: BinaryIO | None = None) -> ToolResult:
        cmd = self._command(argv)
        if stdin is None:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
            )
            return ToolResult(
                argv=tuple(argv),
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
        return self._run_streaming(argv, cmd, stdin)

    def ensure_available(self, tools: Iterable[str]) -> None:
        if not sys.platform.startswith("linux"):
            raise ToolError(
                "Image provisioning requires a Linux host.",
                hint="Loop devices and ext4 tooling are only available on Linux.",
                context={"runner": self.name, "operation": "prepare"},
            )
        missing = [tool for tool in tools if _which(tool) is None]
        if missing:
            raise ToolError(
                f"Required tools not found in PATH: {', '.join(missing)}.",
                hint="Install e2fsprogs, util-linux and tar.",
                context={"runner": self.name, "operation": "prepare"},
            )
        if self._needs_sudo() and shutil.which("sudo") is None:
            raise ToolError(
                "Running as a regular user requires `sudo` in PATH.",
                hint="Run as root or set privilege='none'.",
                context={"runner": self.name, "operation": "prepare"},
            )

    def _run_streaming(
        self, argv: Sequence[str], cmd: list[str], stdin: BinaryIO
    ) -> ToolResult:
        # stderr goes to a file so a chatty tool cannot block on a full pipe
        # while we are still feeding it stdin.
        with tempfile.TemporaryFile() as stderr_file:
            # Leaving the Popen block closes stdin and waits for the child,
            # also when reading the source fails.
            with subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file,
            ) as proc:
                if proc.stdin is None:
                    raise ToolError(
                        f"No stdin pipe for `{argv[0]}`.",
                        context={"runner": self.name, "tool": argv[0]},
                    )
                try:
                    shutil.copyfileobj(stdin, proc.stdin)
                except BrokenPipeError:
                    # The tool exited early; its exit status says why.
                    pass
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        pass
            returncode = proc.returncode
            stderr_file.seek(0)
            stderr = stderr_file.read().decode("utf-8", errors="replace")
        return ToolResult(argv=tuple(argv), returncode=returncode, stderr=stderr)

    def _command(self, argv: Sequence[str]) -> list[str]:
        if not argv:
            raise ToolError("Empty command.", context={"runner": self.name})
        # Resolve absolute path so sudo (which resets PATH) can find it
        binary = _which(argv[0]) or argv[0]
        cmd: list[str] = []
        if self._needs_sudo():
            cmd.append("sudo")
        cmd.extend([binary, *argv[1:]])
        return cmd

    def _needs_sudo(self) -> bool:
        return self.privilege == "sudo" and os.getuid() != 0


def _which(tool: str) -> str | None:
    # mkfs.ext4, e2fsck and friends live in sbin, which is often not on a
    # regular user's PATH.
    found = shutil.which(tool)
    if found is not None:
        return found
    for directory in ("/usr/sbin", "/sbin"):
        found = shutil.which(tool, path=directory)
        if found is not None:
            return found
    return None
