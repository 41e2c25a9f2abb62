"""Archive extraction into a mounted image."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from basefs.cleanup import error_is_gone, release_after
from basefs.errors import ExtractionError
from basefs.models import Source
from basefs.observability import StructuredLogger
from basefs.tools import ToolRunner


class Extractor(Protocol):
    def extract(self, source: Source, target_dir: Path) -> None:
        """Unpack *source* into *target_dir*, preserving modes and ownership."""


@dataclass(slots=True)
class TarExtractor:
    """Pipe the source stream into ``tar -x``.

    The source is always cleaned up afterwards. A cleanup that finds its
    resource already gone is not an error; any other cleanup failure is
    reported unless extraction had already failed.
    """

    runner: ToolRunner
    extra_args: Sequence[str] = ()
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def extract(self, source: Source, target_dir: Path) -> None:
        with release_after(lambda: self._cleanup(source), on_suppressed=self._log_suppressed):
            self._run_tar(source, target_dir)

    def _run_tar(self, source: Source, target_dir: Path) -> None:
        argv = ["tar", "-x", "-C", str(target_dir), *self.extra_args]
        try:
            stream = source.reader()
        except OSError as exc:
            raise ExtractionError(
                "Failed to open the source stream.",
                context={"operation": "extract", "target": str(target_dir), "cause": str(exc)},
            ) from exc
        with stream:
            result = self.runner.run(argv, stdin=stream)
        if result.ok:
            return

        diagnostics = result.diagnostics()
        if diagnostics:
            self.logger.log(
                operation="extract",
                image=None,
                stage="populate",
                tool="tar",
                message=f"tar stderr: {diagnostics}",
                level="error",
            )
            message = f"tar extract failed (stderr: {diagnostics})."
        else:
            message = "tar extract failed."
        raise ExtractionError(
            message,
            hint="Check that the source is a valid tar stream.",
            context={
                "operation": "extract",
                "target": str(target_dir),
                "returncode": str(result.returncode),
                "command": " ".join(argv),
            },
        )

    def _cleanup(self, source: Source) -> None:
        try:
            source.cleanup()
        except Exception as exc:
            if not error_is_gone(exc):
                raise ExtractionError(
                    "Source cleanup failed after extraction.",
                    context={"operation": "source_cleanup", "cause": str(exc)},
                ) from exc
            self.logger.log(
                operation="source_cleanup",
                image=None,
                stage="populate",
                message="Source was already released.",
                level="debug",
            )

    def _log_suppressed(self, exc: Exception) -> None:
        self.logger.log(
            operation="source_cleanup",
            image=None,
            stage="populate",
            message=f"Source cleanup failed after an earlier error: {exc}",
            level="warning",
        )
