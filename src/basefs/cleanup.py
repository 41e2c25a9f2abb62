"""Guaranteed release with first-error-wins composition."""

from __future__ import annotations

import errno
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from basefs.tools import ToolResult

# Tool diagnostics meaning the resource was already released.
GONE_MARKERS = (
    "not mounted",
    "no such device",
    "no such file or directory",
    "not found",
)

_GONE_ERRNOS = frozenset({errno.ENOENT, errno.ENXIO, errno.ENODEV})


def result_is_gone(result: ToolResult) -> bool:
    stderr = result.stderr.lower()
    return any(marker in stderr for marker in GONE_MARKERS)


def error_is_gone(exc: BaseException) -> bool:
    if isinstance(exc, FileNotFoundError):
        return True
    if isinstance(exc, OSError) and exc.errno in _GONE_ERRNOS:
        return True
    cause = exc.__cause__
    return cause is not None and error_is_gone(cause)


@contextmanager
def release_after(
    release: Callable[[], None],
    *,
    on_suppressed: Callable[[Exception], None] | None = None,
) -> Iterator[None]:
    """Run *release* when the block exits, however it exits.

    If the block raised, that error wins: a failing release is handed to
    *on_suppressed* and the block's error propagates. Otherwise a release
    error propagates as the block's result.
    """
    try:
        yield
    except BaseException:
        try:
            release()
        except Exception as exc:
            if on_suppressed is not None:
                on_suppressed(exc)
        raise
    release()
