"""Populating a freshly formatted image through a loop mount."""

from __future__ import annotations

import errno
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from basefs.cleanup import release_after, result_is_gone
from basefs.errors import ExtractionError, MountError, ProvisionError, ResolvConfError
from basefs.extract import Extractor
from basefs.models import Image, Source
from basefs.observability import StructuredLogger
from basefs.tools import ToolRunner

RESOLV_CONF = Path("etc") / "resolv.conf"
# The guest kernel configures itself over DHCP and publishes the nameservers
# it received in /proc/net/pnp.
RESOLV_CONF_FALLBACK = "../proc/net/pnp"
ETC_MODE = 0o755
MAX_LINK_HOPS = 40


def ensure_resolv_conf(root: Path) -> bool:
    """Link ``etc/resolv.conf`` under *root* to the kernel's DHCP results.

    Nothing is changed when the tree already ships a non-empty resolv.conf.
    Returns True when the fallback link was created.

    Every component of the path is resolved inside *root* the way the guest
    will see it: absolute link targets start at the image root. A relative
    link climbing above the root raises ``ResolvConfError`` and nothing is
    created or removed.
    """
    etc = _resolve_in_root(root, RESOLV_CONF.parent)
    if _is_non_empty_file(root):
        return False
    resolv_conf = etc / RESOLV_CONF.name
    # Some images have no /etc at all.
    etc.mkdir(mode=ETC_MODE, parents=True, exist_ok=True)
    if os.path.lexists(resolv_conf):
        resolv_conf.unlink()
    os.symlink(RESOLV_CONF_FALLBACK, resolv_conf)
    return True


def _is_non_empty_file(root: Path) -> bool:
    try:
        target = _resolve_in_root(root, RESOLV_CONF)
        info = os.lstat(target)
    except (OSError, ResolvConfError):
        return False
    return stat.S_ISREG(info.st_mode) and info.st_size > 0


def _resolve_in_root(root: Path, relative: Path) -> Path:
    """Return the host path of *relative* inside *root* with links followed.

    Components that do not exist yet are kept as they are, so the result can
    be created with ``mkdir``. Existing components of the result are never
    symlinks.
    """
    pending = list(relative.parts)
    resolved: list[str] = []
    hops = 0
    missing = False
    while pending:
        part = pending.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if not resolved:
                raise ResolvConfError(
                    f"{relative} resolves outside the image root.",
                    context={"operation": "resolv_conf", "path": str(relative)},
                )
            resolved.pop()
            continue
        if missing:
            resolved.append(part)
            continue
        candidate = root.joinpath(*resolved, part)
        try:
            info = os.lstat(candidate)
        except FileNotFoundError:
            missing = True
            resolved.append(part)
            continue
        if not stat.S_ISLNK(info.st_mode):
            resolved.append(part)
            continue
        hops += 1
        if hops > MAX_LINK_HOPS:
            raise OSError(errno.ELOOP, "Too many levels of symbolic links", str(candidate))
        target = os.readlink(candidate)
        target_parts = list(Path(target).parts)
        if os.path.isabs(target):
            # Absolute targets start over at the image root.
            resolved = []
            target_parts = target_parts[1:]
        pending[:0] = target_parts
    return root.joinpath(*resolved)


@dataclass(slots=True)
class ContentPopulator:
    runner: ToolRunner
    extractor: Extractor
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    tmp_root: Path | None = None

    def populate(self, image: Image, source: Source) -> bool:
        """Extract *source* into the image; return whether resolv.conf was linked."""
        self.logger.log(
            operation="populate",
            image=image.uid,
            stage="populate",
            message="Copying in files to the image file from a source.",
        )
        try:
            mount_dir = Path(
                tempfile.mkdtemp(
                    prefix="basefs-mnt-",
                    dir=str(self.tmp_root) if self.tmp_root is not None else None,
                )
            )
        except OSError as exc:
            raise MountError(
                f"Failed to create a mountpoint for image {image.uid}.",
                context={"image": image.uid, "operation": "mkdtemp", "cause": str(exc)},
            ) from exc
        mounted = False

        def _unmount() -> None:
            nonlocal mounted
            self._unmount(image, mount_dir)
            mounted = False

        try:
            self._mount(image, mount_dir)
            mounted = True
            with release_after(_unmount, on_suppressed=lambda exc: self._log_suppressed(image, exc)):
                self._extract(image, source, mount_dir)
                return self._setup_resolv_conf(image, mount_dir)
        finally:
            if mounted:
                self.logger.log(
                    operation="populate_cleanup",
                    image=image.uid,
                    stage="populate",
                    message=f"Leaving {mount_dir} in place; it is still mounted.",
                    level="warning",
                )
            else:
                shutil.rmtree(mount_dir, ignore_errors=True)

    def _mount(self, image: Image, mount_dir: Path) -> None:
        fs_path = image.fs_path
        result = self.runner.run(["mount", "-o", "loop", str(fs_path), str(mount_dir)])
        if result.ok:
            return
        message = f"Failed to mount image {fs_path}."
        self.logger.log(
            operation="mount",
            image=image.uid,
            stage="populate",
            tool="mount",
            message=message,
            level="error",
        )
        raise MountError(
            message,
            hint="Loop mounting needs root privileges and the loop module.",
            context={
                "image": image.uid,
                "operation": "mount",
                "path": str(fs_path),
                "mountpoint": str(mount_dir),
                "returncode": str(result.returncode),
                "stderr": result.diagnostics(),
            },
        )

    def _unmount(self, image: Image, mount_dir: Path) -> None:
        result = self.runner.run(["umount", str(mount_dir)])
        if result.ok or result_is_gone(result):
            return
        raise MountError(
            f"Failed to unmount {mount_dir}.",
            hint=f"Unmount it manually with `umount {mount_dir}`.",
            context={
                "image": image.uid,
                "operation": "unmount",
                "mountpoint": str(mount_dir),
                "returncode": str(result.returncode),
                "stderr": result.diagnostics(),
            },
        )

    def _extract(self, image: Image, source: Source, mount_dir: Path) -> None:
        try:
            self.extractor.extract(source, mount_dir)
        except ProvisionError as exc:
            self.logger.log(
                operation="extract",
                image=image.uid,
                stage="populate",
                message=f"Extraction failed: {exc.args[0] if exc.args else exc}",
                level="error",
            )
            raise exc.annotate(image=image.uid)
        except OSError as exc:
            raise ExtractionError(
                f"Failed to extract source into image {image.uid}.",
                context={"image": image.uid, "operation": "extract", "cause": str(exc)},
            ) from exc

    def _setup_resolv_conf(self, image: Image, mount_dir: Path) -> bool:
        try:
            linked = ensure_resolv_conf(mount_dir)
        except ResolvConfError as exc:
            self.logger.log(
                operation="resolv_conf",
                image=image.uid,
                stage="populate",
                message=f"resolv.conf setup refused: {exc.args[0]}",
                level="error",
            )
            raise exc.annotate(image=image.uid)
        except OSError as exc:
            self.logger.log(
                operation="resolv_conf",
                image=image.uid,
                stage="populate",
                message=f"resolv.conf setup failed: {exc}",
                level="error",
            )
            raise ResolvConfError(
                f"Failed to set up resolv.conf for image {image.uid}.",
                context={"image": image.uid, "operation": "resolv_conf", "cause": str(exc)},
            ) from exc
        if linked:
            self.logger.log(
                operation="resolv_conf",
                image=image.uid,
                stage="populate",
                message=f"Linked etc/resolv.conf to {RESOLV_CONF_FALLBACK}.",
            )
        return linked

    def _log_suppressed(self, image: Image, exc: Exception) -> None:
        self.logger.log(
            operation="unmount",
            image=image.uid,
            stage="populate",
            tool="umount",
            message=f"Unmount failed after an earlier error: {exc}",
            level="warning",
        )
