from pathlib import Path

import pytest
from conftest import FakeRunner

from basefs.builder import FilesystemBuilder, mkfs_argv
from basefs.errors import AllocationError, FormatError
from basefs.models import GIB, Image


def test_build_creates_sparse_file_and_formats_it(runner: FakeRunner, image: Image) -> None:
    path = FilesystemBuilder(runner=runner).build(image, 10 * GIB)

    assert path == image.object_path / "IMAGE_FS"
    assert path.stat().st_size == 10 * GIB
    assert runner.calls == [
        (
            "mkfs.ext4",
            "-b",
            "4096",
            "-I",
            "256",
            "-F",
            "-E",
            "lazy_itable_init=0,lazy_journal_init=0",
            str(path),
        )
    ]


def test_mkfs_argv_targets_the_given_path() -> None:
    assert mkfs_argv("/var/lib/img/IMAGE_FS")[-1] == "/var/lib/img/IMAGE_FS"


def test_build_reports_formatter_diagnostics(runner: FakeRunner, image: Image) -> None:
    runner.on("mkfs.ext4", returncode=1, stderr="mkfs.ext4: Device size reported to be zero.\n")

    with pytest.raises(FormatError) as excinfo:
        FilesystemBuilder(runner=runner).build(image, GIB)

    error = excinfo.value
    assert error.code == "E_FORMAT"
    assert error.image == image.uid
    assert "Device size reported to be zero" in error.args[0]
    assert error.context["returncode"] == "1"


def test_build_format_failure_without_diagnostics(runner: FakeRunner, image: Image) -> None:
    runner.on("mkfs.ext4", returncode=1)

    with pytest.raises(FormatError) as excinfo:
        FilesystemBuilder(runner=runner).build(image, GIB)

    assert excinfo.value.args[0] == f"Failed to format image {image.uid}."


def test_build_reports_allocation_failure(runner: FakeRunner, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    image = Image(uid="img-blocked", object_path=blocker / "img", size=0)

    with pytest.raises(AllocationError) as excinfo:
        FilesystemBuilder(runner=runner).build(image, GIB)

    assert excinfo.value.image == "img-blocked"
    assert runner.calls == []
