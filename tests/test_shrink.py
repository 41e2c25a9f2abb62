from pathlib import Path

import pytest
from conftest import DEFAULT_LOOP_DEVICE, FakeRunner

from basefs.errors import LoopDeviceError, ParseError, ResizeError
from basefs.models import GIB, Image
from basefs.observability import StructuredLogger
from basefs.shrink import ShrinkEngine


def _allocate(image: Image, size: int = GIB) -> Path:
    image.object_path.mkdir(parents=True, exist_ok=True)
    with image.fs_path.open("wb") as handle:
        handle.truncate(size)
    return image.fs_path


def test_shrink_runs_check_estimate_resize_detach_truncate(
    runner: FakeRunner, image: Image
) -> None:
    path = _allocate(image)

    minimum = ShrinkEngine(runner=runner).shrink(image)

    assert minimum.blocks == 100000
    assert minimum.size_bytes == 409_600_000
    assert path.stat().st_size == 409_600_000
    assert runner.calls == [
        ("losetup", "--find", "--show", str(path)),
        ("e2fsck", "-p", "-f", DEFAULT_LOOP_DEVICE),
        ("resize2fs", "-P", DEFAULT_LOOP_DEVICE),
        ("resize2fs", DEFAULT_LOOP_DEVICE, "100000"),
        ("losetup", "--detach", DEFAULT_LOOP_DEVICE),
    ]


def test_fsck_repairs_are_not_errors(runner: FakeRunner, image: Image) -> None:
    _allocate(image)
    runner.on("e2fsck", returncode=1, stdout="IMAGE_FS: 11/65536 files (0.0% non-contiguous)")
    logger = StructuredLogger()

    ShrinkEngine(runner=runner, logger=logger).shrink(image)

    fsck_records = [record for record in logger.records if record["operation"] == "fsck"]
    assert fsck_records[0]["level"] == "info"


def test_fsck_failure_is_logged_and_shrink_continues(runner: FakeRunner, image: Image) -> None:
    _allocate(image)
    runner.on("e2fsck", returncode=4, stderr="UNEXPECTED INCONSISTENCY; RUN fsck MANUALLY.")
    logger = StructuredLogger()

    minimum = ShrinkEngine(runner=runner, logger=logger).shrink(image)

    assert minimum.blocks == 100000
    warnings = logger.records_at("warning")
    assert warnings[0]["tool"] == "e2fsck"
    assert warnings[0]["extra"]["returncode"] == 4


def test_localized_estimate_is_parsed(runner: FakeRunner, image: Image) -> None:
    path = _allocate(image)
    runner.on("resize2fs", "-P", stdout="预计文件系统的最小尺寸：61817\n")

    ShrinkEngine(runner=runner).shrink(image)

    assert path.stat().st_size == 61817 * 4096
    assert ("resize2fs", DEFAULT_LOOP_DEVICE, "61817") in runner.calls


def test_unparseable_estimate_detaches_and_keeps_file(runner: FakeRunner, image: Image) -> None:
    path = _allocate(image)
    runner.on("resize2fs", "-P", stdout="Please run 'e2fsck -f /dev/loop7' first.\n")

    with pytest.raises(ParseError) as excinfo:
        ShrinkEngine(runner=runner).shrink(image)

    assert excinfo.value.image == image.uid
    assert runner.calls[-1] == ("losetup", "--detach", DEFAULT_LOOP_DEVICE)
    assert path.stat().st_size == GIB


def test_estimate_failure(runner: FakeRunner, image: Image) -> None:
    _allocate(image)
    runner.on("resize2fs", "-P", returncode=1, stderr="resize2fs: Bad magic number in super-block")

    with pytest.raises(ResizeError) as excinfo:
        ShrinkEngine(runner=runner).shrink(image)

    assert excinfo.value.context["operation"] == "estimate"
    assert "Bad magic" in excinfo.value.context["stderr"]
    assert runner.calls[-1] == ("losetup", "--detach", DEFAULT_LOOP_DEVICE)


def test_resize_failure_detaches_and_skips_truncate(runner: FakeRunner, image: Image) -> None:
    path = _allocate(image)
    runner.on("resize2fs", DEFAULT_LOOP_DEVICE, returncode=1, stderr="No space left on device")

    with pytest.raises(ResizeError) as excinfo:
        ShrinkEngine(runner=runner).shrink(image)

    assert excinfo.value.context["operation"] == "resize"
    assert excinfo.value.context["blocks"] == "100000"
    assert runner.calls[-1] == ("losetup", "--detach", DEFAULT_LOOP_DEVICE)
    assert path.stat().st_size == GIB


def test_attach_failure_aborts_before_any_tool(runner: FakeRunner, image: Image) -> None:
    _allocate(image)
    runner.on("losetup", "--find", returncode=1, stderr="losetup: cannot find an unused loop device")

    with pytest.raises(LoopDeviceError) as excinfo:
        ShrinkEngine(runner=runner).shrink(image)

    assert excinfo.value.image == image.uid
    assert runner.programs() == ["losetup"]


def test_detach_failure_aborts_before_truncate(runner: FakeRunner, image: Image) -> None:
    path = _allocate(image)
    runner.on("losetup", "--detach", returncode=1, stderr="losetup: device is busy")

    with pytest.raises(LoopDeviceError):
        ShrinkEngine(runner=runner).shrink(image)

    assert path.stat().st_size == GIB


def test_truncate_failure_is_a_resize_error(runner: FakeRunner, image: Image) -> None:
    # Backing file vanished between resize and truncate.
    image.object_path.mkdir(parents=True)

    with pytest.raises(ResizeError) as excinfo:
        ShrinkEngine(runner=runner).shrink(image)

    assert excinfo.value.context["operation"] == "truncate"
    assert excinfo.value.image == image.uid


def test_engine_builds_its_loop_manager_from_its_runner(runner: FakeRunner) -> None:
    logger = StructuredLogger()

    engine = ShrinkEngine(runner=runner, logger=logger)

    assert engine.loops.runner is runner
    assert engine.loops.logger is logger
