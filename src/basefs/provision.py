"""Base image provisioning: size, format, populate, shrink."""

from __future__ import annotations

from dataclasses import dataclass, field

from basefs.builder import FilesystemBuilder
from basefs.config import ProvisionConfig
from basefs.errors import ProvisionError
from basefs.extract import Extractor, TarExtractor
from basefs.models import Image, ProvisionResult, Source
from basefs.observability import StructuredLogger
from basefs.populate import ContentPopulator
from basefs.shrink import ShrinkEngine
from basefs.sizing import SizePlanner, SizePolicy
from basefs.tools import FILESYSTEM_TOOLS, REQUIRED_TOOLS, SubprocessRunner, ToolRunner


@dataclass(slots=True)
class ProvisioningOrchestrator:
    """Run the provisioning stages in order for one image.

    The first failing stage aborts the run and its error is re-raised with
    the stage name added to its context; stages already carry the image uid.
    The stage log is kept in ``logger``: see ``current_stage`` and
    ``completed_stages``. Nothing is retried, and a failed run may leave
    ``IMAGE_FS`` in an unusable intermediate state. Callers must not
    provision the same image concurrently.
    """

    runner: ToolRunner
    config: ProvisionConfig = field(default_factory=ProvisionConfig)
    extractor: Extractor | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    preflight: bool = True

    def provision(self, image: Image, source: Source) -> ProvisionResult:
        if self.preflight:
            self.runner.ensure_available(self._required_tools())

        planner = SizePlanner(policy=SizePolicy.from_config(self.config), logger=self.logger)
        builder = FilesystemBuilder(runner=self.runner, logger=self.logger)
        populator = ContentPopulator(
            runner=self.runner,
            extractor=self.extractor or TarExtractor(runner=self.runner, logger=self.logger),
            logger=self.logger,
        )
        shrinker = ShrinkEngine(runner=self.runner, logger=self.logger)

        try:
            self._stage(image, "plan", "start")
            allocated = planner.plan(image.size, image=image.uid)
            self._stage(image, "plan", "complete")
            self._stage(image, "format", "start")
            builder.build(image, allocated)
            self._stage(image, "format", "complete")
            self._stage(image, "populate", "start")
            linked = populator.populate(image, source)
            self._stage(image, "populate", "complete")
            self._stage(image, "shrink", "start")
            minimum = shrinker.shrink(image)
            self._stage(image, "shrink", "complete")
        except ProvisionError as exc:
            stage = self.logger.current_stage(image.uid)
            self.logger.log(
                operation="provision",
                image=image.uid,
                stage=stage,
                message=f"Image import failed: {exc.args[0] if exc.args else exc}",
                level="error",
                extra={"code": exc.code, "completed": self.logger.completed_stages(image.uid)},
            )
            if stage is not None:
                exc.annotate(stage=stage)
            raise

        result = ProvisionResult(
            image_uid=image.uid,
            fs_path=image.fs_path,
            allocated_bytes=allocated,
            minimum=minimum,
            resolv_conf_linked=linked,
        )
        self.logger.log(
            operation="provision",
            image=image.uid,
            stage=None,
            message="Image filesystem provisioned.",
            extra={"final_bytes": result.final_bytes, "min_blocks": minimum.blocks},
        )
        return result

    def _required_tools(self) -> tuple[str, ...]:
        if self.extractor is None:
            return REQUIRED_TOOLS
        return FILESYSTEM_TOOLS

    def _stage(self, image: Image, stage: str, event: str) -> None:
        self.logger.log(
            operation=f"stage_{event}",
            image=image.uid,
            stage=stage,
            message=f"{stage} {event}.",
            level="debug",
        )


def provision_image(
    image: Image,
    source: Source,
    *,
    runner: ToolRunner | None = None,
    config: ProvisionConfig | None = None,
    extractor: Extractor | None = None,
    logger: StructuredLogger | None = None,
) -> ProvisionResult:
    """Create ``<object_path>/IMAGE_FS`` for *image* from *source*."""
    resolved_config = config or ProvisionConfig.from_env()
    orchestrator = ProvisioningOrchestrator(
        runner=runner or SubprocessRunner(privilege=resolved_config.privilege),
        config=resolved_config,
        extractor=extractor,
        logger=logger or StructuredLogger(),
    )
    return orchestrator.provision(image, source)
