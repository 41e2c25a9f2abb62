"""Initial sparse allocation sizing."""

from __future__ import annotations

from dataclasses import dataclass, field

from basefs.config import MIN_BASE_SIZE_GB_ENV, MIN_BASE_SIZE_GB_RANGE, ProvisionConfig
from basefs.models import GIB
from basefs.observability import StructuredLogger

# Archive sizes are usually compressed layer sizes; extracted content plus
# ext4 journal and metadata can be several times larger.
SIZE_MULTIPLIER = 5
DEFAULT_MIN_BASE_SIZE_GB = 10


@dataclass(frozen=True, slots=True)
class SizePolicy:
    multiplier: int = SIZE_MULTIPLIER
    floor_bytes: int = DEFAULT_MIN_BASE_SIZE_GB * GIB

    @classmethod
    def from_config(cls, config: ProvisionConfig) -> SizePolicy:
        gb = config.min_base_size_gb
        low, high = MIN_BASE_SIZE_GB_RANGE
        if not isinstance(gb, int) or isinstance(gb, bool) or not low <= gb <= high:
            gb = DEFAULT_MIN_BASE_SIZE_GB
        return cls(floor_bytes=gb * GIB)

    @property
    def floor_gb(self) -> int:
        return self.floor_bytes // GIB


@dataclass(slots=True)
class SizePlanner:
    policy: SizePolicy = field(default_factory=SizePolicy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def plan(self, nominal_bytes: int, *, image: str | None = None) -> int:
        self.logger.log(
            operation="size_plan",
            image=image,
            stage="plan",
            message=(
                f"Minimum base image size {self.policy.floor_gb} GB "
                f"(override with {MIN_BASE_SIZE_GB_ENV})."
            ),
            extra={"floor_bytes": self.policy.floor_bytes},
        )
        computed = max(nominal_bytes, 0) * self.policy.multiplier
        return max(computed, self.policy.floor_bytes)
