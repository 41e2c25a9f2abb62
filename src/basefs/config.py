"""Provisioning configuration, loaded once from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

Privilege = Literal["sudo", "none"]

MIN_BASE_SIZE_GB_ENV = "BASEFS_BASE_IMAGE_MIN_SIZE_GB"
PRIVILEGE_ENV = "BASEFS_PRIVILEGE"

MIN_BASE_SIZE_GB_RANGE = (1, 100)


@dataclass(frozen=True, slots=True)
class ProvisionConfig:
    # None selects the default floor.
    min_base_size_gb: int | None = None
    privilege: Privilege = "sudo"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProvisionConfig:
        env = os.environ if environ is None else environ
        return cls(
            min_base_size_gb=parse_min_base_size_gb(env.get(MIN_BASE_SIZE_GB_ENV)),
            privilege=_parse_privilege(env.get(PRIVILEGE_ENV)),
        )


def parse_min_base_size_gb(raw: str | None) -> int | None:
    """Return the floor override in GB, or None when unset or unusable.

    Malformed and out-of-range values are ignored rather than rejected so a
    bad override never blocks an import.
    """
    if raw is None:
        return None
    text = raw.strip()
    # int() would otherwise accept digit separators and non-ASCII digits.
    if not text or not text.isascii() or "_" in text:
        return None
    try:
        value = int(text, 10)
    except ValueError:
        return None
    low, high = MIN_BASE_SIZE_GB_RANGE
    if value < low or value > high:
        return None
    return value


def _parse_privilege(raw: str | None) -> Privilege:
    if raw is None:
        return "sudo"
    value = raw.strip().lower()
    if value == "none":
        return "none"
    return "sudo"
