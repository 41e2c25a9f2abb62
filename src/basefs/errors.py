"""Typed provisioning error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers, one per pipeline failure kind."""

    ALLOCATION = "E_ALLOCATION"
    FORMAT = "E_FORMAT"
    MOUNT = "E_MOUNT"
    EXTRACTION = "E_EXTRACTION"
    RESOLV_SETUP = "E_RESOLV_SETUP"
    LOOP_DEVICE = "E_LOOP_DEVICE"
    PARSE = "E_PARSE"
    RESIZE = "E_RESIZE"
    TOOL = "E_TOOL"


class ProvisionError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def image(self) -> str | None:
        return self.context.get("image") or None

    def annotate(self, **context: str) -> ProvisionError:
        """Fill in context keys the raising site did not know about."""
        merged = dict(self.context)
        for key, value in context.items():
            if not merged.get(key):
                merged[key] = value
        self.context = merged
        return self

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class AllocationError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ALLOCATION, hint=hint, context=context)


class FormatError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FORMAT, hint=hint, context=context)


class MountError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MOUNT, hint=hint, context=context)


class ExtractionError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.EXTRACTION, hint=hint, context=context)


class ResolvConfError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RESOLV_SETUP, hint=hint, context=context)


class LoopDeviceError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOOP_DEVICE, hint=hint, context=context)


class ParseError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PARSE, hint=hint, context=context)


class ResizeError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RESIZE, hint=hint, context=context)


class ToolError(ProvisionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.TOOL, hint=hint, context=context)


__all__ = [
    "AllocationError",
    "ErrorCode",
    "ExtractionError",
    "FormatError",
    "LoopDeviceError",
    "MountError",
    "ParseError",
    "ProvisionError",
    "ResizeError",
    "ResolvConfError",
    "ToolError",
]
