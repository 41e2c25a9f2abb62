"""Public package entrypoint for base image filesystem provisioning."""

from .builder import FilesystemBuilder
from .config import ProvisionConfig
from .errors import (
    AllocationError,
    ErrorCode,
    ExtractionError,
    FormatError,
    LoopDeviceError,
    MountError,
    ParseError,
    ProvisionError,
    ResizeError,
    ResolvConfError,
    ToolError,
)
from .extract import Extractor, TarExtractor
from .loopdev import LoopDeviceManager
from .models import FileSource, Image, LoopDevice, MinimumSize, ProvisionResult, Source
from .observability import StructuredLogger
from .parse import parse_trailing_int
from .populate import ContentPopulator, ensure_resolv_conf
from .provision import ProvisioningOrchestrator, provision_image
from .shrink import ShrinkEngine
from .sizing import SizePlanner, SizePolicy
from .tools import SubprocessRunner, ToolResult, ToolRunner

__all__ = [
    "AllocationError",
    "ContentPopulator",
    "ErrorCode",
    "ExtractionError",
    "Extractor",
    "FileSource",
    "FilesystemBuilder",
    "FormatError",
    "Image",
    "LoopDevice",
    "LoopDeviceError",
    "LoopDeviceManager",
    "MinimumSize",
    "MountError",
    "ParseError",
    "ProvisionConfig",
    "ProvisionError",
    "ProvisionResult",
    "ProvisioningOrchestrator",
    "ResizeError",
    "ResolvConfError",
    "ShrinkEngine",
    "SizePlanner",
    "SizePolicy",
    "Source",
    "StructuredLogger",
    "SubprocessRunner",
    "TarExtractor",
    "ToolError",
    "ToolResult",
    "ToolRunner",
    "ensure_resolv_conf",
    "parse_trailing_int",
]
