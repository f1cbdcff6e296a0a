from __future__ import annotations

from .conditioning import ImageConditioner
from .errors import (
    AssetUnavailableError,
    ConstraintViolationError,
    GenerationTimeoutError,
    ImageIOError,
    NetworkError,
    ProtocolError,
    ProviderError,
    RenderError,
    RenderInProgressError,
)
from .provider import ProviderClient
from .registry import ProviderRegistry
from .session import RenderOutcome, RenderSession
from .transfer import AssetTransferEngine
from .types import GenerationRequest, OutputFormat, ProviderKind

__all__ = [
    "AssetTransferEngine",
    "AssetUnavailableError",
    "ConstraintViolationError",
    "GenerationRequest",
    "GenerationTimeoutError",
    "ImageConditioner",
    "ImageIOError",
    "NetworkError",
    "OutputFormat",
    "ProtocolError",
    "ProviderClient",
    "ProviderError",
    "ProviderKind",
    "ProviderRegistry",
    "RenderError",
    "RenderInProgressError",
    "RenderOutcome",
    "RenderSession",
]
