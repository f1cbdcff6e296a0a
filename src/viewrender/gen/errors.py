from __future__ import annotations

from typing import Optional, Sequence


class RenderError(Exception):
    """Base class for every failure surfaced by the generation layer."""


class ImageIOError(RenderError):
    """Raised when a local image cannot be read, decoded or written."""

    def __init__(self, path, message: str):
        self.path = path
        super().__init__(f"Could not process image {path}: {message}")


class ProtocolError(RenderError):
    """Raised when a provider hands back a locator we cannot fetch."""

    def __init__(self, url: Optional[str]):
        self.url = url
        super().__init__(f"Invalid URL returned from provider: {url!r} (expected http or https)")


class ConstraintViolationError(RenderError):
    """Raised when a provider rejects the input for a geometric constraint."""

    def __init__(
        self,
        provider: str,
        payload: str,
        width: Optional[int],
        height: Optional[int],
        min_aspect: float,
        max_aspect: float,
    ):
        self.provider = provider
        self.payload = payload
        self.width = width
        self.height = height
        self.min_aspect = min_aspect
        self.max_aspect = max_aspect
        super().__init__(
            f"Image aspect ratio error: {payload}\n"
            f"Original image dimensions: {self.describe_dimensions()}\n"
            f"The API requires aspect ratios between 1:{1 / min_aspect:g} and {max_aspect:g}:1."
        )

    def describe_dimensions(self) -> str:
        if not self.width or not self.height:
            return "unknown dimensions"
        return f"{self.width}x{self.height} (aspect ratio: {self.width / self.height:.2f})"


class ProviderError(RenderError):
    """Raised when a provider answers with a failure.

    ``payload`` holds the raw error content so the user can diagnose without
    re-running with verbose logging.
    """

    def __init__(
        self,
        provider: str,
        stage: str,
        message: str,
        payload: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.provider = provider
        self.stage = stage
        self.payload = payload
        self.status_code = status_code
        prefix = f"{provider} {stage} failed"
        if status_code is not None:
            prefix += f" (HTTP {status_code})"
        super().__init__(f"{prefix}: {message}")


class NetworkError(RenderError):
    """Raised when no response was received at all."""

    def __init__(self, provider: str, stage: str, cause: Exception):
        self.provider = provider
        self.stage = stage
        super().__init__(
            f"Network error talking to {provider} during {stage}: {cause}. "
            "Check your internet connection, proxy and firewall settings."
        )


class AssetUnavailableError(RenderError):
    def __init__(self, url: str, strategies: Sequence[str], last_error: Optional[BaseException] = None):
        self.url = url
        self.strategies = list(strategies)
        self.last_error = last_error
        detail = f" Last error: {last_error}" if last_error else ""
        super().__init__(
            f"Failed to download result image from {url} after trying strategies "
            f"{', '.join(self.strategies)}. The image was generated but could not be "
            f"downloaded.{detail}"
        )


class GenerationTimeoutError(RenderError, TimeoutError):
    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(
            f"{provider}: {message} Try reducing image size or complexity, "
            "or increasing the timeout in settings."
        )


class RenderInProgressError(RenderError):
    def __init__(self):
        super().__init__("Rendering is already in progress.")
