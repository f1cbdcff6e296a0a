from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

import httpx

from .errors import GenerationTimeoutError, NetworkError, ProviderError
from .provenance import result_timestamp, write_result_sidecar
from .types import ConditioningConstraints, GenerationRequest, OutputFormat, mask_credential

if TYPE_CHECKING:
    from .config import ProviderConfig

logger = logging.getLogger(__name__)

CONNECTIVITY_TIMEOUT = 5.0
MAX_LOGGED_BODY = 500

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


def image_mime_type(path: Path) -> str:
    return IMAGE_MIME_TYPES.get(path.suffix.lower(), "image/jpeg")


def truncate(text: str, limit: int = MAX_LOGGED_BODY) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class ProviderClient(ABC):
    """One image-generation backend behind the common ``generate`` contract.

    Subclasses build the provider-specific request, interpret the response and
    persist the final image under ``<results_dir>/<provider_id>/``.
    """

    constraints: Optional[ConditioningConstraints] = None

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        results_dir: Path,
        timeout_seconds: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._api_key = api_key
        self._results_dir = Path(results_dir)
        self._timeout_seconds = timeout_seconds
        self._client_override = client
        logger.debug("Created %s client with API key %s", self.provider_id, mask_credential(api_key))

    @property
    @abstractmethod
    def provider_id(self) -> str: ...

    @property
    def results_dir(self) -> Path:
        return self._results_dir / self.provider_id

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]: ...

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Path:
        """Run one generation and return the local path of the result image."""
        raise NotImplementedError

    async def check_connectivity(self) -> bool:
        """Issue a cheap authenticated GET; False on any HTTP-level failure."""
        url = self._config.connectivity_url
        try:
            async with self._client() as client:
                response = await client.get(
                    url, headers=self._auth_headers(), timeout=CONNECTIVITY_TIMEOUT
                )
        except httpx.HTTPError as e:
            logger.warning("%s connectivity test failed: %s", self.provider_id, e)
            return False
        ok = response.is_success
        logger.info("%s connectivity test result: %s (HTTP %d)", self.provider_id, ok, response.status_code)
        return ok

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client_override is not None:
            yield self._client_override
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_seconds)) as client:
            yield client

    def _output_format(self, request: GenerationRequest) -> OutputFormat:
        return request.output_format or self._config.output_format

    def _result_path(self, fmt: OutputFormat) -> Path:
        out_dir = self.results_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        return out_dir / f"result_{result_timestamp()}{fmt.extension}"

    def _finalize(self, result_path: Path, request: GenerationRequest, **extra: Any) -> Path:
        write_result_sidecar(result_path, self.provider_id, request, extra)
        logger.info("Image saved to %s", result_path)
        return result_path

    def _transport_error(self, stage: str, error: httpx.HTTPError) -> Exception:
        if isinstance(error, httpx.TimeoutException):
            return GenerationTimeoutError(
                self.provider_id,
                f"Request timed out after {self._timeout_seconds:g} seconds during {stage}.",
            )
        return NetworkError(self.provider_id, stage, error)

    def _provider_error(self, stage: str, response: httpx.Response) -> ProviderError:
        payload = response.text
        logger.error("%s %s error response (HTTP %d): %s", self.provider_id, stage, response.status_code, truncate(payload))
        return ProviderError(
            self.provider_id,
            stage,
            payload or response.reason_phrase,
            payload=payload,
            status_code=response.status_code,
        )
