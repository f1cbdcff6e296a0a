from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx

from ..conditioning import read_dimensions
from ..errors import ConstraintViolationError, ImageIOError
from ..provider import ProviderClient, image_mime_type
from ..types import STRUCTURE_CONSTRAINTS, GenerationRequest, ProviderKind

if TYPE_CHECKING:
    from ..config import StructureProviderConfig

logger = logging.getLogger(__name__)

STAGE = "generation"


class StructureConditionedProvider(ProviderClient):
    """Structure-guided image-to-image over a single multipart POST.

    The provider answers with the image bytes themselves; the ``seed`` and
    ``finish-reason`` headers are recorded in the result sidecar.
    """

    constraints = STRUCTURE_CONSTRAINTS
    _config: StructureProviderConfig

    @property
    def provider_id(self) -> str:
        return ProviderKind.STRUCTURE.value

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def build_form(self, request: GenerationRequest) -> dict[str, str]:
        control_strength = request.param("control_strength", self._config.control_strength)
        form = {
            "prompt": request.prompt,
            "control_strength": str(control_strength),
        }
        if request.negative_prompt:
            form["negative_prompt"] = request.negative_prompt
        style_preset = request.style_preset or self._config.style_preset
        if style_preset:
            form["style_preset"] = style_preset
        form["output_format"] = self._output_format(request).value
        return form

    async def generate(self, request: GenerationRequest) -> Path:
        image_path = request.source_image_path
        fmt = self._output_format(request)
        form = self.build_form(request)
        logger.info("Processing image with %s: %s", self.provider_id, image_path)
        logger.debug("Request parameters: %s", form)

        headers = {**self._auth_headers(), "Accept": "image/*"}
        image_bytes = image_path.read_bytes()
        files = {"image": (image_path.name, image_bytes, image_mime_type(image_path))}
        result_path = self._result_path(fmt)

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._config.endpoint,
                    data=form,
                    files=files,
                    headers=headers,
                    timeout=self._timeout_seconds,
                ) as response:
                    logger.info("Received response with status: %d", response.status_code)
                    if not response.is_success:
                        await response.aread()
                        raise self._error_for(response, image_path)

                    seed = response.headers.get("seed", "")
                    finish_reason = response.headers.get("finish-reason", "")
                    logger.info("Generation successful. Seed: %s, Finish Reason: %s", seed, finish_reason)
                    with result_path.open("wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            result_path.unlink(missing_ok=True)
            raise self._transport_error(STAGE, e) from e

        return self._finalize(result_path, request, seed=seed, finish_reason=finish_reason)

    def _error_for(self, response: httpx.Response, image_path: Path) -> Exception:
        payload = response.text
        if "aspect ratio" in payload.lower():
            width, height = _safe_dimensions(image_path)
            logger.error("Aspect ratio rejected for %s: %s", image_path, payload)
            return ConstraintViolationError(
                self.provider_id,
                payload,
                width,
                height,
                self.constraints.min_aspect,
                self.constraints.max_aspect,
            )
        return self._provider_error(STAGE, response)


def _safe_dimensions(path: Path) -> tuple[Optional[int], Optional[int]]:
    try:
        return read_dimensions(path)
    except ImageIOError:
        return None, None
