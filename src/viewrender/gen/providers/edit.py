from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..errors import ProviderError
from ..provider import ProviderClient, image_mime_type
from ..schemas import EditResponse
from ..types import GenerationRequest, OutputFormat, ProviderKind

if TYPE_CHECKING:
    from ..config import EditProviderConfig

logger = logging.getLogger(__name__)

IMAGE_FIELD = "image[]"
STAGE = "edit"


def build_image_parts(primary: Path, references: Sequence[Path]) -> list[tuple[str, tuple[str, bytes, str]]]:
    """Primary image first, then references in the order given; the provider weighs them by position."""
    parts = []
    for path in (primary, *references):
        path = Path(path)
        parts.append((IMAGE_FIELD, (path.name, path.read_bytes(), image_mime_type(path))))
    return parts


class MultiReferenceEditProvider(ProviderClient):
    _config: EditProviderConfig

    @property
    def provider_id(self) -> str:
        return ProviderKind.EDIT.value

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def generate(self, request: GenerationRequest) -> Path:
        return await self.edit(
            request.source_image_path,
            request.reference_image_paths,
            request.prompt,
            request.model,
            request=request,
        )

    async def edit(
        self,
        primary_image_path: Path,
        reference_image_paths: Sequence[Path],
        prompt: str,
        model: Optional[str] = None,
        request: Optional[GenerationRequest] = None,
    ) -> Path:
        model = model or self._config.model
        if request is None:
            request = GenerationRequest(
                source_image_path=Path(primary_image_path),
                prompt=prompt,
                reference_image_paths=tuple(Path(p) for p in reference_image_paths),
                model=model,
            )
        logger.info(
            "Processing image with %s: %s with %d reference images",
            self.provider_id,
            primary_image_path,
            len(reference_image_paths),
        )

        form = {"model": model, "prompt": prompt}
        files = build_image_parts(Path(primary_image_path), reference_image_paths)
        headers = {**self._auth_headers(), "Accept": "application/json"}

        try:
            async with self._client() as client:
                response = await client.post(
                    self._config.endpoint,
                    data=form,
                    files=files,
                    headers=headers,
                    timeout=self._timeout_seconds,
                )
        except httpx.HTTPError as e:
            raise self._transport_error(STAGE, e) from e

        logger.info("Received response with status: %d", response.status_code)
        if not response.is_success:
            raise self._provider_error(STAGE, response)

        image_bytes = self._decode(response)
        # The edits endpoint always answers with PNG.
        result_path = self._result_path(OutputFormat.PNG)
        result_path.write_bytes(image_bytes)
        return self._finalize(result_path, request, model=model)

    def _decode(self, response: httpx.Response) -> bytes:
        try:
            parsed = EditResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise ProviderError(
                self.provider_id, STAGE, f"unexpected response shape: {e}", payload=response.text
            ) from e
        if not parsed.data or not parsed.data[0].b64_json:
            raise ProviderError(self.provider_id, STAGE, "response contained no image data", payload=response.text)
        try:
            return base64.b64decode(parsed.data[0].b64_json, validate=True)
        except binascii.Error as e:
            raise ProviderError(self.provider_id, STAGE, f"invalid base64 image data: {e}") from e
