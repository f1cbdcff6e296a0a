from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from ..errors import GenerationTimeoutError, ProviderError
from ..provider import ProviderClient, image_mime_type, truncate
from ..schemas import QueueResultResponse, QueueStatusResponse, QueueSubmitResponse
from ..transfer import AssetTransferEngine, validate_locator
from ..types import GenerationRequest, JobStatus, PollableJob, ProviderKind

if TYPE_CHECKING:
    from ..config import QueuedProviderConfig

logger = logging.getLogger(__name__)


def image_to_data_uri(path: Path) -> str:
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{image_mime_type(path)};base64,{encoded}"


class QueuedGenerationProvider(ProviderClient):
    """Queue-and-poll image-to-image provider.

    The job moves SUBMITTED -> (PENDING | IN_PROGRESS)* -> COMPLETED | FAILED,
    or times out once ``poll_rounds`` status queries have gone unanswered.
    The finished image lives behind a URL and is fetched with the
    :class:`AssetTransferEngine`.
    """

    _config: QueuedProviderConfig

    def __init__(
        self,
        config: QueuedProviderConfig,
        api_key: str,
        results_dir: Path,
        timeout_seconds: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
        transfer: Optional[AssetTransferEngine] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(config, api_key, results_dir, timeout_seconds, client)
        self._transfer = transfer or AssetTransferEngine()
        self._sleep = sleep

    @property
    def provider_id(self) -> str:
        return ProviderKind.QUEUED.value

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self._api_key}"}

    @property
    def submit_url(self) -> str:
        return f"{self._config.endpoint.rstrip('/')}/image-to-image"

    def status_url(self, job_id: str) -> str:
        return f"{self._config.endpoint.rstrip('/')}/requests/{job_id}/status"

    def result_url(self, job_id: str) -> str:
        return f"{self._config.endpoint.rstrip('/')}/requests/{job_id}"

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        data_uri = image_to_data_uri(request.source_image_path)
        cfg = self._config
        return {
            "prompt": request.prompt,
            "image_url": data_uri,
            "control_lora_image_url": data_uri,
            "strength": request.param("strength", cfg.strength),
            "num_inference_steps": int(request.param("steps", cfg.steps)),
            "guidance_scale": request.param("guidance_scale", cfg.guidance_scale),
            "sync_mode": False,
            "num_images": 1,
            "output_format": self._output_format(request).value,
            "control_lora_strength": request.param("control_lora_strength", cfg.control_lora_strength),
            "enable_safety_checker": True,
        }

    async def generate(self, request: GenerationRequest) -> Path:
        payload = self.build_payload(request)
        build_log = {k: v for k, v in payload.items() if not k.endswith("image_url")}
        logger.info("Submitting %s job for %s", self.provider_id, request.source_image_path)
        logger.debug("Request parameters (images omitted): %s", build_log)

        async with self._client() as client:
            submitted = await self._submit(client, payload)
            image_url = submitted.first_image_url()
            if image_url:
                logger.info("Provider returned images synchronously; skipping poll")
            elif submitted.request_id:
                job = PollableJob(job_id=submitted.request_id)
                image_url = await self._poll(client, job)
            else:
                raise ProviderError(
                    self.provider_id,
                    "submission",
                    "response carried neither images nor a request_id",
                )

        validate_locator(image_url)
        result_path = self._result_path(self._output_format(request))
        logger.info("Downloading result %s -> %s", image_url, result_path)
        await self._transfer.download(image_url, result_path)
        return self._finalize(result_path, request, source_url=image_url)

    async def _submit(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> QueueSubmitResponse:
        try:
            response = await client.post(
                self.submit_url,
                json=payload,
                headers=self._auth_headers(),
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise self._transport_error("submission", e) from e

        logger.info("Received response with status: %d", response.status_code)
        logger.debug("Response body (truncated): %s", truncate(response.text))
        if not response.is_success:
            raise self._provider_error("submission", response)
        return self._parse(QueueSubmitResponse, response, "submission")

    async def _poll(self, client: httpx.AsyncClient, job: PollableJob) -> Optional[str]:
        cfg = self._config
        delay = 1.0
        while job.rounds < cfg.poll_rounds:
            job.rounds += 1
            logger.info("Poll attempt %d/%d for %s, waiting %.0fs", job.rounds, cfg.poll_rounds, job.job_id, delay)
            await self._sleep(delay)
            delay = min(delay * 2, cfg.max_poll_delay)

            status = await self._query_status(client, job)
            if status is None:
                continue
            job.status = status.status
            if job.status is JobStatus.COMPLETED:
                job.result_locator = await self._fetch_result(client, job)
                return job.result_locator
            if job.status is JobStatus.FAILED:
                message = status.error or "Unknown error"
                logger.error("Job %s failed: %s", job.job_id, message)
                raise ProviderError(self.provider_id, "job", message, payload=status.error)
            logger.info("Job %s still %s", job.job_id, job.status.value)

        raise GenerationTimeoutError(
            self.provider_id,
            f"Timed out waiting for job {job.job_id} after {job.rounds} status checks. "
            "The service might be overloaded.",
        )

    async def _query_status(self, client: httpx.AsyncClient, job: PollableJob) -> Optional[QueueStatusResponse]:
        try:
            response = await client.get(
                self.status_url(job.job_id),
                headers=self._auth_headers(),
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Error during polling: %s", e)
            return None
        if not response.is_success:
            logger.warning("Status check returned HTTP %d: %s", response.status_code, truncate(response.text))
            return None
        try:
            return QueueStatusResponse.model_validate_json(response.content)
        except ValidationError as e:
            logger.warning("Unreadable status response: %s", e)
            return None

    async def _fetch_result(self, client: httpx.AsyncClient, job: PollableJob) -> str:
        try:
            response = await client.get(
                self.result_url(job.job_id),
                headers=self._auth_headers(),
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise self._transport_error("result retrieval", e) from e
        if not response.is_success:
            raise self._provider_error("result retrieval", response)
        result = self._parse(QueueResultResponse, response, "result retrieval")
        url = result.first_image_url()
        if not url:
            raise ProviderError(
                self.provider_id,
                "result retrieval",
                "no images found in completed result",
                payload=response.text,
            )
        return url

    def _parse(self, schema, response: httpx.Response, stage: str):
        try:
            return schema.model_validate_json(response.content)
        except ValidationError as e:
            raise ProviderError(
                self.provider_id,
                stage,
                f"unexpected response shape: {e}",
                payload=response.text,
                status_code=response.status_code,
            ) from e
