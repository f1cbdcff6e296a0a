from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from .conditioning import ImageConditioner
from .errors import ConstraintViolationError, RenderInProgressError
from .provenance import log_render_run
from .registry import ProviderRegistry
from .types import STRUCTURE_CONSTRAINTS, ConditioningConstraints, GenerationRequest, ProviderKind

logger = logging.getLogger(__name__)


@dataclass
class RenderOutcome:
    result_path: Path
    provider_id: str
    conditioning: list[str] = field(default_factory=list)
    retried: bool = False


class RenderSession:
    """Runs one render at a time: condition, generate, record.

    A second ``render`` while one is in flight is rejected with
    :class:`RenderInProgressError`. Conditioning artifacts and result files are
    not designed for concurrent reuse.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self._registry = registry
        self._on_status = on_status
        self._conditioner = ImageConditioner(on_status=on_status)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def render(
        self,
        request: GenerationRequest,
        kind: Optional[Union[ProviderKind, str]] = None,
    ) -> RenderOutcome:
        if self._lock.locked():
            raise RenderInProgressError()
        async with self._lock:
            return await self._render(request, kind)

    async def _render(self, request: GenerationRequest, kind) -> RenderOutcome:
        provider = (
            self._registry.get_provider(kind)
            if kind is not None
            else self._registry.get_default_provider()
        )
        notes: list[str] = []
        self._status(f"Rendering with {provider.provider_id}...")

        submitted = request
        if provider.constraints is not None:
            submitted = self._condition(request, provider.constraints, notes)

        retried = False
        try:
            result_path = await provider.generate(submitted)
        except ConstraintViolationError as e:
            retry_request = self._recondition(submitted, e, provider.constraints, notes)
            if retry_request is None:
                raise
            logger.info("Retrying once with re-conditioned image %s", retry_request.source_image_path)
            retried = True
            result_path = await provider.generate(retry_request)

        log_render_run(self._registry.config.results_dir, provider.provider_id, request, result_path, notes)
        self._status("Rendering completed successfully")
        return RenderOutcome(
            result_path=result_path,
            provider_id=provider.provider_id,
            conditioning=notes,
            retried=retried,
        )

    def _condition(
        self,
        request: GenerationRequest,
        constraints: ConditioningConstraints,
        notes: list[str],
    ) -> GenerationRequest:
        conditioned = self._conditioner.condition(request.source_image_path, constraints)
        notes.extend(conditioned.messages)
        if conditioned.changed:
            return request.with_source(conditioned.path)
        return request

    def _recondition(
        self,
        request: GenerationRequest,
        error: ConstraintViolationError,
        declared: Optional[ConditioningConstraints],
        notes: list[str],
    ) -> Optional[GenerationRequest]:
        constraints = ConditioningConstraints(
            min_aspect=error.min_aspect,
            max_aspect=error.max_aspect,
            max_pixel_count=(declared or STRUCTURE_CONSTRAINTS).max_pixel_count,
        )
        conditioned = self._conditioner.condition(request.source_image_path, constraints)
        notes.extend(conditioned.messages)
        if not conditioned.changed:
            return None
        return request.with_source(conditioned.path)

    def _status(self, message: str) -> None:
        if self._on_status is not None:
            self._on_status(message)
