from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import urlsplit

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .. import __version__
from .errors import AssetUnavailableError, ProtocolError
from .types import TransferJob

logger = logging.getLogger(__name__)

USER_AGENT = f"viewrender/{__version__}"
CHUNK_SIZE = 64 * 1024


class EmptyTransferError(Exception):
    """Raised when an attempt finishes without producing any bytes."""


@dataclass(frozen=True)
class TransferStrategy:
    """One way of fetching a URL: a client configuration plus header set.

    Some CDNs reject a given client signature intermittently, so several
    strategies are tried in order before giving up.
    """

    name: str
    headers: dict[str, str] = field(default_factory=dict)


DEFAULT_STRATEGIES: tuple[TransferStrategy, ...] = (
    TransferStrategy("primary", {"User-Agent": USER_AGENT}),
    TransferStrategy(
        "alternate",
        {"User-Agent": USER_AGENT, "Accept": "image/*", "Connection": "close"},
    ),
    TransferStrategy("browser", {"User-Agent": "Mozilla/5.0", "Accept": "*/*"}),
)

RETRYABLE = (httpx.HTTPError, OSError, EmptyTransferError)


def validate_locator(url: Optional[str]) -> str:
    """Return ``url`` if it is an absolute http(s) URL, else raise ProtocolError."""
    if not url:
        raise ProtocolError(url)
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ProtocolError(url)
    return url


class AssetTransferEngine:
    def __init__(
        self,
        strategies: Sequence[TransferStrategy] = DEFAULT_STRATEGIES,
        max_attempts: int = 3,
        attempt_timeout: float = 30.0,
        max_backoff: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not strategies:
            raise ValueError("at least one transfer strategy is required")
        self.strategies = tuple(strategies)
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.max_backoff = max_backoff
        self._transport = transport
        self._sleep = sleep

    async def download(self, url: str, destination_path: Path, max_attempts: Optional[int] = None) -> Path:
        """Fetch ``url`` into ``destination_path``.

        Each strategy gets the full attempt budget with exponential backoff
        (1s, 2s, 4s, ... capped at ``max_backoff``). Attempts never overlap.

        Returns:
            The path of the retrieved, non-empty file.

        Raises:
            ProtocolError: If the locator is not http(s); nothing is attempted.
            AssetUnavailableError: If every strategy exhausted its attempts.
        """
        validate_locator(url)
        destination_path = Path(destination_path)
        attempts = max_attempts or self.max_attempts
        tried: list[str] = []
        last_error: Optional[BaseException] = None

        for strategy in self.strategies:
            tried.append(strategy.name)
            job = TransferJob(
                remote_locator=url,
                destination_path=destination_path,
                attempts_allowed=attempts,
                strategy=strategy.name,
            )
            try:
                await self._run_job(job, strategy)
            except RETRYABLE as e:
                last_error = e
                logger.warning(
                    "All %d %s download attempts failed for %s: %s",
                    attempts,
                    strategy.name,
                    url,
                    e,
                )
                continue
            logger.info(
                "Downloaded %s with %s strategy (%d bytes)",
                url,
                strategy.name,
                destination_path.stat().st_size,
            )
            return destination_path

        raise AssetUnavailableError(url, tried, last_error)

    async def _run_job(self, job: TransferJob, strategy: TransferStrategy) -> None:
        def before_sleep(state: RetryCallState) -> None:
            job.backoff_delay = state.next_action.sleep if state.next_action else 0.0
            logger.info(
                "Download attempt %d/%d (%s) failed: %s; waiting %.0fs before retry",
                job.current_attempt,
                job.attempts_allowed,
                job.strategy,
                state.outcome.exception() if state.outcome else None,
                job.backoff_delay,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(job.attempts_allowed),
            wait=wait_exponential(multiplier=1, min=1, max=self.max_backoff),
            retry=retry_if_exception_type(RETRYABLE),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                job.current_attempt = attempt.retry_state.attempt_number
                await self._attempt(job, strategy)

    async def _attempt(self, job: TransferJob, strategy: TransferStrategy) -> None:
        dest = job.destination_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        logger.debug(
            "Download attempt %d/%d (%s): %s -> %s",
            job.current_attempt,
            job.attempts_allowed,
            job.strategy,
            job.remote_locator,
            dest,
        )
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                headers=strategy.headers,
                timeout=httpx.Timeout(self.attempt_timeout),
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", job.remote_locator) as response:
                    response.raise_for_status()
                    with part.open("wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
            if part.stat().st_size == 0:
                raise EmptyTransferError(f"empty response body from {job.remote_locator}")
            os.replace(part, dest)
        finally:
            if part.exists():
                part.unlink()
