from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import httpx

from .config import ConfigError, VRConfig, find_config, load_config
from .provider import ProviderClient
from .providers.edit import MultiReferenceEditProvider
from .providers.queued import QueuedGenerationProvider
from .providers.structure import StructureConditionedProvider
from .transfer import AssetTransferEngine
from .types import ProviderKind

_PROVIDER_CLASSES: dict[ProviderKind, type[ProviderClient]] = {
    ProviderKind.STRUCTURE: StructureConditionedProvider,
    ProviderKind.QUEUED: QueuedGenerationProvider,
    ProviderKind.EDIT: MultiReferenceEditProvider,
}


def parse_kind(name: Union[ProviderKind, str]) -> ProviderKind:
    if isinstance(name, ProviderKind):
        return name
    try:
        return ProviderKind(name.strip().lower())
    except ValueError:
        raise ConfigError(
            f"Unknown provider: '{name}'. Available providers: {sorted(k.value for k in ProviderKind)}"
        ) from None


class ProviderRegistry:
    def __init__(
        self,
        config: VRConfig,
        client: Optional[httpx.AsyncClient] = None,
        transfer: Optional[AssetTransferEngine] = None,
    ):
        self._config = config
        self._client = client
        self._transfer = transfer
        self._providers: dict[ProviderKind, ProviderClient] = {}

    @classmethod
    def from_config_file(cls, config_path: Optional[Path] = None) -> "ProviderRegistry":
        if config_path is None:
            config_path = find_config()
        config = load_config(config_path)
        return cls(config)

    @property
    def config(self) -> VRConfig:
        return self._config

    def get_provider(self, kind: Union[ProviderKind, str]) -> ProviderClient:
        kind = parse_kind(kind)
        if kind in self._providers:
            return self._providers[kind]

        provider = self._instantiate_provider(kind)
        self._providers[kind] = provider
        return provider

    def get_default_provider(self) -> ProviderClient:
        return self.get_provider(self._config.default_provider)

    def _instantiate_provider(self, kind: ProviderKind) -> ProviderClient:
        section = self._config.providers.get(kind)
        if section is None:
            available = sorted(k.value for k in self._config.providers.available())
            raise ConfigError(
                f"Provider '{kind.value}' is not configured. "
                f"Add a [providers.{kind.value}] section. Available providers: {available}"
            )

        api_key = section.resolve_api_key()
        if not api_key:
            raise ConfigError(
                f"No API key for provider '{kind.value}'. "
                f"Set {section.api_key_env} or api_key in [providers.{kind.value}]."
            )

        common = dict(
            config=section,
            api_key=api_key,
            results_dir=self._config.results_dir,
            timeout_seconds=self._config.timeout_seconds,
            client=self._client,
        )
        if kind is ProviderKind.QUEUED:
            return QueuedGenerationProvider(transfer=self._transfer_engine(), **common)
        return _PROVIDER_CLASSES[kind](**common)

    def _transfer_engine(self) -> AssetTransferEngine:
        if self._transfer is None:
            settings = self._config.transfer
            self._transfer = AssetTransferEngine(
                max_attempts=settings.max_attempts,
                attempt_timeout=settings.attempt_timeout_seconds,
            )
        return self._transfer
