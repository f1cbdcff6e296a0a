from __future__ import annotations

from pathlib import Path

import pytest

from viewrender.gen.config import (
    CONFIG_FILENAME,
    ConfigError,
    find_config,
    load_config,
    write_starter_config,
)
from viewrender.gen.providers.edit import MultiReferenceEditProvider
from viewrender.gen.providers.queued import QueuedGenerationProvider
from viewrender.gen.providers.structure import StructureConditionedProvider
from viewrender.gen.registry import ProviderRegistry, parse_kind
from viewrender.gen.types import OutputFormat, ProviderKind


@pytest.fixture(autouse=True)
def provider_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STABILITY_API_KEY", "sk-stability")
    monkeypatch.setenv("FAL_KEY", "fal-key")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")


class TestLoadConfig:
    def test_load_valid_config(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text("""
default_provider = "queued"
results_dir = "out"

[providers.queued]
steps = 40
""")
        config = load_config(config_file)
        assert config.default_provider is ProviderKind.QUEUED
        assert config.providers.queued is not None
        assert config.providers.queued.steps == 40
        assert config.providers.queued.output_format is OutputFormat.JPEG
        assert config.results_dir == tmp_path / "out"

    def test_missing_config_produces_helpful_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        with pytest.raises(ConfigError) as exc_info:
            load_config(config_file)

        error_msg = str(exc_info.value)
        assert "not found" in error_msg.lower()
        assert "vr init" in error_msg

    def test_invalid_toml_produces_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text("this is not valid [toml")

        with pytest.raises(ConfigError) as exc_info:
            load_config(config_file)
        assert "parse" in str(exc_info.value).lower()

    def test_unknown_default_provider_produces_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text('default_provider = "nonexistent"\n')

        with pytest.raises(ConfigError) as exc_info:
            load_config(config_file)
        assert "nonexistent" in str(exc_info.value)

    def test_default_provider_must_be_declared(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text("""
default_provider = "edit"

[providers.structure]
""")
        with pytest.raises(ConfigError) as exc_info:
            load_config(config_file)

        error_msg = str(exc_info.value)
        assert "is not configured" in error_msg
        assert "structure" in error_msg

    def test_out_of_range_value_rejected(self, tmp_path: Path) -> None:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text("""
[providers.structure]
control_strength = 1.5
""")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_file)

    def test_starter_config_loads(self, tmp_path: Path) -> None:
        path = write_starter_config(tmp_path / CONFIG_FILENAME)
        config = load_config(path)

        assert config.default_provider is ProviderKind.STRUCTURE
        assert config.providers.configured() == set(ProviderKind)
        with pytest.raises(FileExistsError):
            write_starter_config(path)

    def test_find_config_walks_up(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config(nested) == (tmp_path / CONFIG_FILENAME).resolve()


class TestProviderRegistry:
    def _registry(self, tmp_path: Path, body: str = "") -> ProviderRegistry:
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text(body)
        return ProviderRegistry.from_config_file(config_file)

    def test_every_kind_available_without_sections(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path)

        assert isinstance(registry.get_provider("structure"), StructureConditionedProvider)
        assert isinstance(registry.get_provider("queued"), QueuedGenerationProvider)
        assert isinstance(registry.get_provider(ProviderKind.EDIT), MultiReferenceEditProvider)

    def test_get_default_provider(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path)
        provider = registry.get_default_provider()

        assert provider.provider_id == "structure"
        assert provider.results_dir == registry.config.results_dir / "structure"

    def test_provider_caching(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path)
        assert registry.get_provider("edit") is registry.get_provider(ProviderKind.EDIT)

    def test_unknown_provider_lists_available(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path)
        with pytest.raises(ConfigError) as exc_info:
            registry.get_provider("midjourney")

        error_msg = str(exc_info.value)
        assert "midjourney" in error_msg
        assert "Available providers" in error_msg

    def test_undeclared_provider_rejected_when_sections_present(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path, "[providers.structure]\n")
        with pytest.raises(ConfigError, match="not configured"):
            registry.get_provider("queued")

    def test_missing_api_key_names_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FAL_KEY")
        registry = self._registry(tmp_path)
        with pytest.raises(ConfigError) as exc_info:
            registry.get_provider("queued")
        assert "FAL_KEY" in str(exc_info.value)

    def test_inline_api_key_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY")
        registry = self._registry(tmp_path, 'default_provider = "edit"\n\n[providers.edit]\napi_key = "sk-inline"\n')
        provider = registry.get_default_provider()

        assert isinstance(provider, MultiReferenceEditProvider)
        assert provider._api_key == "sk-inline"

    def test_queued_provider_gets_transfer_settings(self, tmp_path: Path) -> None:
        registry = self._registry(tmp_path, "[transfer]\nmax_attempts = 5\nattempt_timeout_seconds = 12\n")
        provider = registry.get_provider("queued")

        assert provider._transfer.max_attempts == 5
        assert provider._transfer.attempt_timeout == 12


class TestParseKind:
    def test_case_insensitive(self) -> None:
        assert parse_kind(" Structure ") is ProviderKind.STRUCTURE

    def test_unknown(self) -> None:
        with pytest.raises(ConfigError, match="Unknown provider"):
            parse_kind("dalle")
