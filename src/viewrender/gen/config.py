from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import OutputFormat, ProviderKind

CONFIG_FILENAME = "viewrender.toml"
DEFAULT_RESULTS_DIR = Path.home() / ".viewrender" / "results"
DEFAULT_PROMPT = "photorealistic rendering, high quality, architectural visualization"


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    api_key_env: str
    api_key: Optional[str] = None
    endpoint: str
    connectivity_url: str
    output_format: OutputFormat

    def resolve_api_key(self) -> Optional[str]:
        return self.api_key or os.getenv(self.api_key_env) or None


class StructureProviderConfig(ProviderConfig):
    api_key_env: str = "STABILITY_API_KEY"
    endpoint: str = "https://api.stability.ai/v2beta/stable-image/control/structure"
    connectivity_url: str = "https://api.stability.ai/v1/user/account"
    output_format: OutputFormat = OutputFormat.WEBP
    control_strength: float = Field(0.7, ge=0.0, le=1.0)
    style_preset: Optional[str] = None


class QueuedProviderConfig(ProviderConfig):
    api_key_env: str = "FAL_KEY"
    endpoint: str = "https://queue.fal.run/fal-ai/flux-control-lora-canny"
    connectivity_url: str = "https://fal.ai"
    output_format: OutputFormat = OutputFormat.JPEG
    strength: float = Field(0.85, ge=0.0, le=1.0)
    steps: int = Field(28, ge=1)
    guidance_scale: float = 3.5
    control_lora_strength: float = 1.0
    poll_rounds: int = Field(20, ge=1)
    max_poll_delay: float = Field(30.0, gt=0)


class EditProviderConfig(ProviderConfig):
    api_key_env: str = "OPENAI_API_KEY"
    endpoint: str = "https://api.openai.com/v1/images/edits"
    connectivity_url: str = "https://api.openai.com/v1/models"
    output_format: OutputFormat = OutputFormat.PNG
    model: str = "gpt-image-1"


_DEFAULT_SECTIONS = {
    ProviderKind.STRUCTURE: StructureProviderConfig,
    ProviderKind.QUEUED: QueuedProviderConfig,
    ProviderKind.EDIT: EditProviderConfig,
}


class ProvidersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    structure: Optional[StructureProviderConfig] = None
    queued: Optional[QueuedProviderConfig] = None
    edit: Optional[EditProviderConfig] = None

    def configured(self) -> set[ProviderKind]:
        return {kind for kind in ProviderKind if getattr(self, kind.value) is not None}

    def available(self) -> set[ProviderKind]:
        """Declared sections narrow the choice; with none declared every kind runs on defaults."""
        return self.configured() or set(ProviderKind)

    def get(self, kind: ProviderKind) -> Optional[ProviderConfig]:
        if kind not in self.available():
            return None
        section = getattr(self, kind.value)
        if section is None:
            section = _DEFAULT_SECTIONS[kind]()
        return section


class TransferConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_attempts: int = Field(3, ge=1)
    attempt_timeout_seconds: float = Field(30.0, gt=0)


class VRConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_provider: ProviderKind = ProviderKind.STRUCTURE
    default_prompt: str = DEFAULT_PROMPT
    results_dir: Path = DEFAULT_RESULTS_DIR
    timeout_seconds: float = Field(300.0, gt=0)
    verbose_logging: bool = False
    log_file: Optional[Path] = None
    transfer: TransferConfig = TransferConfig()
    providers: ProvidersConfig = ProvidersConfig()

    @field_validator("default_prompt")
    @classmethod
    def validate_default_prompt(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("default_prompt cannot be empty")
        return v

    @model_validator(mode="after")
    def check_default_provider_exists(self) -> "VRConfig":
        configured = self.providers.configured()
        if configured and self.default_provider not in configured:
            raise ValueError(
                f"default_provider '{self.default_provider.value}' is not configured. "
                f"Available providers: {sorted(k.value for k in configured)}"
            )
        return self


class ConfigError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path:
            loc = f"{path}"
            if line:
                loc += f":{line}"
            message = f"{loc}: {message}"
        super().__init__(message)


def load_config(config_path: Path) -> VRConfig:
    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {config_path}\n"
            f"Run 'vr init' to create a starter {CONFIG_FILENAME}",
            path=config_path,
        )

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore

    try:
        text = config_path.read_text(encoding="utf-8")
        data = tomllib.loads(text)
    except Exception as e:
        raise ConfigError(f"Failed to parse TOML: {e}", path=config_path) from e

    try:
        config = VRConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}", path=config_path) from e

    if not config.results_dir.is_absolute():
        config = config.model_copy(update={"results_dir": config_path.parent / config.results_dir})
    return config


def find_config(start_dir: Optional[Path] = None) -> Path:
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        current = current.parent

    return start_dir / CONFIG_FILENAME


STARTER_CONFIG = f"""\
default_provider = "structure"
default_prompt = "{DEFAULT_PROMPT}"
results_dir = "results"
timeout_seconds = 300
verbose_logging = false

[transfer]
max_attempts = 3
attempt_timeout_seconds = 30

[providers.structure]
api_key_env = "STABILITY_API_KEY"
control_strength = 0.7
output_format = "webp"

[providers.queued]
api_key_env = "FAL_KEY"
strength = 0.85
steps = 28
guidance_scale = 3.5
control_lora_strength = 1.0
output_format = "jpeg"

[providers.edit]
api_key_env = "OPENAI_API_KEY"
model = "gpt-image-1"
"""


def write_starter_config(path: Path, force: bool = False) -> Path:
    if path.exists() and not force:
        raise FileExistsError(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(STARTER_CONFIG, encoding="utf-8")
    return path
