from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from .errors import ImageIOError


class ProviderKind(str, Enum):
    STRUCTURE = "structure"
    QUEUED = "queued"
    EDIT = "edit"


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"

    @property
    def extension(self) -> str:
        return ".jpg" if self is OutputFormat.JPEG else f".{self.value}"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


Number = Union[int, float]


@dataclass(frozen=True)
class GenerationRequest:
    source_image_path: Path
    prompt: str
    reference_image_paths: tuple[Path, ...] = ()
    negative_prompt: Optional[str] = None
    params: dict[str, Number] = field(default_factory=dict)
    output_format: Optional[OutputFormat] = None
    style_preset: Optional[str] = None
    model: Optional[str] = None

    def with_source(self, path: Path) -> "GenerationRequest":
        return dataclasses.replace(self, source_image_path=Path(path))

    def param(self, name: str, default: Number) -> Number:
        value = self.params.get(name)
        return default if value is None else value


@dataclass(frozen=True)
class ConditioningConstraints:
    min_aspect: float
    max_aspect: float
    max_pixel_count: int


# Bounds enforced by the structure-control endpoint (1:2.5 .. 2.5:1, ~9.4 MP).
STRUCTURE_CONSTRAINTS = ConditioningConstraints(
    min_aspect=0.4,
    max_aspect=2.5,
    max_pixel_count=9_437_184,
)


@dataclass
class ConditionedImage:
    source_path: Path
    path: Path
    width: int
    height: int
    messages: list[str] = field(default_factory=list)
    error: Optional["ImageIOError"] = None

    @property
    def changed(self) -> bool:
        return self.path != self.source_path


@dataclass
class TransferJob:
    remote_locator: str
    destination_path: Path
    attempts_allowed: int
    strategy: str
    current_attempt: int = 0
    backoff_delay: float = 0.0


@dataclass
class PollableJob:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    result_locator: Optional[str] = None
    rounds: int = 0


def mask_credential(key: Optional[str]) -> str:
    if not key:
        return "<none>"
    return f"{key[:4]}****"
