from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from PIL import Image


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, width: int, height: int, color: str = "gray") -> Path:
        path = tmp_path / name
        Image.new("RGB", (width, height), color).save(path)
        return path

    return _make
