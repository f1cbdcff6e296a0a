from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError

from .errors import ImageIOError
from .types import ConditionedImage, ConditioningConstraints

logger = logging.getLogger(__name__)


def read_dimensions(path: Path) -> tuple[int, int]:
    """Return ``(width, height)`` of an image file.

    Raises:
        ImageIOError: If the file is missing or not a decodable image.
    """
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, UnidentifiedImageError) as e:
        raise ImageIOError(path, str(e)) from e


def _derived_path(path: Path, tag: str) -> Path:
    return path.with_name(f"{path.stem}_{tag}{path.suffix}")


class ImageConditioner:
    """Bring a captured image inside a provider's geometric envelope.

    Aspect ratio is fixed first with a centered crop, then the pixel count is
    reduced with a uniform Lanczos downscale. The caller's source file is
    never overwritten; corrections land in derived files next to it.
    """

    def __init__(self, on_status: Optional[Callable[[str], None]] = None):
        self._on_status = on_status

    def condition(self, image_path: Path, constraints: ConditioningConstraints) -> ConditionedImage:
        """Condition ``image_path``; on I/O failure fall back to the original path."""
        image_path = Path(image_path)
        try:
            return self.condition_or_raise(image_path, constraints)
        except ImageIOError as e:
            logger.warning("Image conditioning failed, submitting original: %s", e)
            self._report(f"Could not prepare image ({e}); using the original.")
            return ConditionedImage(source_path=image_path, path=image_path, width=0, height=0, error=e)

    def condition_or_raise(self, image_path: Path, constraints: ConditioningConstraints) -> ConditionedImage:
        image_path = Path(image_path)
        result = ConditionedImage(source_path=image_path, path=image_path, width=0, height=0)
        try:
            with Image.open(image_path) as opened:
                img = opened.copy()
                fmt = opened.format
        except (OSError, UnidentifiedImageError) as e:
            raise ImageIOError(image_path, str(e)) from e

        width, height = img.size
        if width <= 0 or height <= 0:
            raise ImageIOError(image_path, f"invalid dimensions {width}x{height}")

        ratio = width / height
        if ratio > constraints.max_aspect or ratio < constraints.min_aspect:
            img = self._crop_to_ratio(img, constraints)
            result.path = _derived_path(image_path, "corrected")
            self._save(img, result.path, fmt)
            new_w, new_h = img.size
            self._note(
                result,
                f"Corrected aspect ratio from {width}x{height} ({ratio:.2f}) "
                f"to {new_w}x{new_h} ({new_w / new_h:.2f})",
            )

        cur_w, cur_h = img.size
        pixels = cur_w * cur_h
        if pixels > constraints.max_pixel_count:
            scale = math.sqrt(constraints.max_pixel_count / pixels)
            new_w = max(1, int(cur_w * scale))
            new_h = max(1, int(cur_h * scale))
            img = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
            if not result.changed:
                result.path = _derived_path(image_path, "resized")
            self._save(img, result.path, fmt)
            self._note(
                result,
                f"Image too large ({pixels} pixels). Resized to {new_w}x{new_h} ({new_w * new_h} pixels)",
            )

        result.width, result.height = img.size
        return result

    @staticmethod
    def _crop_to_ratio(img: Image.Image, constraints: ConditioningConstraints) -> Image.Image:
        width, height = img.size
        ratio = width / height
        new_w, new_h = width, height
        if ratio > constraints.max_aspect:
            new_w = max(1, round(height * constraints.max_aspect))
        else:
            new_h = max(1, round(width / constraints.min_aspect))
        left = (width - new_w) // 2
        top = (height - new_h) // 2
        return img.crop((left, top, left + new_w, top + new_h))

    @staticmethod
    def _save(img: Image.Image, path: Path, fmt: Optional[str]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            img.save(path, format=fmt)
        except (OSError, ValueError) as e:
            raise ImageIOError(path, str(e)) from e

    def _note(self, result: ConditionedImage, message: str) -> None:
        logger.info(message)
        result.messages.append(message)
        self._report(message)

    def _report(self, message: str) -> None:
        if self._on_status is not None:
            self._on_status(message)
