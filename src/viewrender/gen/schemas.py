from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .types import JobStatus


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ImageRef(_Response):
    url: Optional[str] = None
    content_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class QueueSubmitResponse(_Response):
    images: Optional[list[ImageRef]] = None
    request_id: Optional[str] = None

    def first_image_url(self) -> Optional[str]:
        return self.images[0].url if self.images else None


class QueueStatusResponse(_Response):
    status: JobStatus
    error: Optional[str] = None

    @field_validator("error", mode="before")
    @classmethod
    def error_as_text(cls, v: Any) -> Optional[str]:
        # Failures may carry a structured error object; keep it as raw JSON text.
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v, ensure_ascii=False)


class QueueResultResponse(_Response):
    images: Optional[list[ImageRef]] = None

    def first_image_url(self) -> Optional[str]:
        return self.images[0].url if self.images else None


class EditDatum(_Response):
    b64_json: Optional[str] = None


class EditResponse(_Response):
    data: list[EditDatum] = []
