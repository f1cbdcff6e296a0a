from __future__ import annotations

from .edit import MultiReferenceEditProvider
from .queued import QueuedGenerationProvider
from .structure import StructureConditionedProvider

__all__ = [
    "MultiReferenceEditProvider",
    "QueuedGenerationProvider",
    "StructureConditionedProvider",
]
