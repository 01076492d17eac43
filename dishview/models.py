"""Data models for DishView: Dish, MenuExtractionResult, ImageSetFingerprint, stages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class JobStatus(Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"  # Some dishes failed but others succeeded


class WorkflowStage(Enum):
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    DISPLAYING = "displaying"


def _new_dish_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Dish:
    name: str
    section: Optional[str] = None
    price: Optional[str] = None
    description: Optional[str] = None
    image: Optional[bytes] = field(default=None, repr=False)
    is_image_loading: bool = False
    image_load_error: bool = False
    id: str = field(default_factory=_new_dish_id)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Dish name must be a non-empty string")
        self.name = self.name.strip()

    @property
    def is_resting(self) -> bool:
        """True once no fetch is in flight and exactly one of image/error is set."""
        if self.is_image_loading:
            return False
        return (self.image is not None) != self.image_load_error

    def loading(self) -> Dish:
        """Copy of this dish with a fetch in flight and any previous result cleared."""
        return replace(self, image=None, is_image_loading=True, image_load_error=False)

    def resolved(self, image: Optional[bytes]) -> Dish:
        """Copy of this dish in its resting state for the given fetch result."""
        return replace(
            self,
            image=image,
            is_image_loading=False,
            image_load_error=image is None,
        )


@dataclass
class MenuExtractionResult:
    restaurant_name: Optional[str] = None
    dishes: list[Dish] = field(default_factory=list)

    @classmethod
    def empty(cls) -> MenuExtractionResult:
        return cls(restaurant_name=None, dishes=[])


@dataclass(frozen=True)
class ImageSetFingerprint:
    count: int
    content_digests: tuple[str, ...] = ()
