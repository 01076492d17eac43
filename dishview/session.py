"""Session state - the single owner of the workflow stage, photos and dish list."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from dishview.models import (
    Dish,
    ImageSetFingerprint,
    MenuExtractionResult,
    WorkflowStage,
)

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a workflow step is not allowed from the current stage."""


class EventKind(Enum):
    STAGE_CHANGED = "stage_changed"
    IMAGES_CHANGED = "images_changed"
    RESTAURANT_CHANGED = "restaurant_changed"
    EXTRACTION_SET = "extraction_set"
    DISHES_CHANGED = "dishes_changed"
    DISH_UPDATED = "dish_updated"
    ERROR_CHANGED = "error_changed"
    RESET = "reset"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    dish_id: Optional[str] = None


Listener = Callable[[SessionEvent], None]

_NEXT_STAGE = {
    WorkflowStage.CAPTURING: WorkflowStage.EXTRACTING,
    WorkflowStage.EXTRACTING: WorkflowStage.DISPLAYING,
}
_PREVIOUS_STAGE = {
    WorkflowStage.EXTRACTING: WorkflowStage.CAPTURING,
    WorkflowStage.DISPLAYING: WorkflowStage.EXTRACTING,
}


class SessionState:
    """
    In-memory state for one menu session.

    All changes go through the methods below; each one notifies subscribers
    with a SessionEvent. The dish list is guarded by a lock so updates coming
    from a worker thread stay consistent.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self.stage = WorkflowStage.CAPTURING
        self.captured_images: list[bytes] = []
        self.restaurant_name: Optional[str] = None
        self.last_extraction: Optional[tuple[ImageSetFingerprint, MenuExtractionResult]] = None
        self.dishes: list[Dish] = []
        self.error_message: Optional[str] = None
        self.generation = 0

    # --- Observers ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: EventKind, dish_id: Optional[str] = None) -> None:
        event = SessionEvent(kind=kind, dish_id=dish_id)
        for listener in list(self._listeners):
            listener(event)

    # --- Workflow ---

    def advance(self) -> WorkflowStage:
        if self.stage not in _NEXT_STAGE:
            raise InvalidTransition(f"Cannot advance from {self.stage.value}")
        if self.stage == WorkflowStage.CAPTURING and not self.captured_images:
            raise InvalidTransition("Capture at least one menu image before continuing")
        self.stage = _NEXT_STAGE[self.stage]
        logger.info("Session advanced to %s", self.stage.value)
        self._notify(EventKind.STAGE_CHANGED)
        return self.stage

    def back(self) -> WorkflowStage:
        if self.stage not in _PREVIOUS_STAGE:
            raise InvalidTransition(f"Cannot go back from {self.stage.value}")
        self.stage = _PREVIOUS_STAGE[self.stage]
        self._notify(EventKind.STAGE_CHANGED)
        return self.stage

    def reset(self) -> None:
        """Returns to capturing and clears everything gathered in this session."""
        with self._lock:
            self.stage = WorkflowStage.CAPTURING
            self.captured_images = []
            self.restaurant_name = None
            self.last_extraction = None
            self.dishes = []
            self.error_message = None
            self.generation += 1
        logger.info("Session reset (generation %d)", self.generation)
        self._notify(EventKind.RESET)

    # --- Images ---

    def add_image(self, image: bytes) -> None:
        self.captured_images.append(image)
        self._notify(EventKind.IMAGES_CHANGED)

    def remove_image(self, index: int) -> None:
        if not 0 <= index < len(self.captured_images):
            return
        del self.captured_images[index]
        self._notify(EventKind.IMAGES_CHANGED)

    # --- Extraction result ---

    def set_restaurant_name(self, name: Optional[str]) -> None:
        self.restaurant_name = name.strip() if name and name.strip() else None
        self._notify(EventKind.RESTAURANT_CHANGED)

    def set_extraction(
        self, fingerprint: ImageSetFingerprint, result: MenuExtractionResult
    ) -> None:
        """Stores the extraction and replaces the working dish list with its dishes."""
        with self._lock:
            self.last_extraction = (fingerprint, result)
            self.restaurant_name = result.restaurant_name
            self.dishes = list(result.dishes)
            self.error_message = None
        self._notify(EventKind.EXTRACTION_SET)

    def set_error(self, message: Optional[str]) -> None:
        self.error_message = message
        self._notify(EventKind.ERROR_CHANGED)

    # --- Dishes ---

    def add_dish(self, dish: Dish) -> None:
        with self._lock:
            self.dishes.append(dish)
        self._notify(EventKind.DISHES_CHANGED, dish.id)

    def remove_dish(self, dish_id: str) -> bool:
        with self._lock:
            index = self._index_of(dish_id)
            if index is None:
                return False
            del self.dishes[index]
        self._notify(EventKind.DISHES_CHANGED, dish_id)
        return True

    def find_dish(self, dish_id: str) -> Optional[Dish]:
        with self._lock:
            index = self._index_of(dish_id)
            return self.dishes[index] if index is not None else None

    def update_dish(self, dish: Dish) -> bool:
        """
        Replaces the dish with the same id. Returns False, changing nothing,
        when that dish is no longer in the session.
        """
        with self._lock:
            index = self._index_of(dish.id)
            if index is None:
                logger.info("Dropping update for dish %s no longer in session", dish.id)
                return False
            self.dishes[index] = dish
        self._notify(EventKind.DISH_UPDATED, dish.id)
        return True

    def dish_updater(self) -> Callable[[Dish], None]:
        """
        Returns an update callback bound to the current session generation.
        Updates delivered after a reset are discarded.
        """
        generation = self.generation

        def apply(dish: Dish) -> None:
            if self.generation != generation:
                logger.info("Discarding stale update for dish %s", dish.id)
                return
            self.update_dish(dish)

        return apply

    def _index_of(self, dish_id: str) -> Optional[int]:
        for index, dish in enumerate(self.dishes):
            if dish.id == dish_id:
                return index
        return None

    # --- Display helpers ---

    def sections(self) -> list[str]:
        """Sorted, de-duplicated section names of the current dishes."""
        with self._lock:
            return sorted({dish.section for dish in self.dishes if dish.section})

    def filter_dishes(
        self, search_text: str = "", section: Optional[str] = None
    ) -> list[Dish]:
        """Dishes whose name contains search_text (case-insensitive), optionally in one section."""
        needle = search_text.strip().casefold()
        with self._lock:
            dishes = list(self.dishes)
        if needle:
            dishes = [d for d in dishes if needle in d.name.casefold()]
        if section is not None:
            dishes = [d for d in dishes if d.section == section]
        return dishes
