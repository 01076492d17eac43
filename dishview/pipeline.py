"""Pipeline orchestrator - photos -> cached extraction -> dish list -> image enrichment."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from dishview.cache import ExtractionCache
from dishview.enrich import BatchImageEnricher, EnrichmentSummary
from dishview.errors import ConfigurationError, EmptyInput, ExtractionError
from dishview.llm import extract_menu_data
from dishview.models import JobStatus, MenuExtractionResult, WorkflowStage
from dishview.providers import DishImageProvider, build_image_provider
from dishview.session import SessionState

logger = logging.getLogger(__name__)

Extractor = Callable[[Sequence[bytes]], MenuExtractionResult]


@dataclass
class ExtractionOutcome:
    status: JobStatus
    result: MenuExtractionResult = field(default_factory=MenuExtractionResult.empty)
    from_cache: bool = False
    error_message: Optional[str] = None


class MenuPipeline:
    """
    Connects the session to the extraction and enrichment stages.

    Extraction failures are recorded on the session for the UI's retry action
    instead of being raised; per-dish image failures only flag that dish.
    """

    def __init__(
        self,
        session: SessionState,
        extractor: Extractor = extract_menu_data,
        provider: Optional[DishImageProvider] = None,
        cache: Optional[ExtractionCache] = None,
        enricher: Optional[BatchImageEnricher] = None,
    ):
        self.session = session
        self.cache = cache or ExtractionCache()
        self._extractor = extractor
        self._provider = provider
        self._enricher = enricher
        self._cancel_event: Optional[threading.Event] = None
        self._session_generation = session.generation

    def _get_enricher(self) -> BatchImageEnricher:
        if self._enricher is None:
            if self._provider is None:
                self._provider = build_image_provider()
            self._enricher = BatchImageEnricher(self._provider)
        return self._enricher

    def _sync_with_session(self) -> None:
        # A session reset discards everything cached for the old photos
        if self.session.generation != self._session_generation:
            self.cache.invalidate()
            self._session_generation = self.session.generation

    def run_extraction(self, force: bool = False) -> ExtractionOutcome:
        """
        Extracts restaurant and dishes from the session's photos, reusing the
        cached result when the photos have not changed.
        """
        self._sync_with_session()
        images = list(self.session.captured_images)
        if not images:
            return self._extraction_failed(EmptyInput("No menu images captured"))

        if self.session.stage == WorkflowStage.CAPTURING:
            self.session.advance()
        previous = self.cache.cached

        try:
            fingerprint, result = self.cache.get_or_extract(
                images, self._extractor, force=force
            )
        except (ExtractionError, ConfigurationError) as e:
            return self._extraction_failed(e)

        from_cache = self.cache.cached is previous
        if not from_cache or self.session.last_extraction is None:
            self.session.set_extraction(fingerprint, result)

        logger.info(
            "Extraction %s: restaurant=%r dishes=%d",
            "reused from cache" if from_cache else "completed",
            result.restaurant_name,
            len(result.dishes),
        )
        return ExtractionOutcome(
            status=JobStatus.COMPLETED, result=result, from_cache=from_cache
        )

    def _extraction_failed(self, error: Exception) -> ExtractionOutcome:
        logger.error("Menu extraction failed: %s", error)
        message = f"Failed to extract menu data: {error}"
        self.session.set_error(message)
        return ExtractionOutcome(status=JobStatus.FAILED, error_message=message)

    def reextract(self) -> ExtractionOutcome:
        """Explicit user request to extract again, bypassing the cache."""
        return self.run_extraction(force=True)

    def enter_display(
        self,
        on_complete: Optional[Callable[[], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EnrichmentSummary:
        """
        Moves the session to the dish grid and fetches images for the dishes
        that have none yet. Images fetched on an earlier visit are kept.
        """
        if self.session.stage != WorkflowStage.DISPLAYING:
            self.session.advance()
        missing = [
            dish
            for dish in self.session.dishes
            if dish.image is None and not dish.is_image_loading
        ]
        return self._run_enrichment(
            missing, on_complete=on_complete, cancel_event=cancel_event
        )

    def retry_dish_image(self, dish_id: str) -> Optional[EnrichmentSummary]:
        """Manual retry of one dish's image. Returns None if the dish is gone."""
        dish = self.session.find_dish(dish_id)
        if dish is None:
            logger.info("Cannot retry image for unknown dish %s", dish_id)
            return None
        return self._run_enrichment([dish])

    def cancel(self) -> None:
        """Best-effort cancellation of the running enrichment."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    def _run_enrichment(
        self,
        dishes: list,
        on_complete: Optional[Callable[[], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EnrichmentSummary:
        self._cancel_event = cancel_event or threading.Event()
        summary = self._get_enricher().enrich(
            dishes,
            self.session.restaurant_name,
            on_dish_updated=self.session.dish_updater(),
            on_complete=on_complete or (lambda: None),
            cancel_event=self._cancel_event,
        )
        logger.info(
            "Enrichment finished with status %s (%d ok, %d failed)",
            summary.status.value,
            summary.succeeded,
            summary.failed,
        )
        return summary
