"""Batch image enrichment - attaches an image to every dish with bounded concurrency."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from dishview.config import IMAGE_GEN_WORKERS, IMAGE_PACING_DELAY
from dishview.models import Dish, JobStatus
from dishview.providers import DishImageProvider

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentSummary:
    total: int
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def status(self) -> JobStatus:
        if self.cancelled:
            return JobStatus.FAILED if self.succeeded == 0 else JobStatus.PARTIAL
        if self.failed == 0:
            return JobStatus.COMPLETED
        return JobStatus.PARTIAL if self.succeeded else JobStatus.FAILED


class BatchImageEnricher:
    """
    Drives a DishImageProvider over a list of dishes.

    At most ``max_concurrency`` provider calls run at once on worker threads.
    Every callback runs on the thread that called :meth:`enrich`, so the
    caller's dish list is only ever touched from one thread. Each dish is
    emitted once as loading (when its job is submitted) and once resolved.
    ``max_concurrency=1`` with a ``pacing_delay`` processes dishes one at a
    time in order, pausing between them.
    """

    def __init__(
        self,
        provider: DishImageProvider,
        max_concurrency: int = IMAGE_GEN_WORKERS,
        pacing_delay: float = IMAGE_PACING_DELAY,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._provider = provider
        self._max_concurrency = max_concurrency
        self._pacing_delay = pacing_delay

    def _fetch(self, dish: Dish, restaurant_name: Optional[str]) -> Optional[bytes]:
        """Runs on a worker thread. Any provider error is isolated to this dish."""
        try:
            return self._provider.provide_image(dish.name, restaurant_name)
        except Exception as e:
            logger.error("Image fetch failed for %r (ID: %s): %s", dish.name, dish.id, e)
            return None

    def enrich(
        self,
        dishes: Sequence[Dish],
        restaurant_name: Optional[str],
        on_dish_updated: Callable[[Dish], None],
        on_complete: Callable[[], None],
        cancel_event: Optional[threading.Event] = None,
    ) -> EnrichmentSummary:
        """
        Fetches an image for every dish and reports progress through the callbacks.

        on_complete fires exactly once, after every dish has been resolved. If
        cancel_event is set mid-run, pending work is dropped, late results are
        discarded and on_complete is not called. Dishes already emitted as
        loading are emitted again as they were before the run.
        """
        summary = EnrichmentSummary(total=len(dishes))
        logger.info(
            "Starting image enrichment for %d dishes (concurrency %d)",
            len(dishes),
            self._max_concurrency,
        )

        pending: dict[Future, Dish] = {}
        originals: dict[str, Dish] = {}
        queue = list(dishes)

        executor = ThreadPoolExecutor(max_workers=self._max_concurrency)
        try:
            while queue or pending:
                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    for future, dish in pending.items():
                        future.cancel()
                        on_dish_updated(originals[dish.id])
                    logger.info(
                        "Image enrichment cancelled with %d dishes unresolved",
                        len(pending) + len(queue),
                    )
                    break

                while queue and len(pending) < self._max_concurrency:
                    if self._pacing_delay and summary.succeeded + summary.failed + len(pending) > 0:
                        time.sleep(self._pacing_delay)
                    dish = queue.pop(0)
                    originals[dish.id] = dish
                    loading = dish.loading()
                    on_dish_updated(loading)
                    pending[executor.submit(self._fetch, loading, restaurant_name)] = loading

                done, _ = wait(pending, timeout=0.5, return_when=FIRST_COMPLETED)
                for future in done:
                    dish = pending.pop(future)
                    image = future.result()
                    if cancel_event is not None and cancel_event.is_set():
                        # Result arrived after cancellation, discard it
                        on_dish_updated(originals[dish.id])
                        continue
                    if image is not None:
                        summary.succeeded += 1
                        logger.info("Got image for %r (ID: %s)", dish.name, dish.id)
                    else:
                        summary.failed += 1
                    on_dish_updated(dish.resolved(image))
        finally:
            # In-flight calls are abandoned on cancellation rather than awaited
            executor.shutdown(wait=not summary.cancelled, cancel_futures=True)

        if summary.cancelled:
            return summary

        logger.info(
            "Image enrichment completed: %d/%d dishes have images",
            summary.succeeded,
            summary.total,
        )
        on_complete()
        return summary
