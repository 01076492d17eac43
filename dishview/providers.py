"""Dish image providers - one capability, two interchangeable strategies."""

from __future__ import annotations

from typing import Optional, Protocol

from dishview.config import Settings


class DishImageProvider(Protocol):
    def provide_image(
        self, dish_name: str, restaurant_name: Optional[str] = None
    ) -> Optional[bytes]:
        """Returns image bytes for the dish, None if nothing suitable was found."""
        ...


def build_image_provider(settings: Optional[Settings] = None) -> DishImageProvider:
    """Selects the image strategy named by IMAGE_PROVIDER ("generation" or "search")."""
    if settings is None:
        settings = Settings.from_env()

    kind = settings.image_provider.strip().lower()
    if kind == "generation":
        from dishview.image_gen import GenerationImageProvider

        return GenerationImageProvider(settings=settings)
    if kind == "search":
        from dishview.image_search import SearchImageProvider

        return SearchImageProvider(settings=settings)

    raise ValueError(f"Unsupported image provider: {settings.image_provider}")
