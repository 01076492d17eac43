"""Image search module - finds a real photo of a dish with the Google Custom Search API."""

from __future__ import annotations

import io
import logging
from typing import Optional

import requests
from PIL import Image

from dishview.config import Settings
from dishview.errors import ProviderError

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
SEARCH_RESULT_COUNT = 3
SEARCH_TIMEOUT = 30.0  # seconds
DOWNLOAD_TIMEOUT = 15.0  # seconds


class ImageDownloadError(ProviderError):
    """Raised when a candidate URL does not yield a valid image."""


def build_search_query(dish_name: str, restaurant_name: Optional[str] = None) -> str:
    if restaurant_name and restaurant_name.strip():
        query = f"restaurant: {restaurant_name.strip()} dish: {dish_name}"
    else:
        query = f"dish: {dish_name}"
    # Food keywords steer the search towards plated dishes
    return query + " food dish meal"


def parse_search_results(data: dict) -> list[str]:
    """Returns the candidate image links from a Custom Search JSON reply, in order."""
    items = data.get("items") or []
    return [
        item["link"]
        for item in items
        if isinstance(item, dict) and isinstance(item.get("link"), str) and item["link"]
    ]


class SearchImageProvider:
    """Search strategy: downloads the first usable photo from image search results."""

    def __init__(self, settings: Optional[Settings] = None, http_session=None):
        self._settings = settings or Settings.from_env()
        self._http = http_session or requests.Session()

    def search_image_urls(self, query: str) -> list[str]:
        """
        Calls the Custom Search API in image mode.
        Raises: ConfigurationError without credentials, ProviderError on API failure.
        """
        self._settings.require_search_credentials()

        params = {
            "key": self._settings.search_api_key,
            "cx": self._settings.search_engine_id,
            "q": query,
            "searchType": "image",
            "num": SEARCH_RESULT_COUNT,
            "imgSize": "medium",
            "imgType": "photo",
            "safe": "active",
        }

        logger.info("Searching images for %r", query)
        try:
            response = self._http.get(SEARCH_URL, params=params, timeout=SEARCH_TIMEOUT)
        except requests.RequestException as e:
            raise ProviderError(f"Image search request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(
                f"Image search failed with status {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Failed to parse image search response: {e}") from e

        urls = parse_search_results(data)
        logger.info("Found %d image URLs", len(urls))
        return urls

    def download_image(self, url: str) -> bytes:
        """
        Downloads one candidate and checks it really is an image.
        Raises: ImageDownloadError.
        """
        try:
            response = self._http.get(url, timeout=DOWNLOAD_TIMEOUT)
        except requests.RequestException as e:
            raise ImageDownloadError(f"Download failed for {url}: {e}") from e

        if response.status_code != 200:
            raise ImageDownloadError(
                f"Image download failed with status {response.status_code}"
            )

        content_type = response.headers.get("Content-Type", "")
        if not content_type.startswith("image/"):
            raise ImageDownloadError(f"Unexpected content type {content_type!r} for {url}")

        try:
            Image.open(io.BytesIO(response.content)).verify()
        except Exception as e:
            raise ImageDownloadError(f"Invalid image data from {url}: {e}") from e

        return response.content

    def provide_image(
        self, dish_name: str, restaurant_name: Optional[str] = None
    ) -> Optional[bytes]:
        query = build_search_query(dish_name, restaurant_name)
        for url in self.search_image_urls(query):
            try:
                return self.download_image(url)
            except ImageDownloadError as e:
                logger.info("Skipping candidate for %r: %s", dish_name, e)

        logger.warning("No downloadable image found for %r", dish_name)
        return None
