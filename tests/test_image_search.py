"""Unit tests for the image search provider."""

import io
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image

from dishview.config import Settings
from dishview.errors import ConfigurationError, ProviderError
from dishview.image_search import (
    SEARCH_URL,
    ImageDownloadError,
    SearchImageProvider,
    build_search_query,
    parse_search_results,
)


def _jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), (120, 80, 40)).save(buf, format="JPEG")
    return buf.getvalue()


def _response(status_code=200, json_data=None, content=b"", content_type="application/json"):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.content = content
    response.text = str(json_data)
    response.headers = {"Content-Type": content_type}
    return response


def _search_reply(*links) -> MagicMock:
    return _response(json_data={"items": [{"link": link} for link in links]})


def _image_response(content=None, content_type="image/jpeg") -> MagicMock:
    return _response(content=content if content is not None else _jpeg_bytes(), content_type=content_type)


CONFIGURED = Settings(search_api_key="test-key", search_engine_id="test-cx")


class TestBuildSearchQuery:
    def test_with_restaurant(self):
        assert (
            build_search_query("Pizza", "Luigi's")
            == "restaurant: Luigi's dish: Pizza food dish meal"
        )

    def test_without_restaurant(self):
        assert build_search_query("Pizza") == "dish: Pizza food dish meal"

    def test_blank_restaurant(self):
        assert build_search_query("Pizza", "  ") == "dish: Pizza food dish meal"


class TestParseSearchResults:
    def test_keeps_result_order(self):
        data = {"items": [{"link": "https://a/1.jpg"}, {"link": "https://b/2.jpg"}]}
        assert parse_search_results(data) == ["https://a/1.jpg", "https://b/2.jpg"]

    def test_no_items(self):
        assert parse_search_results({}) == []

    def test_skips_items_without_link(self):
        data = {"items": [{"title": "no link"}, {"link": ""}, {"link": "https://c/3.jpg"}]}
        assert parse_search_results(data) == ["https://c/3.jpg"]


class TestSearchImageUrls:
    def test_sends_image_search_parameters(self):
        http = MagicMock()
        http.get.return_value = _search_reply("https://a/1.jpg")
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.search_image_urls("dish: Pizza food dish meal") == ["https://a/1.jpg"]

        args, kwargs = http.get.call_args
        assert args[0] == SEARCH_URL
        params = kwargs["params"]
        assert params["key"] == "test-key"
        assert params["cx"] == "test-cx"
        assert params["q"] == "dish: Pizza food dish meal"
        assert params["searchType"] == "image"
        assert params["num"] == 3
        assert params["imgType"] == "photo"
        assert params["safe"] == "active"
        assert kwargs["timeout"] == 30.0

    def test_placeholder_key_fails_before_any_request(self):
        http = MagicMock()
        provider = SearchImageProvider(
            settings=Settings(search_engine_id="test-cx"), http_session=http
        )

        with pytest.raises(ConfigurationError, match="API key not configured"):
            provider.search_image_urls("dish: Pizza")

        http.get.assert_not_called()

    def test_placeholder_engine_id_fails_before_any_request(self):
        http = MagicMock()
        provider = SearchImageProvider(
            settings=Settings(search_api_key="test-key"), http_session=http
        )

        with pytest.raises(ConfigurationError, match="Engine ID not configured"):
            provider.search_image_urls("dish: Pizza")

        http.get.assert_not_called()

    def test_non_200_status_is_provider_error(self):
        http = MagicMock()
        http.get.return_value = _response(status_code=403, json_data={"error": "quota"})
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        with pytest.raises(ProviderError, match="status 403"):
            provider.search_image_urls("dish: Pizza")

    def test_network_error_is_provider_error(self):
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("unreachable")
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        with pytest.raises(ProviderError, match="request failed"):
            provider.search_image_urls("dish: Pizza")


class TestDownloadImage:
    def test_returns_verified_image_bytes(self):
        data = _jpeg_bytes()
        http = MagicMock()
        http.get.return_value = _image_response(data)
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.download_image("https://a/1.jpg") == data
        assert http.get.call_args[1]["timeout"] == 15.0

    def test_rejects_non_image_content_type(self):
        http = MagicMock()
        http.get.return_value = _image_response(content_type="text/html")
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        with pytest.raises(ImageDownloadError, match="Unexpected content type"):
            provider.download_image("https://a/page.html")

    def test_rejects_undecodable_bytes(self):
        http = MagicMock()
        http.get.return_value = _image_response(content=b"<html>not an image</html>")
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        with pytest.raises(ImageDownloadError, match="Invalid image data"):
            provider.download_image("https://a/1.jpg")

    def test_rejects_error_status(self):
        http = MagicMock()
        http.get.return_value = _response(status_code=404)
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        with pytest.raises(ImageDownloadError, match="status 404"):
            provider.download_image("https://a/missing.jpg")


class TestProvideImage:
    def test_falls_through_to_next_candidate(self):
        data = _jpeg_bytes()
        http = MagicMock()
        http.get.side_effect = [
            _search_reply("https://a/page.html", "https://b/broken.jpg", "https://c/good.jpg"),
            _image_response(content_type="text/html"),
            requests.Timeout("slow"),
            _image_response(data),
        ]
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.provide_image("Pizza", "Luigi's") == data
        assert http.get.call_count == 4
        assert http.get.call_args_list[0][1]["params"]["q"] == (
            "restaurant: Luigi's dish: Pizza food dish meal"
        )

    def test_stops_at_first_good_candidate(self):
        http = MagicMock()
        http.get.side_effect = [
            _search_reply("https://a/1.jpg", "https://b/2.jpg"),
            _image_response(),
        ]
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.provide_image("Pizza") is not None
        assert http.get.call_count == 2

    def test_returns_none_when_no_candidate_works(self):
        http = MagicMock()
        http.get.side_effect = [
            _search_reply("https://a/1.jpg"),
            _image_response(content=b"garbage"),
        ]
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.provide_image("Pizza") is None

    def test_returns_none_without_results(self):
        http = MagicMock()
        http.get.return_value = _response(json_data={})
        provider = SearchImageProvider(settings=CONFIGURED, http_session=http)

        assert provider.provide_image("Pizza") is None
