"""Unit tests for the pipeline orchestrator."""

import io
import json
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from PIL import Image

from dishview.errors import ConfigurationError, TransportFailure
from dishview.llm import extract_menu_data
from dishview.models import Dish, JobStatus, MenuExtractionResult, WorkflowStage
from dishview.pipeline import MenuPipeline
from dishview.session import SessionState


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (10, 200, 10)).save(buf, format="PNG")
    return buf.getvalue()


class FakeProvider:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def provide_image(self, dish_name, restaurant_name=None):
        self.calls.append((dish_name, restaurant_name))
        if dish_name in self.failing:
            return None
        return f"img:{dish_name}".encode()


def _luigis() -> MenuExtractionResult:
    return MenuExtractionResult(
        restaurant_name="Luigi's",
        dishes=[
            Dish(name="Margherita Pizza", section="Mains", price="$18"),
            Dish(name="Tiramisu", section="Desserts", price="$9"),
        ],
    )


@pytest.fixture
def session():
    state = SessionState()
    state.add_image(b"menu-photo-1")
    return state


@pytest.fixture
def extractor():
    return MagicMock(return_value=_luigis())


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class TestRunExtraction:
    def test_extracts_and_fills_session(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.COMPLETED
        assert not outcome.from_cache
        assert session.stage == WorkflowStage.EXTRACTING
        assert session.restaurant_name == "Luigi's"
        assert [d.name for d in session.dishes] == ["Margherita Pizza", "Tiramisu"]
        extractor.assert_called_once_with([b"menu-photo-1"])

    def test_unchanged_photos_reuse_cached_result(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        first = pipeline.run_extraction()
        session.advance()
        session.back()
        session.back()
        second = pipeline.run_extraction()

        assert extractor.call_count == 1
        assert second.from_cache
        assert second.result is first.result

    def test_changed_photos_extract_again(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        pipeline.run_extraction()
        session.back()
        session.add_image(b"menu-photo-2")
        outcome = pipeline.run_extraction()

        assert extractor.call_count == 2
        assert not outcome.from_cache

    def test_reextract_bypasses_cache(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        pipeline.run_extraction()
        outcome = pipeline.reextract()

        assert extractor.call_count == 2
        assert not outcome.from_cache

    def test_cached_result_keeps_dish_images(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())
        pipeline.run_extraction()
        pipeline.enter_display()

        session.back()
        pipeline.run_extraction()

        assert all(d.image is not None for d in session.dishes)

    def test_failure_is_recorded_on_session(self, session):
        extractor = MagicMock(side_effect=TransportFailure("Bedrock invoke_model failed: timeout"))
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error_message.startswith("Failed to extract menu data:")
        assert session.error_message == outcome.error_message
        assert session.dishes == []
        assert pipeline.cache.cached is None

    def test_missing_credentials_is_reported_as_failure(self, session):
        extractor = MagicMock(side_effect=ConfigurationError("Bedrock credentials not configured"))
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.FAILED
        assert "credentials" in session.error_message

    def test_retry_after_failure_clears_error(self, session):
        extractor = MagicMock(side_effect=[TransportFailure("timeout"), _luigis()])
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        pipeline.run_extraction()
        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.COMPLETED
        assert session.error_message is None

    def test_reset_invalidates_cache(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        pipeline.run_extraction()
        session.reset()
        session.add_image(b"menu-photo-1")
        pipeline.run_extraction()

        assert extractor.call_count == 2

    def test_no_images_is_recorded_as_failure(self, extractor):
        session = SessionState()
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.FAILED
        assert session.error_message == outcome.error_message
        assert "No menu images" in session.error_message
        assert session.stage == WorkflowStage.CAPTURING
        extractor.assert_not_called()

    def test_odd_reply_envelope_completes_empty(self):
        session = SessionState()
        session.add_image(_png_bytes())
        client = MagicMock()
        client.invoke_model.return_value = {
            "body": BytesIO(json.dumps({"content": None}).encode())
        }
        pipeline = MenuPipeline(
            session,
            extractor=lambda images: extract_menu_data(images, bedrock_client=client),
            provider=FakeProvider(),
        )

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.COMPLETED
        assert session.dishes == []
        assert session.error_message is None

    def test_empty_menu_completes_with_no_dishes(self, session):
        extractor = MagicMock(return_value=MenuExtractionResult.empty())
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        outcome = pipeline.run_extraction()

        assert outcome.status == JobStatus.COMPLETED
        assert session.dishes == []
        assert session.restaurant_name is None


# ---------------------------------------------------------------------------
# Display and image enrichment
# ---------------------------------------------------------------------------

class TestEnterDisplay:
    def test_enriches_every_dish(self, session, extractor):
        provider = FakeProvider()
        pipeline = MenuPipeline(session, extractor=extractor, provider=provider)
        on_complete = MagicMock()

        pipeline.run_extraction()
        summary = pipeline.enter_display(on_complete=on_complete)

        assert session.stage == WorkflowStage.DISPLAYING
        assert summary.status == JobStatus.COMPLETED
        on_complete.assert_called_once()
        for dish in session.dishes:
            assert dish.image == f"img:{dish.name}".encode()
            assert dish.is_resting
        assert {restaurant for _, restaurant in provider.calls} == {"Luigi's"}

    def test_failed_dish_is_flagged(self, session, extractor):
        pipeline = MenuPipeline(
            session, extractor=extractor, provider=FakeProvider(failing={"Tiramisu"})
        )

        pipeline.run_extraction()
        summary = pipeline.enter_display()

        tiramisu = next(d for d in session.dishes if d.name == "Tiramisu")
        assert tiramisu.image_load_error
        assert summary.status == JobStatus.PARTIAL

    def test_updates_after_reset_are_discarded(self, session, extractor):
        class ResettingProvider:
            def provide_image(self, dish_name, restaurant_name=None):
                session.reset()
                return b"late"

        pipeline = MenuPipeline(session, extractor=extractor, provider=ResettingProvider())
        pipeline.run_extraction()

        pipeline.enter_display()

        assert session.dishes == []
        assert session.stage == WorkflowStage.CAPTURING


    def test_reentering_grid_keeps_fetched_images(self, session, extractor):
        provider = FakeProvider()
        pipeline = MenuPipeline(session, extractor=extractor, provider=provider)
        pipeline.run_extraction()
        pipeline.enter_display()

        session.back()
        assert pipeline.run_extraction().from_cache
        summary = pipeline.enter_display()

        assert len(provider.calls) == 2
        assert summary.total == 0
        assert all(d.image is not None for d in session.dishes)

    def test_reentering_grid_fetches_only_missing_images(self, session, extractor):
        provider = FakeProvider(failing={"Tiramisu"})
        pipeline = MenuPipeline(session, extractor=extractor, provider=provider)
        pipeline.run_extraction()
        pipeline.enter_display()

        session.back()
        pipeline.run_extraction()
        provider.failing.clear()
        pipeline.enter_display()

        assert sorted(name for name, _ in provider.calls) == [
            "Margherita Pizza",
            "Tiramisu",
            "Tiramisu",
        ]
        assert all(d.image is not None for d in session.dishes)


class TestRetryDishImage:
    def test_retry_replaces_error_with_image(self, session, extractor):
        provider = FakeProvider(failing={"Tiramisu"})
        pipeline = MenuPipeline(session, extractor=extractor, provider=provider)
        pipeline.run_extraction()
        pipeline.enter_display()
        tiramisu = next(d for d in session.dishes if d.name == "Tiramisu")

        provider.failing.clear()
        summary = pipeline.retry_dish_image(tiramisu.id)

        assert summary.status == JobStatus.COMPLETED
        retried = session.find_dish(tiramisu.id)
        assert retried.image == b"img:Tiramisu"
        assert not retried.image_load_error

    def test_unknown_dish(self, session, extractor):
        pipeline = MenuPipeline(session, extractor=extractor, provider=FakeProvider())

        assert pipeline.retry_dish_image("missing") is None
