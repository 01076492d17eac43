"""Image generation module - creates photorealistic dish images using Amazon Bedrock."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from dishview.backoff import DEFAULT_RETRY_POLICY, RetryPolicy, call_with_retry
from dishview.config import IMAGE_MODEL_ID, Settings, bedrock_client as default_bedrock_client
from dishview.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

_RETRYABLE_ERROR_CODES = {
    "ThrottlingException",
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelTimeoutException",
}

_TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class ImageGenerationError(ProviderError):
    """Raised when a single image generation request fails."""


class NoImageInReply(ImageGenerationError):
    """Raised when the model answered without any image payload."""


def build_image_prompt(dish_name: str, restaurant_name: Optional[str] = None) -> str:
    """Constructs the generation prompt naming the dish and its restaurant."""
    restaurant = restaurant_name.strip() if restaurant_name and restaurant_name.strip() else "unknown"
    return (
        f'Professional food photography of the dish "{dish_name}" '
        f'as served at the restaurant "{restaurant}". '
        "Realistic, representative of how the restaurant presents it, "
        "shot from 45-degree angle, warm natural lighting, on a clean restaurant table."
    )


def is_retryable_error(error: Exception) -> bool:
    """Server-side (5xx), throttling and transport errors are retried; all else fails fast."""
    cause = error.__cause__ if isinstance(error, ImageGenerationError) else error
    if isinstance(cause, NoCredentialsError):
        return False
    if isinstance(cause, _TRANSPORT_ERRORS):
        return True
    if isinstance(cause, ClientError):
        code = cause.response.get("Error", {}).get("Code", "")
        status = cause.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in _RETRYABLE_ERROR_CODES or status >= 500
    return False


def extract_image_bytes(response_body: dict) -> bytes:
    """
    Returns the first decodable image in a Bedrock image model reply.
    Raises: NoImageInReply if the reply carries no image.
    """
    for encoded in response_body.get("images") or []:
        if not encoded:
            continue
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Skipping image entry that is not valid base64")

    reasons = [r for r in response_body.get("finish_reasons") or [] if r]
    message = response_body.get("message") or "; ".join(reasons)
    if message:
        raise NoImageInReply(f"Model did not return image data: {message}")
    raise NoImageInReply("No images returned in Bedrock response")


def generate_dish_image(
    dish_name: str,
    restaurant_name: Optional[str] = None,
    bedrock_client=None,
    model_id: Optional[str] = None,
) -> bytes:
    """
    Generates a photorealistic image for a dish using Bedrock.
    Returns image bytes.
    Raises: ImageGenerationError on failure, ConfigurationError without credentials.
    """
    if bedrock_client is None:
        bedrock_client = default_bedrock_client()
    if model_id is None:
        model_id = IMAGE_MODEL_ID

    prompt = build_image_prompt(dish_name, restaurant_name)
    request_body = json.dumps({"prompt": prompt})

    try:
        response = bedrock_client.invoke_model(
            modelId=model_id,
            contentType="application/json",
            accept="application/json",
            body=request_body,
        )
    except NoCredentialsError as e:
        raise ConfigurationError(f"Bedrock credentials not configured: {e}") from e
    except Exception as e:
        raise ImageGenerationError(f"Bedrock invoke_model failed: {e}") from e

    try:
        response_body = json.loads(response["body"].read())
    except (json.JSONDecodeError, KeyError) as e:
        raise ImageGenerationError(f"Failed to read Bedrock response: {e}") from e

    return extract_image_bytes(response_body)


class GenerationImageProvider:
    """Generation strategy: asks a Bedrock image model to synthesize the dish."""

    def __init__(
        self,
        bedrock_client=None,
        settings: Optional[Settings] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        empty_reply_is_error: bool = False,
    ):
        self._settings = settings or Settings.from_env()
        self._client = bedrock_client
        self._retry_policy = retry_policy
        self._empty_reply_is_error = empty_reply_is_error

    def _bedrock(self):
        if self._client is None:
            self._client = default_bedrock_client(self._settings)
        return self._client

    def provide_image(
        self, dish_name: str, restaurant_name: Optional[str] = None
    ) -> Optional[bytes]:
        client = self._bedrock()
        logger.info("Generating image for dish %r (restaurant %r)", dish_name, restaurant_name)

        try:
            image_bytes = call_with_retry(
                lambda: generate_dish_image(
                    dish_name,
                    restaurant_name,
                    bedrock_client=client,
                    model_id=self._settings.image_model_id,
                ),
                is_retryable=is_retryable_error,
                policy=self._retry_policy,
                label=f"dish {dish_name!r}",
            )
        except NoImageInReply as e:
            if self._empty_reply_is_error:
                raise
            logger.warning("No image generated for %r: %s", dish_name, e)
            return None
        except ImageGenerationError as e:
            raise ProviderError(f"Image generation failed for {dish_name!r}: {e}") from e

        logger.info("Generated image for %r (%d bytes)", dish_name, len(image_bytes))
        return image_bytes
