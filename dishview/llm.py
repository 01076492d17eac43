"""LLM module - extracts restaurant name and dishes from a menu photo using Amazon Bedrock Claude."""

from __future__ import annotations

import base64
import io
import json
import logging
import re
from typing import Optional, Sequence

from botocore.exceptions import NoCredentialsError
from PIL import Image

from dishview.config import Settings, bedrock_client as default_bedrock_client
from dishview.errors import (
    ConfigurationError,
    EmptyInput,
    ExtractionError,
    MalformedResponse,
    TransportFailure,
)
from dishview.models import Dish, MenuExtractionResult

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 4_500_000  # Claude's 5MB image limit, with margin
JPEG_FALLBACK_QUALITY = 90

EXTRACTION_PROMPT = """Analyze this restaurant menu image and extract both the restaurant name and all dishes with their sections and prices.

Return the data in this exact JSON format:
{
    "restaurantName": "Restaurant Name",
    "dishes": [
        {
            "name": "Dish Name",
            "section": "Section Name (e.g., Appetizers, Main Course, Desserts)",
            "price": "$XX.XX"
        }
    ]
}

Rules:
- Extract the restaurant name from the top of the menu
- Extract only actual dishes, not section headers
- Include prices if available
- Group dishes by their sections
- Clean up dish names (remove special characters, extra spaces)
- If no price is found, set price to null
- If no section is found, set section to null
- If no clear restaurant name is found, set restaurantName to null
- Output ONLY the JSON object. No other text.
"""

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def strip_code_fences(response_text: str) -> str:
    """Removes an optional surrounding ```json ... ``` or ``` ... ``` block."""
    text = response_text.strip()
    match = _CODE_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def parse_menu_response(response_text: str) -> MenuExtractionResult:
    """
    Parses Claude's reply into a MenuExtractionResult.

    Handles:
    - A bare JSON object
    - JSON wrapped in markdown code blocks (```json ... ``` or ``` ... ```)
    - Null/missing fields gracefully

    Raises: MalformedResponse if the reply is not the expected JSON shape.
    """
    text = strip_code_fences(response_text)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Failed to parse menu reply as JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedResponse(
            f"Expected JSON object from LLM, got {type(data).__name__}"
        )

    raw_dishes = data.get("dishes")
    if raw_dishes is None:
        raw_dishes = []
    if not isinstance(raw_dishes, list):
        raise MalformedResponse(
            f"Expected 'dishes' to be a list, got {type(raw_dishes).__name__}"
        )

    dishes = []
    for item in raw_dishes:
        if not isinstance(item, dict):
            continue

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue  # Skip entries without a valid name

        dishes.append(
            Dish(
                name=name,
                section=_nullable_str(item.get("section")),
                price=_nullable_str(item.get("price")),
                description=_nullable_str(item.get("description")),
            )
        )

    return MenuExtractionResult(
        restaurant_name=_nullable_str(data.get("restaurantName")),
        dishes=dishes,
    )


def encode_menu_image(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Re-encodes a captured photo for upload. Returns (bytes, media_type).

    PNG is preferred; JPEG at quality 90 is the fallback when PNG encoding
    fails. Oversized encodings are compressed to fit the model's image limit.
    Raises: ExtractionError if the bytes are not a decodable image.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (OSError, ValueError) as e:
        raise ExtractionError(f"Invalid menu image: {e}") from e

    try:
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        encoded, media_type = buf.getvalue(), "image/png"
    except (OSError, ValueError) as e:
        logger.info("PNG encoding failed (%s), falling back to JPEG", e)
        buf = io.BytesIO()
        img.convert("RGB").save(buf, format="JPEG", quality=JPEG_FALLBACK_QUALITY)
        encoded, media_type = buf.getvalue(), "image/jpeg"

    if len(encoded) > MAX_IMAGE_SIZE:
        logger.info("Encoded image is %d bytes, compressing", len(encoded))
        return _compress_image(img, MAX_IMAGE_SIZE), "image/jpeg"

    return encoded, media_type


def extract_menu_data(
    images: Sequence[bytes],
    bedrock_client=None,
    settings: Optional[Settings] = None,
) -> MenuExtractionResult:
    """
    Sends the first menu image to Claude for vision-based extraction.

    Only the first image is read; multi-image menus are not combined.
    Returns an empty result when the reply cannot be parsed.
    Raises: EmptyInput, TransportFailure, ConfigurationError.
    """
    if not images:
        raise EmptyInput("No menu images supplied for extraction")

    if settings is None:
        settings = Settings.from_env()
    if bedrock_client is None:
        bedrock_client = default_bedrock_client(settings)

    if len(images) > 1:
        logger.info("Extracting from the first of %d menu images only", len(images))

    image_bytes, media_type = encode_menu_image(images[0])
    logger.info("Using image format %s, size %d bytes", media_type, len(image_bytes))

    request_body = json.dumps(
        {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": 8192,
            "temperature": 0.1,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image_bytes).decode("utf-8"),
                            },
                        },
                        {"type": "text", "text": EXTRACTION_PROMPT},
                    ],
                }
            ],
        }
    )

    try:
        response = bedrock_client.invoke_model(
            modelId=settings.menu_model_id,
            contentType="application/json",
            accept="application/json",
            body=request_body,
        )
    except NoCredentialsError as e:
        raise ConfigurationError(f"Bedrock credentials not configured: {e}") from e
    except Exception as e:
        raise TransportFailure(f"Bedrock invoke_model failed: {e}") from e

    try:
        response_body = json.loads(response["body"].read())
    except (json.JSONDecodeError, KeyError, OSError) as e:
        raise TransportFailure(f"Failed to read Bedrock response: {e}") from e

    content_blocks = response_body.get("content") if isinstance(response_body, dict) else None
    if not isinstance(content_blocks, list):
        logger.warning(
            "Unexpected Bedrock Claude response shape: %s", type(content_blocks).__name__
        )
        return MenuExtractionResult.empty()

    text_parts = [
        block["text"]
        for block in content_blocks
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    if not text_parts:
        logger.warning("No text content in Bedrock Claude response")
        return MenuExtractionResult.empty()

    try:
        result = parse_menu_response("\n".join(text_parts))
    except MalformedResponse as e:
        logger.error("Failed to parse menu data: %s", e)
        return MenuExtractionResult.empty()

    logger.info(
        "Parsed restaurant %r and %d dishes", result.restaurant_name, len(result.dishes)
    )
    return result


def _compress_image(img: Image.Image, max_size: int) -> bytes:
    """Resize and compress an image to fit under max_size bytes."""
    img = img.convert("RGB")  # Ensure JPEG-compatible mode

    # First try: just re-encode as JPEG with decreasing quality
    for quality in (85, 70, 50, 30):
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality)
        if buf.tell() <= max_size:
            return buf.getvalue()

    # Still too big, resize down
    for scale in (0.75, 0.5, 0.35):
        w, h = int(img.width * scale), int(img.height * scale)
        resized = img.resize((w, h), Image.LANCZOS)
        buf = io.BytesIO()
        resized.save(buf, format="JPEG", quality=60)
        if buf.tell() <= max_size:
            return buf.getvalue()

    # Last resort: aggressive resize
    resized = img.resize((1024, int(1024 * img.height / img.width)), Image.LANCZOS)
    buf = io.BytesIO()
    resized.save(buf, format="JPEG", quality=50)
    return buf.getvalue()


def _nullable_str(value) -> Optional[str]:
    """Return a stripped string or None if the value is falsy or not a string."""
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    stripped = value.strip()
    return stripped if stripped else None
