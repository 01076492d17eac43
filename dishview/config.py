"""Configuration - model ids, provider switch and API credentials.

Credentials are resolved with the following precedence:

1. Environment variable
2. Local configuration file (``.env`` by default, see ``DISHVIEW_CONFIG_FILE``)
3. Placeholder value, which is treated as "unconfigured"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config
from dotenv import dotenv_values

from dishview.errors import ConfigurationError

logger = logging.getLogger(__name__)

MENU_MODEL_ID = os.environ.get("MENU_MODEL_ID", "us.anthropic.claude-haiku-4-5-20251001-v1:0")
IMAGE_MODEL_ID = os.environ.get("IMAGE_MODEL_ID", "stability.stable-image-core-v1:1")
IMAGE_PROVIDER = os.environ.get("IMAGE_PROVIDER", "generation")
IMAGE_GEN_WORKERS = int(os.environ.get("IMAGE_GEN_WORKERS", "3"))
IMAGE_PACING_DELAY = float(os.environ.get("IMAGE_PACING_DELAY", "0"))

BEDROCK_API_KEY_NAME = "AWS_BEARER_TOKEN_BEDROCK"
SEARCH_API_KEY_NAME = "GOOGLE_CUSTOM_SEARCH_API_KEY"
SEARCH_ENGINE_ID_NAME = "GOOGLE_CUSTOM_SEARCH_ENGINE_ID"

BEDROCK_API_KEY_PLACEHOLDER = "YOUR_BEDROCK_API_KEY"
SEARCH_API_KEY_PLACEHOLDER = "YOUR_API_KEY"
SEARCH_ENGINE_ID_PLACEHOLDER = "YOUR_SEARCH_ENGINE_ID"

# botocore retries are disabled; dishview.backoff owns the retry policy.
_BEDROCK_CONFIG = Config(read_timeout=60, retries={"max_attempts": 1, "mode": "standard"})


def _config_file_path() -> str:
    return os.environ.get("DISHVIEW_CONFIG_FILE", ".env")


def resolve_credential(
    name: str, placeholder: str, config_file: Optional[str] = None
) -> str:
    """Returns the credential from the environment, the config file, or the placeholder."""
    env_value = os.environ.get(name)
    if env_value:
        return env_value

    path = config_file or _config_file_path()
    if os.path.isfile(path):
        file_value = dotenv_values(path).get(name)
        if file_value:
            return file_value

    return placeholder


def is_configured(value: Optional[str], placeholder: str) -> bool:
    return bool(value) and value != placeholder


@dataclass
class Settings:
    menu_model_id: str = MENU_MODEL_ID
    image_model_id: str = IMAGE_MODEL_ID
    image_provider: str = IMAGE_PROVIDER
    image_workers: int = IMAGE_GEN_WORKERS
    pacing_delay: float = IMAGE_PACING_DELAY
    aws_region: Optional[str] = None
    bedrock_api_key: str = BEDROCK_API_KEY_PLACEHOLDER
    search_api_key: str = SEARCH_API_KEY_PLACEHOLDER
    search_engine_id: str = SEARCH_ENGINE_ID_PLACEHOLDER

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> Settings:
        return cls(
            aws_region=os.environ.get("AWS_REGION"),
            bedrock_api_key=resolve_credential(
                BEDROCK_API_KEY_NAME, BEDROCK_API_KEY_PLACEHOLDER, config_file
            ),
            search_api_key=resolve_credential(
                SEARCH_API_KEY_NAME, SEARCH_API_KEY_PLACEHOLDER, config_file
            ),
            search_engine_id=resolve_credential(
                SEARCH_ENGINE_ID_NAME, SEARCH_ENGINE_ID_PLACEHOLDER, config_file
            ),
        )

    def require_search_credentials(self) -> None:
        """Raises ConfigurationError unless both Custom Search credentials are set."""
        if not is_configured(self.search_api_key, SEARCH_API_KEY_PLACEHOLDER):
            raise ConfigurationError("Google Custom Search API key not configured")
        if not is_configured(self.search_engine_id, SEARCH_ENGINE_ID_PLACEHOLDER):
            raise ConfigurationError("Google Custom Search Engine ID not configured")


def bedrock_client(settings: Optional[Settings] = None):
    """
    Creates the default Bedrock runtime client.

    A Bedrock API key found in the config file is exported to the process
    environment (never overriding an existing value) so botocore can use it.
    Raises: ConfigurationError if neither an API key nor AWS credentials exist.
    """
    if settings is None:
        settings = Settings.from_env()

    if is_configured(settings.bedrock_api_key, BEDROCK_API_KEY_PLACEHOLDER):
        os.environ.setdefault(BEDROCK_API_KEY_NAME, settings.bedrock_api_key)
    else:
        session = boto3.Session(region_name=settings.aws_region)
        if session.get_credentials() is None:
            raise ConfigurationError(
                f"Bedrock credentials not configured: set {BEDROCK_API_KEY_NAME} "
                "or AWS credentials"
            )
        logger.info("No Bedrock API key set, using AWS session credentials")

    return boto3.client(
        "bedrock-runtime", region_name=settings.aws_region, config=_BEDROCK_CONFIG
    )
