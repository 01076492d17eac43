"""Error taxonomy shared by the extraction and image enrichment stages."""


class DishViewError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(DishViewError):
    """Raised when a credential is missing or still set to its placeholder."""


class ExtractionError(DishViewError):
    """Raised when menu data extraction fails."""


class EmptyInput(ExtractionError):
    """Raised when extraction is requested without any menu images."""


class TransportFailure(ExtractionError):
    """Raised when the remote extraction call fails or times out."""


class MalformedResponse(ExtractionError):
    """Raised when a reply cannot be parsed into the expected menu structure."""


class ProviderError(DishViewError):
    """Raised when a dish image provider fails after exhausting its retries."""
