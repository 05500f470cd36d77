"""Exception types raised by the guide generation pipeline.

Only document-level problems and provider transport failures are exceptions.
Unparsable model output is returned as a value (see `parsing.ParseFailure`)
and quality problems are `QualityFlag` records.
"""


class GuideGenerationError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(GuideGenerationError):
    """Missing API key, unknown provider name, or an invalid setting."""


class ProviderError(GuideGenerationError):
    """A model provider call did not succeed (HTTP error, timeout, auth)."""

    def __init__(self, provider: str, status: int | None, body: str, model: str = ""):
        self.provider = provider
        self.status = status
        self.body = body
        self.model = model
        status_str = status if status is not None else "transport"
        super().__init__(f"{provider} API error ({status_str}): {body[:500]}")


class ProviderContentError(ProviderError):
    """The call succeeded but the response carried no usable text or image.

    Token counts reported alongside the empty response are kept so the call
    can still be billed.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        model: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ):
        super().__init__(provider, 200, message, model=model)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class PdfFetchError(GuideGenerationError, OSError):
    """The source PDF could not be downloaded or read."""


class PdfExtractionError(GuideGenerationError):
    """Rendering produced no output (bad document, page index past the end)."""


class PipelineError(GuideGenerationError):
    """Document-level failure: unknown product, no PDF, no pages."""


class InvalidTransitionError(GuideGenerationError):
    """A job status change that the state table does not allow."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f'Cannot transition from "{current}" to "{requested}"')
