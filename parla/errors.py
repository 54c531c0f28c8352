"""
Error taxonomy shared by the services and the HTTP layer.

Every error a caller can see is a ``ParlaError`` carrying the HTTP status it
maps to. Raw SDK exceptions from the LLM backends are translated by
``classify_provider_error`` at the request boundary.
"""

from typing import Optional


class ParlaError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ParlaError):
    status_code = 400
    default_message = "Missing required fields"


class UnauthorizedError(ParlaError):
    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(ParlaError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ParlaError):
    status_code = 409
    default_message = "Already exists"


class EntitlementError(ParlaError):
    """Free-tier quota exhausted; the message tells the user how to continue."""
    status_code = 429
    default_message = "Daily limit reached"


class ProviderError(ParlaError):
    default_message = "Failed to process message"


class UnsupportedProviderError(ProviderError):
    status_code = 500


class MissingAPIKeyError(ProviderError):
    status_code = 500
    default_message = "API key is required"


class ProviderConfigError(ProviderError):
    status_code = 500
    default_message = "AI service is not available. Please contact support."


class ProviderAuthError(ProviderError):
    status_code = 401
    default_message = "Invalid API key. Please check your settings."


class ProviderForbiddenError(ProviderError):
    status_code = 403
    default_message = "Access forbidden. Please verify your API key permissions."


class ProviderRateLimitError(ProviderError):
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."


class ProviderQuotaError(ProviderError):
    status_code = 402
    default_message = "API quota exceeded. Please check your API key or upgrade your plan."


def _status_of(exc: BaseException) -> Optional[int]:
    # openai/anthropic/groq expose status_code, google-genai exposes code
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: BaseException, fallback: str = ProviderError.default_message) -> ParlaError:
    """Map an exception raised while talking to an LLM backend onto the taxonomy."""
    if isinstance(exc, ParlaError):
        return exc

    text = str(exc).lower()
    status = _status_of(exc)

    if "api key" in text or "api_key" in text:
        return ProviderAuthError()
    if "quota" in text or status == 402:
        return ProviderQuotaError()
    if "rate limit" in text or status == 429:
        return ProviderRateLimitError()
    if status == 401:
        return ProviderAuthError()
    if status == 403:
        return ProviderForbiddenError()
    return ProviderError(fallback)
