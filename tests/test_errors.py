"""Tests for mapping raw provider failures onto the error taxonomy."""

import pytest

from parla.errors import (EntitlementError, ParlaError, ProviderAuthError, ProviderError, ProviderForbiddenError,
                          ProviderQuotaError, ProviderRateLimitError, classify_provider_error)


class StatusError(Exception):

    def __init__(self, message="", status_code=None, code=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


@pytest.mark.parametrize("exc, expected, status", [
    (StatusError("Incorrect API key provided"), ProviderAuthError, 401),
    (StatusError("invalid api_key"), ProviderAuthError, 401),
    (StatusError("unauthorized", status_code=401), ProviderAuthError, 401),
    (StatusError("nope", status_code=403), ProviderForbiddenError, 403),
    (StatusError("Rate limit reached for requests"), ProviderRateLimitError, 429),
    (StatusError("slow down", status_code=429), ProviderRateLimitError, 429),
    (StatusError("RESOURCE_EXHAUSTED", code=429), ProviderRateLimitError, 429),
    (StatusError("You exceeded your current quota", status_code=429), ProviderQuotaError, 402),
    (StatusError("payment required", status_code=402), ProviderQuotaError, 402),
])
def test_classification(exc, expected, status):
    error = classify_provider_error(exc)

    assert type(error) is expected
    assert error.status_code == status


def test_unknown_failure_uses_fallback_message():
    error = classify_provider_error(RuntimeError("socket closed"), "Translation failed")

    assert type(error) is ProviderError
    assert (error.status_code, error.message) == (500, "Translation failed")


def test_taxonomy_errors_pass_through():
    original = EntitlementError("wait until tomorrow")
    assert classify_provider_error(original) is original


def test_default_and_custom_messages():
    assert ProviderRateLimitError().message == "Rate limit exceeded. Please try again later."
    assert ParlaError("custom", status_code=418).status_code == 418
