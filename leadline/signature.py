"""
Provider webhook signature verification (X-Twilio-Signature).

The provider signs the full webhook URL plus the sorted form parameters with
the account auth token. ``twilio.request_validator`` does the hashing and
also accepts the URL with or without its default port.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

import structlog
from twilio.request_validator import RequestValidator

from leadline.config import Settings
from leadline.errors import AuthenticationError, ConfigurationError

log = structlog.get_logger(__name__)


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    return RequestValidator(auth_token).compute_signature(url, dict(params))


def canonical_urls(public_base_url: str, path: str, query: str, request_url: str) -> list[str]:
    """URLs a signature may have been computed over, most specific first."""
    urls = []
    if public_base_url:
        url = public_base_url.rstrip("/") + path
        if query:
            url += "?" + query
        urls.append(url)
    if request_url and request_url not in urls:
        urls.append(request_url)
    return urls


def verify_signature(
    auth_token: str,
    urls: Iterable[str],
    params: Mapping[str, str],
    signature: Optional[str],
) -> bool:
    if not signature:
        return False
    validator = RequestValidator(auth_token)
    form = dict(params)
    return any(validator.validate(url, form, signature) for url in urls)


def require_valid_signature(
    settings: Settings,
    urls: list[str],
    params: Mapping[str, str],
    signature: Optional[str],
) -> None:
    """Raise unless the webhook is signed by the provider (or validation is off)."""
    if not settings.twilio_validate_signature:
        log.warning("signature_validation_disabled", url=urls[0] if urls else "")
        return

    if not settings.twilio_auth_token:
        log.error("signature_validation_misconfigured", reason="twilio_auth_token is empty")
        raise ConfigurationError("Webhook signature validation is enabled but no auth token is configured")

    if not verify_signature(settings.twilio_auth_token, urls, params, signature):
        log.warning("webhook_signature_mismatch", url=urls[0] if urls else "", has_header=bool(signature))
        raise AuthenticationError("Invalid webhook signature")
