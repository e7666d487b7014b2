"""
Error taxonomy shared by the pipeline components.

Components raise these; only the HTTP layer turns them into responses.
"""

from __future__ import annotations


class LeadlineError(Exception):
    """Base class. ``status_code`` is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LeadlineError):
    """Malformed or missing request fields."""

    status_code = 400


class AuthenticationError(LeadlineError):
    """Bad or missing webhook signature."""

    status_code = 403


class NotAuthenticated(LeadlineError):
    """Missing or invalid bearer token on the jobs API."""

    status_code = 401


class NotFoundError(LeadlineError):
    """Unknown call, job or user."""

    status_code = 404


class UpstreamUnavailable(LeadlineError):
    """Speech-to-text, LLM, SMS gateway or recording host failed or timed out."""

    status_code = 502


class ConfigurationError(LeadlineError):
    """Required credentials or settings are missing."""

    status_code = 500
