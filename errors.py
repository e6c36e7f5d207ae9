"""Error taxonomy for the billing endpoints.

Each error carries the HTTP status it is rendered with; ``main.py`` turns
them into ``{"detail": message}`` responses.
"""


class AccessGateError(Exception):
    """Base error; ``status_code`` is the HTTP status for the response."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(AccessGateError):
    """Bad or missing request input (plan, session id)."""

    status_code = 400


class SignatureVerificationFailure(AccessGateError):
    """Webhook signature missing or not matching the raw body."""

    status_code = 400


class UpstreamUnavailable(AccessGateError):
    """Stripe call failed on a path that cannot continue without it."""


class MisconfigurationError(AccessGateError):
    """A required secret is not configured."""
