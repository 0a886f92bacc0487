"""Exception taxonomy for Nudge.

Every error carries the HTTP status the API layer should answer with, so
route handlers can stay free of status-code bookkeeping.  Anything that is
not a ``NudgeError`` is treated as unexpected and never leaks its message
unless it passes :func:`safe_error_message`.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional


class NudgeError(Exception):
    """Base exception for the Nudge application."""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(NudgeError):
    """A required field is missing or malformed.  Never retryable."""

    status_code = 400


class ConflictError(NudgeError):
    """The record is in the wrong state for the requested operation."""

    status_code = 400


class NotFoundError(NudgeError):
    """Unknown id, or an id the caller does not own."""

    status_code = 404


class UnauthorizedError(NudgeError):
    """No user identity, or a bad cron secret."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ConfigurationError(NudgeError):
    """Raised when configuration is invalid or incomplete."""

    status_code = 500


class RateLimitExceeded(NudgeError):
    """Too many requests for one user within the current window."""

    status_code = 429

    def __init__(self, message: str, reset_at: float) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class EmailSendError(NudgeError):
    """Raised by an email sender when the provider does not accept a message."""

    status_code = 502


class EmailDeliveryError(NudgeError):
    """The email provider rejected or failed a send.

    ``invoice_changed`` tells the caller whether the invoice's own state
    (status, ledger) moved before the failure.  The error fields on the
    invoice are always stamped regardless.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        context: str,
        invoice_changed: bool = False,
        occurred_at: Optional[datetime] = None,
        invoice_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.context = context
        self.invoice_changed = invoice_changed
        self.occurred_at = occurred_at
        self.invoice_id = invoice_id

    @property
    def user_message(self) -> str:
        if self.invoice_changed:
            return f"Invoice saved, but the email failed to send: {self.message}"
        return f"Email failed to send; the invoice was not changed: {self.message}"


# ---------------------------------------------------------------------------
# Safe message filtering
# ---------------------------------------------------------------------------

SAFE_ERROR_PATTERNS: tuple[str, ...] = (
    r"not found",
    r"unauthorized",
    r"invalid .*id",
    r"required",
    r"validation",
    r"already exists",
    r"cannot be empty",
)

_SAFE_ERROR_RE = re.compile("|".join(SAFE_ERROR_PATTERNS), re.IGNORECASE)


def safe_error_message(exc: BaseException, fallback: str = "An unexpected error occurred") -> str:
    """Return ``str(exc)`` only when it matches the safe-pattern allowlist.

    >>> safe_error_message(ValueError("Invoice not found"))
    'Invoice not found'
    >>> safe_error_message(RuntimeError("socket closed at 10.0.0.4"), "Failed")
    'Failed'
    """
    message = str(exc)
    if message and _SAFE_ERROR_RE.search(message):
        return message
    return fallback
