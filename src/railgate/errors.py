"""Exception hierarchy shared by every settlement component.

``str(exc)`` is the operator-facing detail and may name internal ids.
``exc.public_message`` is safe to hand back to a customer.
"""

from __future__ import annotations


class RailgateError(Exception):
    """Base exception for railgate operations."""

    public_message = "The request could not be completed."
    reason = "error"

    def __init__(
        self,
        message: str,
        *,
        public_message: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message
        if reason is not None:
            self.reason = reason


# ---------------------------------------------------------------------------
# Validation: rejected synchronously, no side effects
# ---------------------------------------------------------------------------


class ValidationError(RailgateError):
    """Caller supplied something unusable. The message is specific."""

    reason = "invalid_request"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        # Validation messages are written for the customer already.
        super().__init__(message, public_message=message, reason=reason)


class InvalidDestinationError(ValidationError):
    """Payout destination is not an invoice or payment address we can use."""

    reason = "invalid_destination"


class LimitExceededError(RailgateError):
    """Payout would push the customer over the rolling cashout ceiling."""

    reason = "limit_exceeded"

    def __init__(self, message: str, *, remaining_usd: object = None) -> None:
        super().__init__(message, public_message=message)
        self.remaining_usd = remaining_usd


# ---------------------------------------------------------------------------
# Custody: fatal, never retried
# ---------------------------------------------------------------------------


class CustodyError(RailgateError):
    """Key material could not be recovered (tamper or wrong vault key)."""

    reason = "custody"
    public_message = "The payment could not be settled. Support has been notified."


# ---------------------------------------------------------------------------
# External dependencies
# ---------------------------------------------------------------------------


class ExternalDependencyError(RailgateError):
    """A collaborator (gateway, chain, notifier, rate source) failed."""

    reason = "external_dependency"
    public_message = "A payment provider is unavailable. Please try again later."

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        public_message: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, public_message=public_message, reason=reason)
        self.status_code = status_code


class DepositError(RailgateError):
    """Deposit creation aborted; no address was handed to the customer."""

    reason = "deposit_failed"
    public_message = "The deposit could not be created. Please try again later."


# ---------------------------------------------------------------------------
# State machine / lookup / inbound auth
# ---------------------------------------------------------------------------


class InvalidTransitionError(RailgateError):
    """Requested status change is not a forward edge of the lifecycle."""

    reason = "invalid_transition"


class NotFoundError(RailgateError):
    reason = "not_found"
    public_message = "Not found."


class WebhookAuthError(RailgateError):
    """Inbound notification failed authentication and must not be trusted."""

    reason = "unauthorized"
    public_message = "Unauthorized."
