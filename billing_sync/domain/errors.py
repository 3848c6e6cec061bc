"""Failures raised while processing a single Stripe event."""


class BillingSyncError(Exception):
    """Base class; ``status_code`` is what the webhook endpoint answers."""

    status_code = 400
    retryable = False

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.event_id = event_id


class SignatureInvalid(BillingSyncError):
    """The payload was not signed with the configured webhook secret."""


class MalformedEvent(BillingSyncError):
    """Signed payload lacks what reconciliation needs."""


class UserNotFound(BillingSyncError):
    """No local user owns the event's subscription or customer."""


class OwnershipConflict(BillingSyncError):
    """The Stripe subscription is already bound to a different user."""


class StoreUnavailable(BillingSyncError):
    status_code = 503
    retryable = True


class ProviderUnavailable(BillingSyncError):
    """Stripe could not be reached for subscription details."""

    status_code = 503
    retryable = True
