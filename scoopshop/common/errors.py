"""Error taxonomy shared by the checkout components.

`retryable` marks failures where the processor should redeliver the webhook:
the HTTP layer answers those with a non-2xx status, everything else is
acknowledged.
"""


class StorefrontError(Exception):
    """Base class for expected checkout failures."""

    retryable = False


class ValidationError(StorefrontError):
    """Malformed checkout input; rejected before any side effect."""


class LoginRequired(ValidationError):
    """The cart needs an authenticated shopper (subscription items)."""


class AuthenticationError(StorefrontError):
    """Webhook payload failed signature verification."""


class CorrelationMissing(StorefrontError):
    """Event carries no checkout attempt id, or the attempt cannot be found."""

    def __init__(self, message: str, context_lost: bool = False) -> None:
        super().__init__(message)
        self.context_lost = context_lost


class UpstreamError(StorefrontError):
    """A payment processor call failed."""

    retryable = True


class ProcessorNotFound(StorefrontError):
    """The processor does not know the requested object id."""


class PersistenceConflict(StorefrontError):
    """Uniqueness violation while creating an order; means it already exists."""


class DataIntegrityWarning(StorefrontError):
    """Local subscription row missing for a lifecycle event."""


class OrderPersistenceError(StorefrontError):
    """Order could not be written for a reason other than a duplicate."""

    retryable = True


class SubscriptionActionError(StorefrontError):
    """Requested subscription change does not apply to its current state."""


class AdminRequired(StorefrontError):
    """Logged-in shopper lacks the `ADMIN` role for a store-wide view."""
