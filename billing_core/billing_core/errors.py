"""Exception hierarchy for hard billing failures.

Expected outcomes (duplicate delivery, unknown owner, denied feature) are
return values.  These exceptions cover everything else and carry enough
classification for the API layer to pick a status code and for the event
processor to decide between "retry later" and "mark failed".
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing core errors."""


class VerificationError(BillingError):
    """A notification failed its authenticity check."""


class TransientProviderError(BillingError):
    """A provider or downstream store was unavailable or timed out."""


class ConcurrencyError(BillingError):
    """Optimistic locking on a subscription row was exhausted."""


class PayloadError(BillingError):
    """A verified payload did not have the expected shape."""


class InvalidRequestError(BillingError):
    """A user-initiated operation received bad input."""


class NotFoundError(BillingError):
    """The resource a user operation refers to does not exist."""


class ProviderRejectedError(BillingError):
    """The provider declined the payment or purchase."""


# Errors after which the provider should redeliver the notification.
TRANSIENT_ERRORS: tuple[type[BillingError], ...] = (TransientProviderError, ConcurrencyError)
