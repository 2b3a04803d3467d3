class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class ValidationError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    pass


class PermissionDeniedError(MarketplaceError):
    pass


class RequestClosedError(MarketplaceError):
    """The request no longer accepts responses, messages or acceptance."""


class InvalidTransitionError(MarketplaceError):
    pass


class DuplicateResponseError(MarketplaceError):
    pass


class InvalidOfferError(ValidationError):
    pass


class ExpiredOfferError(MarketplaceError):
    pass


class AlreadyResolvedError(MarketplaceError):
    """Lost a race against another accept, a retraction or an expiry.

    Callers should re-read the request/booking and show whichever outcome won
    instead of retrying.
    """


class NotOfferOwnerError(PermissionDeniedError):
    pass
