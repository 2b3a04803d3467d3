from fastapi import HTTPException

from barbermatch.services.errors import (
    AlreadyResolvedError,
    DuplicateResponseError,
    ExpiredOfferError,
    InvalidTransitionError,
    MarketplaceError,
    NotFoundError,
    PermissionDeniedError,
    RequestClosedError,
)

CONFLICT_ERRORS = (AlreadyResolvedError, DuplicateResponseError, InvalidTransitionError, RequestClosedError)


def raise_marketplace_http_error(exc: MarketplaceError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ExpiredOfferError):
        raise HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, CONFLICT_ERRORS):
        raise HTTPException(
            status_code=409,
            detail={"error": type(exc).__name__, "message": str(exc)},
        )
    raise HTTPException(status_code=400, detail=str(exc))
