from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from barbermatch.auth import assert_actor_authorized, require_admin
from barbermatch.models import BarberLocationUpdate, NearbyBarber, SweepReport
from barbermatch.routers.common import raise_marketplace_http_error
from barbermatch.services.errors import MarketplaceError
from barbermatch.services.request_orchestrator import orchestrator

router = APIRouter(tags=["barbers"])


@router.put("/barbers/{barber_id}/location", response_model=dict)
def update_location(
    barber_id: str,
    payload: BarberLocationUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=barber_id, authorization=authorization)
    try:
        orchestrator.update_barber_location(
            barber_id,
            payload.latitude,
            payload.longitude,
            display_name=payload.display_name,
            is_available=payload.is_available,
            rating=payload.rating,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
    return {"status": "ok"}


@router.get("/barbers/nearby", response_model=list[NearbyBarber])
def nearby_barbers(
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius_meters: Optional[int] = Query(default=None),
):
    try:
        return orchestrator.find_nearby_barbers(latitude, longitude, radius_meters)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/admin/expiry/sweep", response_model=SweepReport)
def run_expiry_sweep(_admin: str = Depends(require_admin)):
    return orchestrator.sweep()
