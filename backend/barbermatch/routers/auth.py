from typing import Tuple

from fastapi import APIRouter, Depends, HTTPException

from barbermatch.auth import DEMO_PASSWORD, create_access_token, require_authenticated_user
from barbermatch.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id or "|" in user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user_id, role=payload.role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=payload.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(identity: Tuple[str, str] = Depends(require_authenticated_user)):
    user_id, role = identity
    return AuthMeResponse(user_id=user_id, role=role)
