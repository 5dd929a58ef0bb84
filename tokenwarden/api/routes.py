from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from tokenwarden.api.schemas import (
    CodeRequestedResponse,
    EmailLoginRequest,
    Envelope,
    PasswordChangeRequest,
    PlatformTokenResponse,
    RefreshRequest,
    RefreshResponse,
    RevokeAllResponse,
    RevokeRequest,
    TokenInfo,
    TokenListResponse,
    TokenPairResponse,
)
from tokenwarden.logging import get_logger
from tokenwarden.service.runtime import get_runtime
from tokenwarden.service.sessions import AccessClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/api/mobile")


async def get_principal(authorization: Optional[str] = Header(None)) -> AccessClaims:
    runtime = get_runtime()
    return runtime.sessions.authenticate(authorization).unwrap()


@router.post("/auth/email", response_model=Envelope, tags=["auth"])
async def login_with_email(body: EmailLoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
        429: If the email is locked out
    """
    runtime = get_runtime()
    issued = (
        await runtime.sessions.login(
            runtime.store,
            body.email,
            body.password,
            device_id=body.device_id,
            device_name=body.device_name,
            platform=body.platform,
        )
    ).unwrap()
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            token_id=issued.token_id,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            access_expires_at=issued.access_expires_at,
            refresh_expires_at=issued.refresh_expires_at,
        ),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_access_token(body: RefreshRequest):
    runtime = get_runtime()
    refreshed = runtime.sessions.refresh(
        runtime.store, body.refresh_token, rotate=body.rotate
    ).unwrap()
    return Envelope(
        status="ok",
        data=RefreshResponse(
            token_id=refreshed.token_id,
            access_token=refreshed.access_token,
            access_expires_at=refreshed.access_expires_at,
            refresh_token=refreshed.refresh_token,
            refresh_expires_at=refreshed.refresh_expires_at,
        ),
    )


@router.post("/revoke", response_model=Envelope, tags=["auth"])
async def revoke_by_refresh_token(body: RevokeRequest):
    """Logout; answers ok whether or not the token was known."""
    runtime = get_runtime()
    runtime.sessions.revoke_refresh_token(runtime.store, body.refresh_token).unwrap()
    return Envelope(status="ok", data={"revoked": True})


@router.get("/tokens", response_model=Envelope, tags=["tokens"])
async def list_tokens(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    records = runtime.sessions.list_active(runtime.store, principal.principal_id).unwrap()
    return Envelope(
        status="ok",
        data=TokenListResponse(items=[TokenInfo(**record) for record in records]),
    )


@router.delete("/tokens/{token_id}", response_model=Envelope, tags=["tokens"])
async def revoke_token(token_id: str, principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    runtime.sessions.revoke(runtime.store, token_id, principal.principal_id).unwrap()
    return Envelope(status="ok", data={"id": token_id, "revoked": True})


@router.post("/tokens/revoke-all", response_model=Envelope, tags=["tokens"])
async def revoke_all_tokens(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.sessions.revoke_all(runtime.store, principal.principal_id).unwrap()
    return Envelope(status="ok", data=RevokeAllResponse(revoked=count))


@router.post("/platform-token", response_model=Envelope, tags=["auth"])
async def platform_token(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    minted = (
        await runtime.sessions.issue_platform_token(runtime.store, principal.principal_id)
    ).unwrap()
    return Envelope(
        status="ok",
        data=PlatformTokenResponse(token=minted.token, expires_at=minted.expires_at),
    )


@router.post("/password/code", response_model=Envelope, tags=["password"])
async def request_password_code(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    requested = (
        await runtime.credentials.request_password_change_code(
            runtime.store, principal.principal_id
        )
    ).unwrap()
    return Envelope(status="ok", data=CodeRequestedResponse(expires_at=requested.expires_at))


@router.post("/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest, principal: AccessClaims = Depends(get_principal)
):
    runtime = get_runtime()
    (
        await runtime.credentials.change_password(
            runtime.store, principal.principal_id, body.code, body.new_password
        )
    ).unwrap()
    return Envelope(status="ok", data={"changed": True})
