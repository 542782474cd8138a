from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header

from authcore.api.schemas import (
    Envelope,
    LogoutRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext
from authcore.service.errors import AuthFailure
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Engine calls hit the store synchronously, so they run in worker threads.


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await asyncio.to_thread(runtime.auth.authenticate, authorization)
    if isinstance(ctx, AuthFailure):
        raise ctx.to_service_error()
    return ctx


@router.get("/health", response_model=Envelope, tags=["system"])
async def health():
    return Envelope(status="ok", data={"status": "healthy"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await asyncio.to_thread(runtime.auth.rotate, body.refresh_token)
    if isinstance(pair, AuthFailure):
        raise pair.to_service_error()
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    # only the authenticated account's own refresh token can be revoked
    result = await asyncio.to_thread(
        runtime.auth.revoke, principal.account_id, body.refresh_token
    )
    if isinstance(result, AuthFailure):
        raise result.to_service_error()
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    view = await asyncio.to_thread(runtime.auth.current_user, principal.account_id)
    if isinstance(view, AuthFailure):
        raise view.to_service_error()
    return Envelope(status="ok", data=UserResponse.from_view(view))
