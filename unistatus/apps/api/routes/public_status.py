from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import get_db
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.domain.models import StatusPage
from unistatus.persistence.repos import status_pages as pages_repo
from unistatus.services.notifications.subscribers import send_verification_email
from unistatus.services.status_pages import (
    PASSWORD_HEADER,
    build_public_page,
    merge_page_settings,
    subscribe,
    unsubscribe,
    verify_page_password,
    verify_subscriber,
)


router = APIRouter(prefix="/public", tags=["public"], responses=DEFAULT_ERROR_RESPONSES)


class SubscribeRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SubscribeResponse(BaseModel):
    subscribed: bool
    verified: bool


class SubscriberActionResponse(BaseModel):
    ok: bool


async def _load_published_page(db: AsyncSession, slug: str) -> StatusPage:
    # Drafts stay invisible to anonymous callers.
    page = await pages_repo.get_page_by_slug(db, slug)
    if page is None or not page.published:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Status page not found"})
    return page


@router.get("/status-pages/{slug}", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def get_public_status_page(
    slug: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_published_page(db, slug)
    if page.password_hash is not None:
        if not verify_page_password(request.headers.get(PASSWORD_HEADER), page.password_hash):
            raise HTTPException(
                status_code=401,
                detail={
                    "code": "STATUS_PAGE_PASSWORD_REQUIRED",
                    "message": f"Provide the page password in the {PASSWORD_HEADER} header",
                },
            )
    view = await build_public_page(db, page)
    return success_response(request=request, data=view)


@router.post(
    "/status-pages/{slug}/subscribe",
    status_code=202,
    response_model=SuccessEnvelope[SubscribeResponse] | SubscribeResponse,
)
async def subscribe_to_page(
    slug: str,
    payload: SubscribeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_published_page(db, slug)
    if not merge_page_settings(page.settings_json).get("subscriptions"):
        raise HTTPException(
            status_code=403,
            detail={"code": "SUBSCRIPTIONS_DISABLED", "message": "This page does not accept subscribers"},
        )
    subscriber, _created = await subscribe(db, page=page, email=payload.email)
    # Unverified addresses get a fresh copy of their confirmation link.
    await send_verification_email(page, subscriber)
    # Existing addresses get the same answer so the endpoint does not leak membership.
    return success_response(request=request, data=SubscribeResponse(subscribed=True, verified=subscriber.verified))


@router.post(
    "/subscribers/verify",
    response_model=SuccessEnvelope[SubscriberActionResponse] | SubscriberActionResponse,
)
async def verify_subscription(
    request: Request,
    token: str = Query(min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    subscriber = await verify_subscriber(db, token)
    if subscriber is None:
        raise HTTPException(status_code=404, detail={"code": "INVALID_TOKEN", "message": "Unknown verification token"})
    return success_response(request=request, data=SubscriberActionResponse(ok=True))


@router.post(
    "/subscribers/unsubscribe",
    response_model=SuccessEnvelope[SubscriberActionResponse] | SubscriberActionResponse,
)
async def unsubscribe_subscriber(
    request: Request,
    token: str = Query(min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    removed = await unsubscribe(db, token)
    if not removed:
        raise HTTPException(status_code=404, detail={"code": "INVALID_TOKEN", "message": "Unknown unsubscribe token"})
    return success_response(request=request, data=SubscriberActionResponse(ok=True))
