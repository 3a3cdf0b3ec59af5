from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import StatusPage, StatusPageGroup, StatusPageMonitor, Subscriber
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.persistence.repos import status_pages as pages_repo
from unistatus.services.audit import record_request_event
from unistatus.services.entitlements import LIMIT_STATUS_PAGES, enforce_resource_limit
from unistatus.services.status_pages import hash_page_password, merge_page_settings, subscribe, validate_slug


router = APIRouter(prefix="/status-pages", tags=["status-pages"], responses=DEFAULT_ERROR_RESPONSES)


class StatusPageCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str
    custom_domain: str | None = Field(default=None, max_length=253)
    published: bool = False
    logo: str | None = None
    favicon: str | None = None
    theme: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None


class StatusPagePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    slug: str | None = None
    custom_domain: str | None = Field(default=None, max_length=253)
    published: bool | None = None
    logo: str | None = None
    favicon: str | None = None
    theme: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None


class PasswordRequest(BaseModel):
    # Null clears protection.
    password: str | None = Field(default=None, min_length=4, max_length=200)


class StatusPageResponse(BaseModel):
    id: str
    name: str
    slug: str
    custom_domain: str | None
    published: bool
    password_protected: bool
    logo: str | None
    favicon: str | None
    theme: dict[str, Any] | None
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class PageMonitorRequest(BaseModel):
    monitor_id: str
    display_name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    order: int = 0
    group_id: str | None = None
    show_response_time: bool = True


class PageMonitorPatchRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    order: int | None = None
    group_id: str | None = None
    show_response_time: bool | None = None


class PageMonitorResponse(BaseModel):
    id: str
    monitor_id: str
    monitor_name: str
    display_name: str | None
    description: str | None
    order: int
    group_id: str | None
    show_response_time: bool


class GroupRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    order: int = 0
    collapsed: bool = False


class GroupPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    order: int | None = None
    collapsed: bool | None = None


class GroupResponse(BaseModel):
    id: str
    name: str
    description: str | None
    order: int
    collapsed: bool


class SubscriberRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class SubscriberResponse(BaseModel):
    id: str
    email: str
    verified: bool
    created_at: datetime


def _page_payload(page: StatusPage) -> StatusPageResponse:
    return StatusPageResponse(
        id=page.id,
        name=page.name,
        slug=page.slug,
        custom_domain=page.custom_domain,
        published=page.published,
        password_protected=page.password_hash is not None,
        logo=page.logo,
        favicon=page.favicon,
        theme=page.theme_json,
        settings=merge_page_settings(page.settings_json),
        created_at=page.created_at,
        updated_at=page.updated_at,
    )


def _group_payload(group: StatusPageGroup) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        name=group.name,
        description=group.description,
        order=group.display_order,
        collapsed=group.collapsed,
    )


def _link_payload(link: StatusPageMonitor, monitor_name: str) -> PageMonitorResponse:
    return PageMonitorResponse(
        id=link.id,
        monitor_id=link.monitor_id,
        monitor_name=monitor_name,
        display_name=link.display_name,
        description=link.description,
        order=link.display_order,
        group_id=link.group_id,
        show_response_time=link.show_response_time,
    )


def _subscriber_payload(row: Subscriber) -> SubscriberResponse:
    return SubscriberResponse(id=row.id, email=row.email, verified=row.verified, created_at=row.created_at)


def _slug_or_422(slug: str) -> str:
    try:
        return validate_slug(slug)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "INVALID_SLUG", "message": str(exc)}) from exc


async def _load_page(db: AsyncSession, page_id: str, principal: Principal) -> StatusPage:
    page = await pages_repo.get_page_for_org(db, page_id, principal.organization_id)
    if page is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Status page not found"})
    return page


async def _check_group(db: AsyncSession, page: StatusPage, group_id: str | None) -> None:
    if group_id is not None and await pages_repo.get_group(db, page_id=page.id, group_id=group_id) is None:
        raise HTTPException(
            status_code=422, detail={"code": "INVALID_GROUP", "message": "Group does not belong to this page"}
        )


async def _commit_page(db: AsyncSession, row: Any, action: str) -> None:
    # Slug and custom domain are globally unique.
    try:
        await db.commit()
        await db.refresh(row)
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "STATUS_PAGE_CONFLICT", "message": "Slug or custom domain is already in use"},
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


@router.get("", response_model=SuccessEnvelope[list[StatusPageResponse]] | list[StatusPageResponse])
async def list_status_pages(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await pages_repo.list_pages(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_page_payload(row) for row in rows], next_offset=next_offset)


@router.post("", status_code=201, response_model=SuccessEnvelope[StatusPageResponse] | StatusPageResponse)
async def create_status_page(
    payload: StatusPageCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    slug = _slug_or_422(payload.slug)
    current = await pages_repo.count_pages(db, organization_id=principal.organization_id)
    await enforce_resource_limit(
        session=db,
        organization_id=principal.organization_id,
        resource=LIMIT_STATUS_PAGES,
        current_count=current,
    )
    page = StatusPage(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        slug=slug,
        custom_domain=payload.custom_domain.strip().lower() if payload.custom_domain else None,
        published=payload.published,
        logo=payload.logo,
        favicon=payload.favicon,
        theme_json=payload.theme,
        settings_json=merge_page_settings(payload.settings),
    )
    db.add(page)
    await _commit_page(db, page, "creating status page")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.created",
        resource_type="status_page",
        resource_id=page.id,
        metadata={"slug": slug},
    )
    return success_response(request=request, data=_page_payload(page))


@router.get("/{page_id}", response_model=SuccessEnvelope[StatusPageResponse] | StatusPageResponse)
async def get_status_page(
    page_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    return success_response(request=request, data=_page_payload(page))


@router.patch("/{page_id}", response_model=SuccessEnvelope[StatusPageResponse] | StatusPageResponse)
async def patch_status_page(
    page_id: str,
    payload: StatusPagePatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if payload.slug is not None:
        page.slug = _slug_or_422(payload.slug)
    if "custom_domain" in changes:
        page.custom_domain = payload.custom_domain.strip().lower() if payload.custom_domain else None
    if payload.settings is not None:
        page.settings_json = merge_page_settings({**(page.settings_json or {}), **payload.settings})
    if "theme" in changes:
        page.theme_json = payload.theme
    for field in ("name", "published", "logo", "favicon"):
        if field in changes and (changes[field] is not None or field in {"logo", "favicon"}):
            setattr(page, field, changes[field])
    await _commit_page(db, page, "updating status page")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.updated",
        resource_type="status_page",
        resource_id=page.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_page_payload(page))


@router.delete("/{page_id}", status_code=204)
async def delete_status_page(
    page_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    page = await _load_page(db, page_id, principal)
    await db.delete(page)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.deleted",
        resource_type="status_page",
        resource_id=page_id,
    )
    return None


@router.put("/{page_id}/password", response_model=SuccessEnvelope[StatusPageResponse] | StatusPageResponse)
async def set_status_page_password(
    page_id: str,
    payload: PasswordRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    page.password_hash = hash_page_password(payload.password) if payload.password else None
    await _commit_page(db, page, "setting status page password")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.password_set" if payload.password else "status_page.password_cleared",
        resource_type="status_page",
        resource_id=page.id,
    )
    return success_response(request=request, data=_page_payload(page))


@router.get(
    "/{page_id}/monitors",
    response_model=SuccessEnvelope[list[PageMonitorResponse]] | list[PageMonitorResponse],
)
async def list_page_monitors(
    page_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    rows = await pages_repo.list_page_monitors(db, page.id)
    return success_response(request=request, data=[_link_payload(link, monitor.name) for link, monitor in rows])


@router.post(
    "/{page_id}/monitors",
    status_code=201,
    response_model=SuccessEnvelope[PageMonitorResponse] | PageMonitorResponse,
)
async def add_page_monitor(
    page_id: str,
    payload: PageMonitorRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    # Pages may only show monitors from their own organization.
    monitor = await monitors_repo.get_monitor_for_org(db, payload.monitor_id, principal.organization_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Monitor not found"})
    await _check_group(db, page, payload.group_id)
    link = StatusPageMonitor(
        id=uuid4().hex,
        status_page_id=page.id,
        monitor_id=monitor.id,
        display_name=payload.display_name,
        description=payload.description,
        display_order=payload.order,
        group_id=payload.group_id,
        show_response_time=payload.show_response_time,
    )
    db.add(link)
    try:
        await db.commit()
        await db.refresh(link)
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "MONITOR_ALREADY_ON_PAGE", "message": "Monitor is already on this status page"},
        ) from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.monitor_added",
        resource_type="status_page",
        resource_id=page.id,
        metadata={"monitor_id": monitor.id},
    )
    return success_response(request=request, data=_link_payload(link, monitor.name))


@router.patch(
    "/{page_id}/monitors/{monitor_id}",
    response_model=SuccessEnvelope[PageMonitorResponse] | PageMonitorResponse,
)
async def patch_page_monitor(
    page_id: str,
    monitor_id: str,
    payload: PageMonitorPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    link = await pages_repo.get_page_monitor(db, page_id=page.id, monitor_id=monitor_id)
    if link is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Monitor is not on this page"})
    changes = payload.model_dump(exclude_unset=True)
    if "group_id" in changes:
        await _check_group(db, page, payload.group_id)
        link.group_id = payload.group_id
    if "display_name" in changes:
        link.display_name = payload.display_name
    if "description" in changes:
        link.description = payload.description
    if payload.order is not None:
        link.display_order = payload.order
    if payload.show_response_time is not None:
        link.show_response_time = payload.show_response_time
    await _commit_page(db, link, "updating status page monitor")
    monitor = await monitors_repo.get_monitor(db, monitor_id)
    return success_response(request=request, data=_link_payload(link, monitor.name if monitor else ""))


@router.delete("/{page_id}/monitors/{monitor_id}", status_code=204)
async def remove_page_monitor(
    page_id: str,
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    page = await _load_page(db, page_id, principal)
    link = await pages_repo.get_page_monitor(db, page_id=page.id, monitor_id=monitor_id)
    if link is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Monitor is not on this page"})
    await db.delete(link)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="status_page.monitor_removed",
        resource_type="status_page",
        resource_id=page.id,
        metadata={"monitor_id": monitor_id},
    )
    return None


@router.get("/{page_id}/groups", response_model=SuccessEnvelope[list[GroupResponse]] | list[GroupResponse])
async def list_groups(
    page_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    groups = await pages_repo.list_groups(db, page.id)
    return success_response(request=request, data=[_group_payload(group) for group in groups])


@router.post(
    "/{page_id}/groups",
    status_code=201,
    response_model=SuccessEnvelope[GroupResponse] | GroupResponse,
)
async def create_group(
    page_id: str,
    payload: GroupRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    group = StatusPageGroup(
        id=uuid4().hex,
        status_page_id=page.id,
        name=payload.name,
        description=payload.description,
        display_order=payload.order,
        collapsed=payload.collapsed,
    )
    db.add(group)
    await _commit_page(db, group, "creating status page group")
    return success_response(request=request, data=_group_payload(group))


@router.patch(
    "/{page_id}/groups/{group_id}",
    response_model=SuccessEnvelope[GroupResponse] | GroupResponse,
)
async def patch_group(
    page_id: str,
    group_id: str,
    payload: GroupPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    group = await pages_repo.get_group(db, page_id=page.id, group_id=group_id)
    if group is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Group not found"})
    if payload.name is not None:
        group.name = payload.name
    if "description" in payload.model_fields_set:
        group.description = payload.description
    if payload.order is not None:
        group.display_order = payload.order
    if payload.collapsed is not None:
        group.collapsed = payload.collapsed
    await _commit_page(db, group, "updating status page group")
    return success_response(request=request, data=_group_payload(group))


@router.delete("/{page_id}/groups/{group_id}", status_code=204)
async def delete_group(
    page_id: str,
    group_id: str,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    # Linked monitors fall back to ungrouped via ON DELETE SET NULL.
    page = await _load_page(db, page_id, principal)
    group = await pages_repo.get_group(db, page_id=page.id, group_id=group_id)
    if group is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Group not found"})
    await db.delete(group)
    await db.commit()
    return None


@router.get(
    "/{page_id}/subscribers",
    response_model=SuccessEnvelope[list[SubscriberResponse]] | list[SubscriberResponse],
)
async def list_subscribers(
    page_id: str,
    request: Request,
    page_params: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    rows = await pages_repo.list_subscribers(
        db, page.id, offset=page_params.offset, limit=page_params.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page_params.offset, limit=page_params.limit)
    return success_response(
        request=request, data=[_subscriber_payload(row) for row in rows], next_offset=next_offset
    )


@router.post(
    "/{page_id}/subscribers",
    status_code=201,
    response_model=SuccessEnvelope[SubscriberResponse] | SubscriberResponse,
)
async def add_subscriber(
    page_id: str,
    payload: SubscriberRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await _load_page(db, page_id, principal)
    subscriber, _created = await subscribe(db, page=page, email=payload.email)
    return success_response(request=request, data=_subscriber_payload(subscriber))


@router.delete("/{page_id}/subscribers/{subscriber_id}", status_code=204)
async def remove_subscriber(
    page_id: str,
    subscriber_id: str,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    page = await _load_page(db, page_id, principal)
    subscriber = await db.get(Subscriber, subscriber_id)
    if subscriber is None or subscriber.status_page_id != page.id:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Subscriber not found"})
    await db.delete(subscriber)
    await db.commit()
    return None
