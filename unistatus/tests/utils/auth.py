from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete

from unistatus.domain.models import ApiKey, AuditEvent, Organization, OrganizationMember
from unistatus.persistence.db import SessionLocal
from unistatus.services.auth.api_keys import generate_api_key, normalize_role


def _utc_now() -> datetime:
    # Keep timestamps consistent for test-generated auth records.
    return datetime.now(timezone.utc)


async def create_test_organization(*, organization_id: str | None = None, name: str | None = None) -> str:
    resolved_id = organization_id or f"org_{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        existing = await session.get(Organization, resolved_id)
        if existing is None:
            session.add(
                Organization(
                    id=resolved_id,
                    name=name or resolved_id,
                    slug=resolved_id.replace("_", "-"),
                    settings_json={},
                )
            )
            await session.commit()
    return resolved_id


async def create_test_api_key(
    *,
    organization_id: str,
    role: str,
    name: str = "test-key",
    email: str | None = None,
    member_status: str = "active",
    key_revoked: bool = False,
    key_expires_at: datetime | None = None,
) -> tuple[str, dict[str, str], str, str]:
    # Provision a member + API key pair for integration tests.
    await create_test_organization(organization_id=organization_id)
    normalized_role = normalize_role(role)
    member_id = uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        session.add(
            OrganizationMember(
                id=member_id,
                organization_id=organization_id,
                email=email or f"{member_id[:8]}@example.com",
                role=normalized_role,
                status=member_status,
            )
        )
        # Flush the member insert before the API key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                member_id=member_id,
                organization_id=organization_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=name,
                expires_at=key_expires_at,
                revoked_at=_utc_now() if key_revoked else None,
            )
        )
        await session.commit()

    headers = {"Authorization": f"Bearer {raw_key}"}
    return raw_key, headers, member_id, key_id


async def cleanup_test_organization(organization_id: str) -> None:
    # Organization-scoped rows cascade; audit rows carry no foreign key.
    async with SessionLocal() as session:
        await session.execute(delete(AuditEvent).where(AuditEvent.organization_id == organization_id))
        await session.execute(delete(Organization).where(Organization.id == organization_id))
        await session.commit()
