from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from sqlalchemy import func, select

from unistatus.domain.models import ApiKey, Organization, OrganizationMember
from unistatus.persistence.db import SessionLocal
from unistatus.services.audit import record_event
from unistatus.services.auth.api_keys import generate_api_key, normalize_role
from unistatus.services.organizations import slugify


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for an organization member")
    parser.add_argument("--organization", required=True, help="Organization id (created when missing)")
    parser.add_argument("--role", required=True, help="Role: viewer|member|admin|owner")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--email", default=None, help="Member email; defaults to a generated service address")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    email = (args.email or f"service+{uuid4().hex[:8]}@{args.organization}.local").strip().lower()
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        organization = await session.get(Organization, args.organization)
        if organization is None:
            organization = Organization(
                id=args.organization,
                name=args.organization,
                slug=slugify(args.organization),
                settings_json={},
            )
            session.add(organization)
            await session.flush()

        member = (
            await session.execute(
                select(OrganizationMember).where(
                    OrganizationMember.organization_id == organization.id,
                    func.lower(OrganizationMember.email) == email,
                )
            )
        ).scalar_one_or_none()
        if member is None:
            member = OrganizationMember(
                id=uuid4().hex,
                organization_id=organization.id,
                email=email,
                role=role,
                status="active",
            )
            session.add(member)
        elif member.role != role:
            member.role = role
        # Flush the member row before inserting API keys to satisfy FK constraints.
        await session.flush()

        session.add(
            ApiKey(
                id=key_id,
                member_id=member.id,
                organization_id=organization.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await session.commit()

        await record_event(
            session=session,
            organization_id=organization.id,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=key_id,
            metadata={"member_id": member.id, "key_prefix": key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    print("API key created:")
    print(f"  organization_id: {args.organization}")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
