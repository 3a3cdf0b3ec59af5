from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
import secrets
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.errors import DomainVerificationError
from unistatus.domain.models import OrganizationDomain
from unistatus.services.dns import resolve_records


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "unistatus-verify="
RECORD_PREFIX = "_unistatus"
RECORD_TTL = 300
_DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*\.[a-z]{2,63}$")


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    error_code: str | None = None
    message: str | None = None
    found_records: tuple[str, ...] = ()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_domain(domain: str) -> str:
    # Lower-case, strip scheme and trailing dot so one domain has one spelling.
    value = domain.strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    value = value.split("/", 1)[0].rstrip(".")
    if not _DOMAIN_PATTERN.match(value):
        raise ValueError(f"Invalid domain: {domain}")
    return value


def generate_verification_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_hex(16)}"


def record_name(domain: str) -> str:
    return f"{RECORD_PREFIX}.{domain}"


def verification_instructions(row: OrganizationDomain) -> dict[str, Any]:
    return {"type": "TXT", "name": record_name(row.domain), "value": row.verification_token, "ttl": RECORD_TTL}


def match_verification_token(records: list[str], expected: str) -> VerificationResult:
    cleaned = tuple(record.strip().strip('"') for record in records)
    if not cleaned:
        return VerificationResult(
            verified=False,
            error_code="DNS_RECORD_NOT_FOUND",
            message="No TXT record found for the verification name",
        )
    if expected in cleaned:
        return VerificationResult(verified=True, found_records=cleaned)
    return VerificationResult(
        verified=False,
        error_code="VERIFICATION_FAILED",
        message="TXT record found but the verification token does not match",
        found_records=cleaned,
    )


async def get_domain_by_name(session: AsyncSession, domain: str) -> OrganizationDomain | None:
    result = await session.execute(select(OrganizationDomain).where(OrganizationDomain.domain == domain))
    return result.scalar_one_or_none()


async def list_domains(session: AsyncSession, *, organization_id: str) -> list[OrganizationDomain]:
    result = await session.execute(
        select(OrganizationDomain)
        .where(OrganizationDomain.organization_id == organization_id)
        .order_by(OrganizationDomain.created_at, OrganizationDomain.id)
    )
    return list(result.scalars().all())


async def get_domain_for_org(
    session: AsyncSession, domain_id: str, organization_id: str
) -> OrganizationDomain | None:
    result = await session.execute(
        select(OrganizationDomain).where(
            OrganizationDomain.id == domain_id, OrganizationDomain.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def verify_domain(session: AsyncSession, row: OrganizationDomain) -> VerificationResult:
    """Check the ``_unistatus.<domain>`` TXT record and mark the domain verified.

    Already verified domains short-circuit without a DNS lookup.
    """
    if row.verified:
        return VerificationResult(verified=True)
    try:
        records = await resolve_records(record_name(row.domain), "TXT")
    except DomainVerificationError as exc:
        logger.warning("domain_verification_dns_failed domain=%s", row.domain)
        return VerificationResult(verified=False, error_code="DNS_RECORD_NOT_FOUND", message=str(exc))
    result = match_verification_token(records, row.verification_token)
    if result.verified:
        row.verified = True
        row.verified_at = _utc_now()
        await session.commit()
        await session.refresh(row)
    return result


async def find_sso_domain(session: AsyncSession, email: str) -> OrganizationDomain | None:
    # SSO discovery only trusts verified domains.
    if "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    result = await session.execute(
        select(OrganizationDomain).where(
            OrganizationDomain.domain == domain, OrganizationDomain.verified.is_(True)
        )
    )
    return result.scalar_one_or_none()
