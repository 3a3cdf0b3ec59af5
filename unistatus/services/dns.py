from __future__ import annotations

import logging

import httpx

from unistatus.core.config import get_settings
from unistatus.core.errors import DomainVerificationError


logger = logging.getLogger(__name__)

RECORD_TYPE_CODES: dict[str, int] = {
    "A": 1,
    "NS": 2,
    "CNAME": 5,
    "MX": 15,
    "TXT": 16,
    "AAAA": 28,
}
_NXDOMAIN = 3


def _resolver_urls() -> list[str]:
    raw = get_settings().dns_over_https_urls
    return [item.strip() for item in raw.split(",") if item.strip()]


def _normalize_answer(record_type: str, data: str) -> str:
    # TXT data arrives as one or more quoted character-strings; join them.
    value = str(data).strip()
    if record_type == "TXT":
        parts = [part for part in value.split('"') if part.strip()]
        return "".join(parts) if parts else value
    return value.rstrip(".") if record_type in {"CNAME", "NS", "MX"} else value


async def resolve_records(
    name: str,
    record_type: str,
    *,
    timeout_s: float = 5.0,
    client: httpx.AsyncClient | None = None,
) -> list[str]:
    """Resolve DNS records through DNS-over-HTTPS JSON resolvers.

    Resolvers are tried in order; the first one that answers wins. NXDOMAIN
    and empty answers return ``[]``. ``DomainVerificationError`` is raised only
    when no resolver could be reached.
    """
    record_type = record_type.upper()
    type_code = RECORD_TYPE_CODES.get(record_type)
    if type_code is None:
        raise ValueError(f"Unsupported DNS record type: {record_type}")

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s)
    last_error: Exception | None = None
    try:
        for url in _resolver_urls():
            try:
                response = await http.get(
                    url,
                    params={"name": name, "type": record_type},
                    headers={"Accept": "application/dns-json"},
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                logger.warning("dns_resolver_failed resolver=%s name=%s type=%s", url, name, record_type)
                continue
            if int(payload.get("Status", 0)) == _NXDOMAIN:
                return []
            answers = payload.get("Answer") or []
            return [
                _normalize_answer(record_type, answer.get("data", ""))
                for answer in answers
                if int(answer.get("type", 0)) == type_code
            ]
    finally:
        if owns_client:
            await http.aclose()
    raise DomainVerificationError(f"No DNS-over-HTTPS resolver answered for {name}: {last_error}")
