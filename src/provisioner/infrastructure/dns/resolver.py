"""DNS lookups over the JSON DNS-over-HTTPS API."""

from __future__ import annotations

import httpx
import structlog

from provisioner.domain.ports.services import DnsLookupError, DnsResolver


logger = structlog.get_logger(__name__)

NS_RECORD_TYPE = 2
NOERROR = 0
NXDOMAIN = 3


class DnsOverHttpsResolver(DnsResolver):
    """Resolves through a public resolver, bypassing the local stub and its cache."""

    def __init__(
        self,
        resolver_url: str = "https://dns.google/resolve",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._resolver_url = resolver_url
        self._timeout = timeout
        self._transport = transport

    async def name_servers(self, domain: str) -> list[str]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    self._resolver_url,
                    params={"name": domain, "type": "NS"},
                    headers={"Accept": "application/dns-json"},
                )
            except httpx.HTTPError as e:
                raise DnsLookupError(f"NS lookup for {domain} failed: {e}") from e

        if response.status_code != 200:
            raise DnsLookupError(f"NS lookup for {domain} returned {response.status_code}")

        body = response.json()
        status = body.get("Status")
        if status == NXDOMAIN:
            return []
        if status != NOERROR:
            raise DnsLookupError(f"NS lookup for {domain} returned rcode {status}")

        records = [
            answer["data"].rstrip(".")
            for answer in body.get("Answer", [])
            if answer.get("type") == NS_RECORD_TYPE
        ]
        logger.debug("name_servers_resolved", domain=domain, count=len(records))
        return records
