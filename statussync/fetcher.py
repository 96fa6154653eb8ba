"""
Snapshot Fetcher: point-in-time state over REST.

Reads the current services and incidents of an organization, either
through the authenticated dashboard endpoints (organization implied by
the bearer token) or the unauthenticated public endpoints addressed by
org id. Stateless apart from the injected aiohttp session; never
retries on its own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from statussync.codec import parse_incidents_body, parse_services_body
from statussync.errors import MalformedEventError, NotFoundError, TransportError
from statussync.models import Incident, Service, Snapshot

log = logging.getLogger(__name__)


class SnapshotFetcher:
    """
    Fetches services and incidents for one organization mode.

    Attributes:
        api_url: Base URL of the REST API, e.g. ``http://host:8080/api``.
        public: Use the unauthenticated ``/public/{org_id}/...`` routes.
        token: Bearer token for the authenticated routes.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_url: str,
        timeout: float = 10.0,
        public: bool = True,
        token: Optional[str] = None,
    ) -> None:
        self._session = session
        self.api_url = api_url.rstrip("/")
        self.public = public
        self.token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, org_id: str, resource: str) -> str:
        if self.public:
            return f"{self.api_url}/public/{quote(org_id, safe='')}/{resource}"
        return f"{self.api_url}/{resource}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if not self.public and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json(self, org_id: str, resource: str) -> Any:
        url = self._url(org_id, resource)
        try:
            async with self._session.get(
                url,
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                if resp.status == 404:
                    raise NotFoundError(org_id, {"url": url})
                if resp.status < 200 or resp.status >= 300:
                    raise TransportError(
                        f"GET {resource} returned HTTP {resp.status}",
                        {"url": url, "status": resp.status},
                    )
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"GET {resource} timed out", {"url": url}) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"GET {resource} failed: {exc}", {"url": url}) from exc
        except ValueError as exc:
            raise TransportError(f"GET {resource} returned invalid JSON", {"url": url}) from exc

    async def fetch_services(self, org_id: str) -> List[Service]:
        body = await self._get_json(org_id, "services")
        try:
            return parse_services_body(body)
        except MalformedEventError as exc:
            raise TransportError(f"Unusable services response: {exc}") from exc

    async def fetch_incidents(self, org_id: str) -> List[Incident]:
        body = await self._get_json(org_id, "incidents")
        try:
            return parse_incidents_body(body)
        except MalformedEventError as exc:
            raise TransportError(f"Unusable incidents response: {exc}") from exc

    async def fetch_snapshot(self, org_id: str) -> Snapshot:
        """
        Fetch services and incidents concurrently.

        Raises:
            NotFoundError: the organization is unknown.
            TransportError: network failure, timeout or bad response.
        """
        services, incidents = await asyncio.gather(
            self.fetch_services(org_id),
            self.fetch_incidents(org_id),
        )
        log.debug(
            "Snapshot for %s: %d service(s), %d incident(s)",
            org_id,
            len(services),
            len(incidents),
        )
        return Snapshot(services=tuple(services), incidents=tuple(incidents))
