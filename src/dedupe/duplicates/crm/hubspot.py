"""HubSpot CRM adapter -- contact fetch, update and merge over the CRM v3 REST API.

Implements CRMAdapter with httpx.AsyncClient. Transient failures (transport
errors, timeouts, 429 and 5xx) are retried with tenacity exponential backoff
and surface as UpstreamUnavailable once retries are exhausted; any other 4xx
surfaces immediately as UpstreamRejected with HubSpot's message.

Endpoints:
- GET    /crm/v3/objects/contacts          (cursor pagination via ``after``)
- PATCH  /crm/v3/objects/contacts/{id}
- POST   /crm/v3/objects/contacts/merge    (secondary merged into primary)
- DELETE /crm/v3/objects/contacts/{id}     (secondary with no primary)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.dedupe.core.monitoring import track_crm_call
from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.crm.field_mapping import STANDARD_PROPERTIES, from_hubspot_contact
from src.dedupe.duplicates.errors import UpstreamRejected, UpstreamUnavailable
from src.dedupe.duplicates.schemas import ContactPage

logger = structlog.get_logger(__name__)

CONTACTS_PATH = "/crm/v3/objects/contacts"
MERGE_PATH = "/crm/v3/objects/contacts/merge"

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class _TransientCRMError(Exception):
    """Retryable failure; converted to UpstreamUnavailable after the last attempt."""


def _error_message(response: httpx.Response) -> str:
    """Extract HubSpot's error message from a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"


class HubSpotAdapter(CRMAdapter):
    """HubSpot contacts adapter.

    Args:
        access_token: Private app token or OAuth access token.
        base_url: API root, overridable for sandboxes and tests.
        page_size: Contacts per fetch page (HubSpot maximum is 100).
        timeout: Per-request timeout in seconds.
        max_retries: Attempts per call for transient failures.
        backoff: Exponential backoff multiplier in seconds (0 disables waiting).
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        page_size: int = 100,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._backoff = backoff
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        missing_ok: bool = False,
    ) -> dict[str, Any] | None:
        """Send one logical request with retries.

        Returns the decoded JSON body ({} for empty bodies), or None when
        ``missing_ok`` is set and HubSpot answered 404.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=10),
            retry=retry_if_exception_type(_TransientCRMError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send(
                        operation, method, path, json=json, params=params, missing_ok=missing_ok
                    )
        except _TransientCRMError as exc:
            logger.warning("hubspot.unavailable", operation=operation, path=path, error=str(exc))
            raise UpstreamUnavailable(f"HubSpot {operation} failed: {exc}") from exc
        return None

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
        missing_ok: bool,
    ) -> dict[str, Any] | None:
        async with track_crm_call(operation):
            async with self._client() as client:
                try:
                    response = await client.request(method, path, json=json, params=params)
                except httpx.TransportError as exc:
                    raise _TransientCRMError(str(exc) or exc.__class__.__name__) from exc

            if response.status_code == 404 and missing_ok:
                return None
            if response.status_code in _RETRYABLE_STATUS:
                raise _TransientCRMError(f"HTTP {response.status_code}")
            if response.is_error:
                raise UpstreamRejected(
                    f"HubSpot {operation} rejected: {_error_message(response)}",
                    http_status=response.status_code,
                )

        if not response.content:
            return {}
        return response.json()

    # ── CRMAdapter ──────────────────────────────────────────────────────────

    async def fetch_contacts(
        self, cursor: str | None, properties: Sequence[str] = ()
    ) -> ContactPage:
        """GET one page of contacts with standard plus requested properties."""
        requested = list(STANDARD_PROPERTIES)
        requested.extend(p for p in properties if p not in requested)
        params: dict[str, Any] = {
            "limit": self._page_size,
            "properties": ",".join(requested),
        }
        if cursor:
            params["after"] = cursor

        data = await self._request("fetch_contacts", "GET", CONTACTS_PATH, params=params) or {}
        contacts = [from_hubspot_contact(record) for record in data.get("results", [])]
        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")

        logger.debug(
            "hubspot.contacts_fetched",
            count=len(contacts),
            has_more=next_cursor is not None,
        )
        return ContactPage(contacts=contacts, next_cursor=str(next_cursor) if next_cursor else None)

    async def update_contact(self, external_id: str, properties: dict[str, str]) -> str | None:
        """PATCH the contact's properties; return the id HubSpot answers with if it changed."""
        data = await self._request(
            "update_contact",
            "PATCH",
            f"{CONTACTS_PATH}/{external_id}",
            json={"properties": properties},
        ) or {}
        new_id = data.get("id")
        logger.info(
            "hubspot.contact_updated",
            external_id=external_id,
            fields=sorted(properties),
        )
        if new_id is not None and str(new_id) != str(external_id):
            return str(new_id)
        return None

    async def delete_or_merge_contact(
        self, external_id: str, into_external_id: str | None = None
    ) -> str | None:
        """Merge ``external_id`` into ``into_external_id``, or delete it outright.

        A secondary HubSpot no longer knows (404) is treated as already gone.
        """
        if into_external_id is None:
            await self._request(
                "delete_contact",
                "DELETE",
                f"{CONTACTS_PATH}/{external_id}",
                missing_ok=True,
            )
            logger.info("hubspot.contact_deleted", external_id=external_id)
            return None

        data = await self._request(
            "merge_contact",
            "POST",
            MERGE_PATH,
            json={"primaryObjectId": into_external_id, "objectIdToMerge": external_id},
            missing_ok=True,
        )
        if data is None:
            logger.info("hubspot.secondary_missing", external_id=external_id)
            return None

        logger.info(
            "hubspot.contact_merged",
            external_id=external_id,
            into_external_id=into_external_id,
        )
        surviving = data.get("id")
        return str(surviving) if surviving is not None else None
