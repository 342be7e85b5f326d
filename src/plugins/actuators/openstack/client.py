"""
OpenStack REST client.

A small aiohttp client for the Networking (neutron) and Identity (keystone)
APIs. HTTP failures are raised as CloudError subclasses so the controller
can tell transient failures from terminal ones.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from progress import (
    CloudError,
    Conflict,
    Forbidden,
    NotFound,
    RateLimited,
    ServiceUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


def error_for_status(status: int, message: str) -> CloudError:
    """Map an HTTP error status to the matching CloudError."""
    if status == 404:
        return NotFound(message, status)
    if status == 409:
        return Conflict(message, status)
    if status == 429:
        return RateLimited(message, status)
    if status == 403:
        return Forbidden(message, status)
    if status in (400, 422):
        return ValidationFailed(message, status)
    if status >= 500:
        return ServiceUnavailable(message, status)
    return CloudError(message, status)


class OpenStackClient:
    """
    Client for one OpenStack service endpoint.

    Args:
        endpoint: Service base URL, e.g. ``http://neutron:9696/v2.0``.
        token: Keystone token sent as ``X-Auth-Token``.
        timeout: Total timeout for each request, in seconds.
    """

    def __init__(self, endpoint: str, token: Optional[str] = None, timeout: int = 30):
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.token:
            headers["X-Auth-Token"] = self.token
        return headers

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Send one request and decode its JSON body.

        Returns:
            The decoded body, or None for empty responses.

        Raises:
            CloudError: For any non-2xx status, connection failure or timeout.
        """
        url = f"{self.endpoint}/{path.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    json=body,
                    params=params,
                ) as response:
                    text = await response.text()
                    if response.status >= 300:
                        raise error_for_status(
                            response.status,
                            f"{method} {url} returned {response.status}: {text}",
                        )
        except aiohttp.ClientError as e:
            raise ServiceUnavailable(f"{method} {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ServiceUnavailable(f"{method} {url} timed out") from e

        logger.debug(f"{method} {url} -> {response.status}")
        return json.loads(text) if text else None

    async def get(
        self, collection: str, key: str, resource_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get one resource, or None if it does not exist."""
        try:
            body = await self.request("GET", f"{collection}/{resource_id}")
        except NotFound:
            return None
        return (body or {}).get(key)

    async def list(
        self, collection: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """List resources matching exact-match query filters."""
        params = {k: v for k, v in (filters or {}).items() if v is not None}
        body = await self.request("GET", collection, params=params)
        return (body or {}).get(collection.replace("-", "_"), [])

    async def create(
        self, collection: str, key: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = await self.request("POST", collection, body={key: fields})
        return (body or {})[key]

    async def update(
        self, collection: str, key: str, resource_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = await self.request(
            "PUT", f"{collection}/{resource_id}", body={key: fields}
        )
        return (body or {})[key]

    async def delete(self, collection: str, resource_id: str) -> None:
        await self.request("DELETE", f"{collection}/{resource_id}")

    async def replace_all_tags(
        self, resource_type: str, resource_id: str, tags: List[str]
    ) -> None:
        """Replace every tag on a resource with ``tags`` in one call."""
        await self.request(
            "PUT", f"{resource_type}/{resource_id}/tags", body={"tags": tags}
        )
