"""
Content-management API transport.

Talks to theme-asset style HTTP APIs where every asset is addressed by key:

    GET    {endpoint}/assets.json?asset[key]=<key>
    PUT    {endpoint}/assets.json   {"asset": {"key": ..., "value": ...}}
    DELETE {endpoint}/assets.json?asset[key]=<key>
"""
import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from patchdeploy.core.errors import TransientTransportError, TransportError
from patchdeploy.models.deployment import Connection, Platform
from patchdeploy.services.transports.base import TransportAdapter

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class CmsApiTransport(TransportAdapter):
    """Transport for hosted CMS platforms with an asset API."""

    platform = Platform.CMS_API

    def __init__(self, *args, http_transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        """
        Args:
            http_transport: Optional httpx transport, used to stub the remote API
        """
        super().__init__(*args, **kwargs)
        self.http_transport = http_transport

    def validate_connection(self, connection: Connection) -> List[str]:
        problems = super().validate_connection(connection)
        if connection.endpoint and not connection.endpoint.startswith(("http://", "https://")):
            problems.append("CMS API endpoint must be an http(s) URL")
        return problems

    def _get_headers(self, connection: Connection, credentials: Dict[str, str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if credentials.get("access_token"):
            header_name = connection.options.get("auth_header")
            if header_name:
                headers[header_name] = credentials["access_token"]
            else:
                headers["Authorization"] = f"Bearer {credentials['access_token']}"
        elif credentials.get("username") and credentials.get("password"):
            token = base64.b64encode(f"{credentials['username']}:{credentials['password']}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        else:
            raise TransportError("CMS API credentials need an access token or username and password")
        return headers

    def _assets_url(self, connection: Connection) -> str:
        return f"{connection.endpoint.rstrip('/')}/assets.json"

    async def _request(
        self,
        method: str,
        connection: Connection,
        credentials: Dict[str, str],
        asset_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._get_headers(connection, credentials)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
                response = await client.request(
                    method,
                    self._assets_url(connection),
                    params=params,
                    json=json_data,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"CMS API timeout for {asset_key}: {e}", asset_key=asset_key)
        except httpx.TransportError as e:
            raise TransientTransportError(f"CMS API network error for {asset_key}: {e}", asset_key=asset_key)

        if response.status_code in TRANSIENT_STATUS_CODES:
            logger.warning(f"CMS API returned {response.status_code} for {asset_key}; will retry")
            raise TransientTransportError(
                f"CMS API returned {response.status_code} for {asset_key}", asset_key=asset_key
            )
        return response

    async def read_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> Optional[str]:
        response = await self._request(
            "GET", connection, credentials, asset_key, params={"asset[key]": asset_key}
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransportError(
                f"CMS API read of {asset_key} failed with {response.status_code}: {response.text}",
                asset_key=asset_key,
            )

        asset = response.json().get("asset") or {}
        if asset.get("value") is not None:
            return asset["value"]
        if asset.get("attachment") is not None:
            return base64.b64decode(asset["attachment"]).decode("utf-8")
        return None

    async def write_asset(
        self, connection: Connection, credentials: Dict[str, str], asset_key: str, content: str
    ) -> None:
        response = await self._request(
            "PUT",
            connection,
            credentials,
            asset_key,
            json_data={"asset": {"key": asset_key, "value": content}},
        )
        if response.status_code >= 400:
            raise TransportError(
                f"CMS API write of {asset_key} failed with {response.status_code}: {response.text}",
                asset_key=asset_key,
            )

    async def delete_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> None:
        response = await self._request(
            "DELETE", connection, credentials, asset_key, params={"asset[key]": asset_key}
        )
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise TransportError(
                f"CMS API delete of {asset_key} failed with {response.status_code}: {response.text}",
                asset_key=asset_key,
            )
