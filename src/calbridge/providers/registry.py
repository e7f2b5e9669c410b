"""Registry (Alchemy) REST client.

Only two calls are consumed: the tenant token refresh and the record field
update. Field values travel in the registry's row structure::

    {"recordId": "...", "fields": [
        {"identifier": "StartUse", "rows": [{"row": 0, "values": [{"value": "..."}]}]}
    ]}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from calbridge.config import RegistryConfig
from calbridge.errors import UpstreamAPIError, UpstreamAuthError, safe_error_message

logger = logging.getLogger(__name__)

SERVICE_NAME = "registry"


def build_update_payload(record_id: str, values: dict[str, str]) -> dict[str, Any]:
    return {
        "recordId": record_id,
        "fields": [
            {"identifier": identifier, "rows": [{"row": 0, "values": [{"value": value}]}]}
            for identifier, value in values.items()
        ],
    }


def _response_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return safe_error_message(response.text or "Request failed without an error payload")
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return safe_error_message(value)
    return safe_error_message(str(payload))


class RegistryClient:
    """Token refresh + record update against one registry tenant."""

    def __init__(
        self,
        config: RegistryConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._refresh_lock = asyncio.Lock()

    @property
    def config(self) -> RegistryConfig:
        return self._config

    async def refresh_access_token(self) -> str:
        """Exchange the refresh token and return the configured tenant's access token."""
        if not self._config.refresh_token:
            raise UpstreamAuthError(
                service=SERVICE_NAME, message="registry refresh token is not configured"
            )

        async with self._refresh_lock:
            logger.info("Refreshing registry token for tenant %s", self._config.tenant_name)
            try:
                response = await self._http_client.put(
                    self._config.refresh_url,
                    json={"refreshToken": self._config.refresh_token},
                    headers={"Content-Type": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise UpstreamAuthError(
                    service=SERVICE_NAME, message=f"token request failed: {exc}"
                ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamAuthError(
                service=SERVICE_NAME,
                message=f"({response.status_code}) {_response_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAuthError(
                service=SERVICE_NAME, message="token endpoint returned invalid JSON"
            ) from exc

        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        if not isinstance(tokens, list):
            raise UpstreamAuthError(
                service=SERVICE_NAME, message="token response is missing the tokens array"
            )

        for token in tokens:
            if not isinstance(token, dict) or token.get("tenant") != self._config.tenant_name:
                continue
            access_token = token.get("accessToken")
            if isinstance(access_token, str) and access_token.strip():
                return access_token.strip()
            break

        raise UpstreamAuthError(
            service=SERVICE_NAME,
            message=f"tenant {self._config.tenant_name!r} not found in token response",
        )

    async def update_record(self, record_id: str, values: dict[str, str]) -> dict[str, Any]:
        """Write *values* (field identifier -> value) onto a registry record."""
        if not values:
            raise ValueError("values must contain at least one field")

        access_token = await self.refresh_access_token()
        try:
            response = await self._http_client.put(
                self._config.update_url,
                json=build_update_payload(record_id, values),
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise UpstreamAPIError(
                service=SERVICE_NAME, status_code=None, message=str(exc)
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamAPIError(
                service=SERVICE_NAME,
                status_code=response.status_code,
                message=_response_message(response),
            )

        logger.info("Registry record %s updated (%s)", record_id, ", ".join(values))
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"result": payload}

    async def push_times(self, record_id: str, *, start: str, end: str) -> dict[str, Any]:
        fields = self._config.fields
        return await self.update_record(record_id, {fields.start_field: start, fields.end_field: end})

    async def mark_status(self, record_id: str, status: str) -> dict[str, Any]:
        return await self.update_record(record_id, {self._config.fields.status_field: status})

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
