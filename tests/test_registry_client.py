"""Unit tests for the registry REST client."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from calbridge.config import RegistryConfig
from calbridge.errors import UpstreamAPIError, UpstreamAuthError
from calbridge.providers.registry import RegistryClient, build_update_payload

pytestmark = pytest.mark.unit

REFRESH_URL = "https://registry.example.com/refresh-token"
UPDATE_URL = "https://registry.example.com/update-record"


def _response(status_code: int, url: str, json_body=None, text: str = "") -> httpx.Response:
    request = httpx.Request("PUT", url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


def _token_response(tenant: str = "lab-tenant") -> httpx.Response:
    return _response(
        200,
        REFRESH_URL,
        {
            "tokens": [
                {"tenant": "other-tenant", "accessToken": "wrong"},
                {"tenant": tenant, "accessToken": "registry-access"},
            ]
        },
    )


@pytest.fixture
def config() -> RegistryConfig:
    return RegistryConfig(
        refresh_url=REFRESH_URL,
        update_url=UPDATE_URL,
        tenant_name="lab-tenant",
        refresh_token="registry-refresh",
    )


@pytest.fixture
def mock_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(config, mock_client) -> RegistryClient:
    return RegistryClient(config, http_client=mock_client)


class TestBuildUpdatePayload:
    def test_row_structure(self):
        payload = build_update_payload("4521", {"StartUse": "2025-02-27T19:00:00Z"})
        assert payload == {
            "recordId": "4521",
            "fields": [
                {
                    "identifier": "StartUse",
                    "rows": [{"row": 0, "values": [{"value": "2025-02-27T19:00:00Z"}]}],
                }
            ],
        }


class TestRefresh:
    async def test_selects_configured_tenant(self, client, mock_client):
        mock_client.put.return_value = _token_response()
        assert await client.refresh_access_token() == "registry-access"
        args, kwargs = mock_client.put.await_args
        assert args == (REFRESH_URL,)
        assert kwargs["json"] == {"refreshToken": "registry-refresh"}

    async def test_unknown_tenant(self, client, mock_client):
        mock_client.put.return_value = _token_response(tenant="somebody-else")
        with pytest.raises(UpstreamAuthError, match="lab-tenant"):
            await client.refresh_access_token()

    async def test_error_status(self, client, mock_client):
        mock_client.put.return_value = _response(401, REFRESH_URL, {"message": "expired"})
        with pytest.raises(UpstreamAuthError) as exc_info:
            await client.refresh_access_token()
        assert exc_info.value.service == "registry"
        assert "expired" in exc_info.value.message

    async def test_missing_tokens_array(self, client, mock_client):
        mock_client.put.return_value = _response(200, REFRESH_URL, {"ok": True})
        with pytest.raises(UpstreamAuthError):
            await client.refresh_access_token()

    async def test_unconfigured_refresh_token(self, mock_client):
        client = RegistryClient(RegistryConfig(refresh_token=None), http_client=mock_client)
        with pytest.raises(UpstreamAuthError):
            await client.refresh_access_token()
        mock_client.put.assert_not_awaited()

    async def test_transport_error(self, client, mock_client):
        mock_client.put.side_effect = httpx.ConnectError("no route")
        with pytest.raises(UpstreamAuthError):
            await client.refresh_access_token()


class TestUpdateRecord:
    async def test_push_times(self, client, mock_client):
        mock_client.put.side_effect = [
            _token_response(),
            _response(200, UPDATE_URL, {"status": "ok"}),
        ]
        result = await client.push_times(
            "4521", start="2025-02-27T19:00:00Z", end="2025-02-27T20:00:00Z"
        )
        assert result == {"status": "ok"}

        args, kwargs = mock_client.put.await_args
        assert args == (UPDATE_URL,)
        assert kwargs["headers"]["Authorization"] == "Bearer registry-access"
        identifiers = [f["identifier"] for f in kwargs["json"]["fields"]]
        assert identifiers == ["StartUse", "EndUse"]

    async def test_mark_status_uses_status_field(self, client, mock_client):
        mock_client.put.side_effect = [_token_response(), _response(200, UPDATE_URL, text="")]
        assert await client.mark_status("4521", "Pushed to Calendar") == {}
        fields = mock_client.put.await_args.kwargs["json"]["fields"]
        assert fields[0]["identifier"] == "EventStatus"
        assert fields[0]["rows"][0]["values"][0]["value"] == "Pushed to Calendar"

    async def test_error_status_raises(self, client, mock_client):
        mock_client.put.side_effect = [
            _token_response(),
            _response(500, UPDATE_URL, {"error": "record locked"}),
        ]
        with pytest.raises(UpstreamAPIError) as exc_info:
            await client.mark_status("4521", "Pushed to Calendar")
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "record locked"

    async def test_empty_values_rejected(self, client):
        with pytest.raises(ValueError):
            await client.update_record("4521", {})
