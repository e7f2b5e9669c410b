"""Google Calendar v3 client used as the reconciler's calendar gateway.

Auth is a refresh-token exchange against Google's OAuth endpoint. The access
token is cached until shortly before expiry; a 401 triggers exactly one forced
refresh, and 429/503 responses are retried with a bounded backoff.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calbridge.config import GoogleConfig
from calbridge.core.records import CounterpartEvent, EventDraft, EventStatus
from calbridge.errors import RecoverableNotFound, UpstreamAPIError, UpstreamAuthError
from calbridge.providers.base import CalendarGateway

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
SERVICE_NAME = "google"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
GONE_STATUS_CODES = {404, 410}
SEARCH_MAX_RESULTS = 25


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_config(cls, config: GoogleConfig) -> GoogleOAuthCredentials | None:
        """Return credentials, or ``None`` when any of the three values is unset."""
        if not (config.client_id and config.client_secret and config.refresh_token):
            return None
        return cls(
            client_id=config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
        )


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials | None,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        if self._credentials is None:
            raise UpstreamAuthError(
                service=SERVICE_NAME,
                message="Google OAuth credentials are not configured",
            )
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamAuthError(
                service=SERVICE_NAME, message=f"token request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamAuthError(
                service=SERVICE_NAME,
                message=f"({response.status_code}) {safe_google_error_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAuthError(
                service=SERVICE_NAME, message="token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise UpstreamAuthError(
                service=SERVICE_NAME,
                message="token response is missing a non-empty access_token",
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
        logger.debug("Refreshed Google access token (ttl=%ss)", refresh_ttl_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _boundary_text(payload: Any) -> tuple[str | None, str | None]:
    if not isinstance(payload, dict):
        return None, None
    value = payload.get("dateTime") or payload.get("date")
    timezone = payload.get("timeZone")
    return (
        value if isinstance(value, str) and value.strip() else None,
        timezone if isinstance(timezone, str) and timezone.strip() else None,
    )


def _parse_google_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def _parse_google_updated(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def google_event_to_counterpart(payload: dict[str, Any]) -> CounterpartEvent:
    """Convert a Google event resource into the calendar-side record shape."""
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise UpstreamAPIError(
            service=SERVICE_NAME,
            status_code=None,
            message="event payload is missing an id",
        )

    start, start_tz = _boundary_text(payload.get("start"))
    end, end_tz = _boundary_text(payload.get("end"))

    private_metadata: dict[str, str] = {}
    extended = payload.get("extendedProperties")
    if isinstance(extended, dict) and isinstance(extended.get("private"), dict):
        private_metadata = {
            str(key): value
            for key, value in extended["private"].items()
            if isinstance(value, str)
        }

    def _optional(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) else None

    return CounterpartEvent(
        event_id=event_id.strip(),
        summary=_optional("summary"),
        description=_optional("description"),
        location=_optional("location"),
        start=start,
        end=end,
        time_zone=start_tz or end_tz,
        private_metadata=private_metadata,
        status=_parse_google_status(payload.get("status")),
        updated=_parse_google_updated(payload.get("updated")),
    )


def build_google_event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.summary,
        "description": draft.description,
        "start": {"dateTime": draft.start, "timeZone": draft.time_zone},
        "end": {"dateTime": draft.end, "timeZone": draft.time_zone},
        "reminders": {"useDefault": True},
    }
    if draft.location:
        body["location"] = draft.location
    if draft.private_metadata:
        body["extendedProperties"] = {"private": dict(draft.private_metadata)}
    return body


class GoogleCalendarClient(CalendarGateway):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials | None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = GoogleOAuthClient(credentials, self._http_client)

    @classmethod
    def from_config(
        cls,
        config: GoogleConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> GoogleCalendarClient:
        return cls(GoogleOAuthCredentials.from_config(config), http_client=http_client)

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )
        self._raise_for_status(response)
        return self._json_payload(response)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamAPIError(
                service=SERVICE_NAME,
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                service=SERVICE_NAME,
                status_code=response.status_code,
                message="returned invalid JSON for a successful response",
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamAPIError(
                service=SERVICE_NAME,
                status_code=response.status_code,
                message="returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff on 503.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamAPIError(
                service=SERVICE_NAME, status_code=None, message=str(exc)
            ) from exc

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        normalized_calendar_id = quote(calendar_id, safe="")
        if event_id is None:
            return f"/calendars/{normalized_calendar_id}/events"
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"/calendars/{normalized_calendar_id}/events/{quote(normalized_event_id, safe='')}"

    async def _list(self, calendar_id: str, params: dict[str, Any]) -> list[CounterpartEvent]:
        payload = await self._request_google_json(
            "GET",
            self._event_path(calendar_id),
            params={"showDeleted": False, "maxResults": SEARCH_MAX_RESULTS, **params},
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise UpstreamAPIError(
                service=SERVICE_NAME,
                status_code=200,
                message="list response is missing the items array",
            )
        events: list[CounterpartEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                events.append(google_event_to_counterpart(item))
            except UpstreamAPIError:
                logger.warning("Skipping malformed event in list response")
        return events

    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> CounterpartEvent:
        payload = await self._request_google_json(
            "POST",
            self._event_path(calendar_id),
            json_body=build_google_event_body(draft),
        )
        return google_event_to_counterpart(payload)

    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        draft: EventDraft,
    ) -> CounterpartEvent:
        response = await self._request_with_bearer(
            method="PATCH",
            path=self._event_path(calendar_id, event_id),
            json_body=build_google_event_body(draft),
        )
        if response.status_code in GONE_STATUS_CODES:
            raise RecoverableNotFound(event_id)
        self._raise_for_status(response)
        return google_event_to_counterpart(self._json_payload(response))

    async def get_event(self, *, calendar_id: str, event_id: str) -> CounterpartEvent | None:
        response = await self._request_with_bearer(
            method="GET",
            path=self._event_path(calendar_id, event_id),
        )
        if response.status_code in GONE_STATUS_CODES:
            return None
        self._raise_for_status(response)
        return google_event_to_counterpart(self._json_payload(response))

    async def delete_event(self, *, calendar_id: str, event_id: str) -> bool:
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._event_path(calendar_id, event_id),
        )
        if response.status_code in GONE_STATUS_CODES:
            return False
        self._raise_for_status(response)
        return True

    async def find_by_private_metadata(
        self,
        *,
        calendar_id: str,
        key: str,
        value: str,
    ) -> list[CounterpartEvent]:
        return await self._list(calendar_id, {"privateExtendedProperty": f"{key}={value}"})

    async def search_text(self, *, calendar_id: str, query: str) -> list[CounterpartEvent]:
        return await self._list(calendar_id, {"q": query})

    async def list_window(
        self,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[CounterpartEvent]:
        return await self._list(
            calendar_id,
            {
                "timeMin": google_rfc3339(start_at),
                "timeMax": google_rfc3339(end_at),
                "singleEvents": True,
                "orderBy": "startTime",
            },
        )

    async def watch(
        self,
        *,
        calendar_id: str,
        channel_id: str,
        address: str,
        ttl_seconds: int,
    ) -> dict[str, Any]:
        return await self._request_google_json(
            "POST",
            f"{self._event_path(calendar_id)}/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "params": {"ttl": str(ttl_seconds)},
            },
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
