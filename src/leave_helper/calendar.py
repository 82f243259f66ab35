"""Calendar adapter for Lark time-off events.

This module defines:
- ``TimeOffCalendar``: adapter interface used by the event handlers
- ``LarkTimeOffCalendar``: Lark Calendar v4 implementation over httpx
- ``_LarkTenantTokenClient``: tenant access token acquisition and caching

All failures (transport errors, non-2xx statuses, non-zero Lark ``code``
values) surface as :class:`CalendarRequestError`.  The adapter never retries a
calendar call.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from leave_helper.errors import CalendarRequestError
from leave_helper.events import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

DEFAULT_LARK_API_BASE_URL = "https://open.feishu.cn"
LARK_TENANT_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
LARK_TIMEOFF_EVENTS_PATH = "/open-apis/calendar/v4/timeoff_events"
LARK_REQUEST_ID_HEADER = "X-Tt-Logid"

# Lark error codes meaning the tenant access token is invalid or expired.
LARK_INVALID_TOKEN_CODES = {99991661, 99991663, 99991668}
# Refresh this long before Lark's stated expiry.
TOKEN_REFRESH_MARGIN_SECONDS = 60


class LarkAppCredentials(BaseModel):
    """Application identity used to mint tenant access tokens."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    app_id: str = Field(min_length=1)
    app_secret: str = Field(min_length=1)


class TimeOffEvent(BaseModel):
    """Time-off event as returned by Lark."""

    model_config = ConfigDict(extra="ignore")

    timeoff_event_id: str = Field(min_length=1)
    user_id: str | None = None
    timezone: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    title: str | None = None
    description: str | None = None


def _request_id(response: httpx.Response) -> str | None:
    return response.headers.get(LARK_REQUEST_ID_HEADER)


def _safe_lark_payload(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _lark_error_message(response: httpx.Response, payload: dict[str, Any] | None) -> str:
    if payload is not None:
        msg = payload.get("msg")
        if isinstance(msg, str) and msg.strip():
            return " ".join(msg.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return f"HTTP {response.status_code} without an error payload"


def _epoch_seconds(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return str(int(normalized.timestamp()))


class _LarkTenantTokenClient:
    """Tenant access token helper with lightweight caching."""

    def __init__(
        self,
        credentials: LarkAppCredentials,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = DEFAULT_LARK_API_BASE_URL,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._token: str | None = None
        self._token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_token(self) -> str:
        if self._token_is_fresh():
            assert self._token is not None
            return self._token

        async with self._refresh_lock:
            if self._token_is_fresh():
                assert self._token is not None
                return self._token

            await self._refresh_token()
            assert self._token is not None
            return self._token

    def invalidate(self) -> None:
        self._token = None
        self._token_expires_at = None

    def _token_is_fresh(self) -> bool:
        if self._token is None or self._token_expires_at is None:
            return False
        return datetime.now(UTC) < self._token_expires_at

    async def _refresh_token(self) -> None:
        try:
            response = await self._http_client.post(
                f"{self._base_url}{LARK_TENANT_TOKEN_PATH}",
                json={
                    "app_id": self._credentials.app_id,
                    "app_secret": self._credentials.app_secret,
                },
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                f"tenant access token request failed: {exc}",
                operation="tenant_access_token",
            ) from exc

        payload = _safe_lark_payload(response)
        code = payload.get("code") if payload is not None else None
        if response.status_code < 200 or response.status_code >= 300 or code != 0:
            raise CalendarRequestError(
                _lark_error_message(response, payload),
                operation="tenant_access_token",
                request_id=_request_id(response),
                code=code if isinstance(code, int) else None,
            )

        token = payload.get("tenant_access_token") if payload is not None else None
        if not isinstance(token, str) or not token.strip():
            raise CalendarRequestError(
                "token response is missing a non-empty tenant_access_token",
                operation="tenant_access_token",
                request_id=_request_id(response),
            )

        expire_raw = payload.get("expire") if payload is not None else None
        expire_seconds = expire_raw if isinstance(expire_raw, int) and expire_raw > 0 else 7200
        refresh_ttl_seconds = max(expire_seconds - TOKEN_REFRESH_MARGIN_SECONDS, 30)

        self._token = token.strip()
        self._token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class TimeOffCalendar(abc.ABC):
    """Adapter abstraction over the remote calendar's time-off entries."""

    @abc.abstractmethod
    async def create_time_off(self, subject_id: str, start: datetime, end: datetime) -> str:
        """Create a time-off entry spanning ``[start, end]`` and return its id."""
        ...

    @abc.abstractmethod
    async def delete_time_off(self, event_id: str) -> None:
        """Cancel a previously created time-off entry."""
        ...

    async def aclose(self) -> None:  # noqa: B027
        """Release adapter resources."""


class LarkTimeOffCalendar(TimeOffCalendar):
    """Lark Calendar v4 time-off adapter."""

    def __init__(
        self,
        credentials: LarkAppCredentials,
        *,
        base_url: str = DEFAULT_LARK_API_BASE_URL,
        timezone: str = DEFAULT_TIMEZONE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timezone = timezone
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._tokens = _LarkTenantTokenClient(
            credentials, self._http_client, base_url=self._base_url
        )

    @property
    def timezone(self) -> str:
        return self._timezone

    async def _request_lark_json(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self._tokens.get_token()
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                f"request failed: {exc}",
                operation=operation,
            ) from exc

        payload = _safe_lark_payload(response)
        code = payload.get("code") if payload is not None else None
        if isinstance(code, int) and code in LARK_INVALID_TOKEN_CODES:
            # Force a fresh token on the next call; this one is not retried.
            self._tokens.invalidate()

        if response.status_code < 200 or response.status_code >= 300 or code != 0:
            raise CalendarRequestError(
                _lark_error_message(response, payload),
                operation=operation,
                request_id=_request_id(response),
                code=code if isinstance(code, int) else None,
                data=payload.get("data") if payload is not None else None,
            )

        data = payload.get("data") if payload is not None else None
        return data if isinstance(data, dict) else {}

    async def create_time_off(self, subject_id: str, start: datetime, end: datetime) -> str:
        body = {
            "user_id": subject_id,
            "timezone": self._timezone,
            "start_time": _epoch_seconds(start),
            "end_time": _epoch_seconds(end),
        }
        data = await self._request_lark_json(
            "POST",
            LARK_TIMEOFF_EVENTS_PATH,
            operation="create_time_off",
            params={"user_id_type": "user_id"},
            json_body=body,
        )

        event_id = data.get("timeoff_event_id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise CalendarRequestError(
                "response is missing timeoff_event_id",
                operation="create_time_off",
                data=data,
            )
        event = TimeOffEvent.model_validate(data)
        logger.debug(
            "Created time-off event",
            extra={"timeoff_event_id": event.timeoff_event_id, "user_id": subject_id},
        )
        return event.timeoff_event_id

    async def delete_time_off(self, event_id: str) -> None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        await self._request_lark_json(
            "DELETE",
            f"{LARK_TIMEOFF_EVENTS_PATH}/{quote(normalized_event_id, safe='')}",
            operation="delete_time_off",
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
