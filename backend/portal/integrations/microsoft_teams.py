"""Microsoft Teams (Graph API) integration client.

Creates online meetings for confirmed appointments using the client
credentials flow. Meetings are owned by the configured organizer account.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Optional, cast
import uuid

import httpx
from pydantic import SecretStr

from ..core.config import settings

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
TOKEN_EXPIRY_MARGIN_SECONDS = 300


class TeamsError(RuntimeError):
    """Raised when the token endpoint or the Graph API responds with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


@dataclass(frozen=True)
class TeamsMeeting:
    id: str
    join_url: str
    subject: str
    start: str
    end: str


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


def _to_meeting(data: dict[str, Any], subject: str, start: str, end: str) -> TeamsMeeting:
    join_url = data.get("joinWebUrl") or data.get("joinUrl")
    meeting_id = data.get("id")
    if not join_url or not meeting_id:
        raise TeamsError("Graph response did not include a join URL", details=data)
    return TeamsMeeting(
        id=str(meeting_id),
        join_url=str(join_url),
        subject=str(data.get("subject") or subject),
        start=str(data.get("startDateTime") or start),
        end=str(data.get("endDateTime") or end),
    )


class TeamsClient:
    """HTTP client for the Graph online meetings API."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | SecretStr,
        tenant_id: str,
        organizer_user_id: str,
        base_url: str = GRAPH_BASE_URL,
        login_url: str = LOGIN_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = (
            client_secret.get_secret_value() if isinstance(client_secret, SecretStr) else client_secret
        )
        self._tenant_id = tenant_id
        self._organizer = organizer_user_id
        self._base_url = base_url.rstrip("/")
        self._login_url = login_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._token_refresh_at: float = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def _get_access_token(self) -> str:
        """Return a cached app token, refreshing five minutes before expiry."""
        now = time.monotonic()
        if self._access_token is not None and now < self._token_refresh_at:
            return self._access_token

        url = f"{self._login_url}/{self._tenant_id}/oauth2/v2.0/token"
        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": "https://graph.microsoft.com/.default",
            "grant_type": "client_credentials",
        }
        try:
            with self._client() as client:
                response = client.post(url, data=form)
        except httpx.TransportError as exc:
            logger.error("Microsoft login unreachable: %s", exc)
            raise TeamsError(f"Microsoft login unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error("Microsoft token request failed %s: %s", response.status_code, response.text[:500])
            raise TeamsError(
                "Failed to authenticate with Microsoft Graph API",
                status_code=response.status_code,
            )

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise TeamsError("Token response did not include an access token")
        expires_in = int(body.get("expires_in", 3600))
        self._access_token = str(token)
        self._token_refresh_at = now + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return self._access_token

    def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Content-Type": "application/json",
        }
        try:
            with self._client() as client:
                response = client.request(method, url, headers=headers, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Graph API unreachable for %s %s: %s", method, path, exc)
            raise TeamsError(f"Graph API unreachable: {exc}") from exc

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = {"raw": response.text[:500]}
            error = error_body.get("error") if isinstance(error_body, dict) else None
            message = (error or {}).get("message") if isinstance(error, dict) else None
            logger.error("Graph API error %s for %s %s: %s", response.status_code, method, path, response.text[:500])
            raise TeamsError(message or response.text, status_code=response.status_code, details=error_body)

        if response.status_code == 204 or not response.content:
            return {}
        return cast(dict[str, Any], response.json())

    # High-level API methods

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendee_email: str,
        attendee_name: str,
    ) -> TeamsMeeting:
        start_iso, end_iso = _iso_utc(start), _iso_utc(end)
        body = {
            "subject": subject,
            "startDateTime": start_iso,
            "endDateTime": end_iso,
            "participants": {
                "attendees": [
                    {
                        "identity": {"user": {"displayName": attendee_name}},
                        "upn": attendee_email,
                    }
                ]
            },
            "allowMeetingChat": "enabled",
            "allowedPresenters": "organizer",
        }
        data = self._request("POST", f"users/{self._organizer}/onlineMeetings", json_body=body)
        return _to_meeting(data, subject, start_iso, end_iso)

    def update_meeting(self, meeting_id: str, *, subject: str, start: datetime, end: datetime) -> TeamsMeeting:
        start_iso, end_iso = _iso_utc(start), _iso_utc(end)
        body = {"subject": subject, "startDateTime": start_iso, "endDateTime": end_iso}
        data = self._request("PATCH", f"users/{self._organizer}/onlineMeetings/{meeting_id}", json_body=body)
        return _to_meeting(data, subject, start_iso, end_iso)

    def delete_meeting(self, meeting_id: str) -> None:
        self._request("DELETE", f"users/{self._organizer}/onlineMeetings/{meeting_id}")


class FakeTeamsClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, TeamsError] = {}

    @property
    def calls(self) -> list[dict[str, Any]]:
        return list(self._calls)

    def set_error(self, method: str, error: TeamsError) -> None:
        """Inject a method-specific error for deterministic failure testing."""
        self._errors[method] = error

    def _raise_if_injected(self, method: str) -> None:
        error = self._errors.get(method)
        if error is not None:
            raise error

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendee_email: str,
        attendee_name: str,
    ) -> TeamsMeeting:
        self._calls.append(
            {
                "method": "create_meeting",
                "subject": subject,
                "start": start,
                "end": end,
                "attendee_email": attendee_email,
            }
        )
        self._raise_if_injected("create_meeting")
        meeting_id = f"fake_meeting_{uuid.uuid4().hex[:12]}"
        return TeamsMeeting(
            id=meeting_id,
            join_url=f"https://teams.microsoft.com/l/meetup-join/{meeting_id}",
            subject=subject,
            start=_iso_utc(start),
            end=_iso_utc(end),
        )

    def update_meeting(self, meeting_id: str, *, subject: str, start: datetime, end: datetime) -> TeamsMeeting:
        self._calls.append({"method": "update_meeting", "meeting_id": meeting_id, "start": start})
        self._raise_if_injected("update_meeting")
        return TeamsMeeting(
            id=meeting_id,
            join_url=f"https://teams.microsoft.com/l/meetup-join/{meeting_id}",
            subject=subject,
            start=_iso_utc(start),
            end=_iso_utc(end),
        )

    def delete_meeting(self, meeting_id: str) -> None:
        self._calls.append({"method": "delete_meeting", "meeting_id": meeting_id})
        self._raise_if_injected("delete_meeting")


MeetingClient = TeamsClient | FakeTeamsClient


def meeting_end(start: datetime) -> datetime:
    return start + timedelta(minutes=settings.appointment_duration_minutes)


def get_meeting_client() -> Optional[TeamsClient]:
    """Build the Graph client from settings; ``None`` when Teams is not configured."""
    if not settings.teams_configured:
        logger.info("Microsoft Teams not configured; online meetings are skipped")
        return None
    return TeamsClient(
        client_id=settings.microsoft_client_id,
        client_secret=settings.microsoft_client_secret,
        tenant_id=settings.microsoft_tenant_id,
        organizer_user_id=settings.microsoft_organizer_user_id,
    )
