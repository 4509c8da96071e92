"""Google OAuth and Calendar API client over httpx."""

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseCalendarService, CalendarServiceError, EventListError, ProfileFetchError,
    ProviderUnavailableError, RefreshFailed, TokenExchangeError
)
from ..config import Settings
from ..models import GoogleEventPage, GoogleProfile, TokenResponse

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"


def _provider_error(response: httpx.Response) -> Optional[str]:
    """Extract the OAuth ``error`` code (or API error status) from a response body."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get('error')
    if isinstance(error, dict):
        # Calendar API style: {"error": {"code": 403, "status": "PERMISSION_DENIED", ...}}
        return error.get('status') or error.get('message')
    return error


class GoogleCalendarService(BaseCalendarService):
    """Google token, userinfo and events endpoints.

    One ``httpx.AsyncClient`` is shared by all calls and bounded by
    ``request_timeout_seconds``. Transport failures are retried once;
    HTTP error responses are never retried.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            http_client: Client to use instead of a default one (tests pass a mock transport)
        """
        super().__init__(settings, "google")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            limits=httpx.Limits(max_connections=settings.max_concurrent_requests)
        )

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self._http_client.request(method, url, **kwargs)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._send(method, url, **kwargs)
        except httpx.TransportError as e:
            self.logger.warning("Google request %s %s failed after retry: %s",
                                method, url.split('?')[0], type(e).__name__)
            raise ProviderUnavailableError(f"Google unreachable: {type(e).__name__}")

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            'client_id': self.settings.google_client_id,
            'redirect_uri': redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(self.settings.google_scopes),
            'access_type': 'offline',
            'prompt': 'consent',
            'include_granted_scopes': 'true',
            'state': state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str]) -> httpx.Response:
        return await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                'client_id': self.settings.google_client_id,
                'client_secret': self.settings.google_client_secret,
                **form,
            },
            headers={'Accept': 'application/json'},
        )

    def _parse_token_response(self, response: httpx.Response, error_cls) -> TokenResponse:
        try:
            return TokenResponse(**response.json())
        except (ValueError, TypeError, ValidationError) as e:
            raise error_cls(
                f"Malformed token response: {type(e).__name__}",
                status_code=response.status_code,
            )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        response = await self._token_request({
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': redirect_uri,
        })
        if response.status_code != 200:
            provider_error = _provider_error(response)
            self.logger.warning(
                "Token exchange rejected: HTTP %s (%s)", response.status_code, provider_error
            )
            raise TokenExchangeError(
                f"Token exchange failed: {provider_error or 'unknown error'}",
                status_code=response.status_code,
                body=response.text,
                provider_error=provider_error,
            )
        return self._parse_token_response(response, TokenExchangeError)

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        response = await self._token_request({
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        })
        if response.status_code == 200:
            return self._parse_token_response(response, RefreshFailed)

        provider_error = _provider_error(response)
        if response.status_code >= 500:
            raise CalendarServiceError(
                f"Token refresh failed: {provider_error or 'provider error'}",
                status_code=response.status_code,
                body=response.text,
                provider_error=provider_error,
            )
        raise RefreshFailed(
            f"Token refresh failed: {provider_error or 'refresh token rejected'}",
            status_code=response.status_code,
            body=response.text,
            provider_error=provider_error,
        )

    async def fetch_profile(self, access_token: str) -> GoogleProfile:
        try:
            response = await self._request(
                "GET",
                GOOGLE_USERINFO_URL,
                headers={'Authorization': f'Bearer {access_token}'},
            )
        except ProviderUnavailableError as e:
            raise ProfileFetchError(f"Failed to fetch profile: {e}")

        if response.status_code != 200:
            raise ProfileFetchError(
                "Failed to fetch profile",
                status_code=response.status_code,
                body=response.text,
                provider_error=_provider_error(response),
            )
        try:
            return GoogleProfile(**response.json())
        except (ValueError, TypeError, ValidationError) as e:
            raise ProfileFetchError(f"Malformed profile response: {type(e).__name__}")

    async def list_events_page(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int,
        page_token: Optional[str] = None,
    ) -> GoogleEventPage:
        params: Dict[str, Any] = {
            'timeMin': time_min.isoformat(),
            'timeMax': time_max.isoformat(),
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': max_results,
        }
        if page_token:
            params['pageToken'] = page_token

        response = await self._request(
            "GET",
            GOOGLE_EVENTS_URL.format(calendar_id=quote(calendar_id, safe='')),
            params=params,
            headers={'Authorization': f'Bearer {access_token}'},
        )
        if response.status_code != 200:
            provider_error = _provider_error(response)
            if response.status_code == 429:
                self.logger.warning("Google API rate limited while listing %s", calendar_id)
            raise EventListError(
                f"Failed to fetch events: {provider_error or 'provider error'}",
                status_code=response.status_code,
                body=response.text,
                provider_error=provider_error,
            )
        try:
            return GoogleEventPage(**response.json())
        except (ValueError, TypeError, ValidationError) as e:
            raise EventListError(f"Malformed events response: {type(e).__name__}")

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
