"""Calendar provider interface and error taxonomy."""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..models import FailureKind, GoogleEventPage, GoogleProfile, TokenResponse
from ..config import Settings

logger = logging.getLogger(__name__)

_SECRET_FIELD = re.compile(
    r'("?(?:access_token|refresh_token|id_token|client_secret|code)"?\s*[:=]\s*"?)([^"&,\s}]+)'
)
_MAX_BODY_CHARS = 500


def sanitize_body(body: Optional[str]) -> Optional[str]:
    """Mask token-looking fields and truncate a provider response body."""
    if body is None:
        return None
    masked = _SECRET_FIELD.sub(r'\1***', body)
    if len(masked) > _MAX_BODY_CHARS:
        masked = masked[:_MAX_BODY_CHARS] + '...'
    return masked


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""

    kind = FailureKind.SYNC_FAILED

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 body: Optional[str] = None, provider_error: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = sanitize_body(body)
        self.provider_error = provider_error

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is not None:
            message = f"{message} (HTTP {self.status_code})"
        return message


class ProviderUnavailableError(CalendarServiceError):
    """Network failure or timeout that outlasted the retry."""
    pass


class EventListError(CalendarServiceError):
    """Listing events was rejected by the provider."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class TokenExchangeError(AuthenticationError):
    """Authorization code could not be exchanged."""

    kind = FailureKind.TOKEN_EXCHANGE_FAILED

    @property
    def redirect_uri_mismatch(self) -> bool:
        return self.provider_error == 'redirect_uri_mismatch'


class RefreshFailed(AuthenticationError):
    """The stored refresh token was rejected; the user must reconnect."""

    kind = FailureKind.REFRESH_FAILED


class ProfileFetchError(AuthenticationError):
    kind = FailureKind.PROFILE_FETCH_FAILED


class NotConnected(AuthenticationError):
    """No usable connection exists for the user."""

    kind = FailureKind.NOT_CONNECTED


class BaseCalendarService(ABC):
    """Abstract base class for calendar providers."""

    def __init__(self, settings: Settings, name: str):
        """Initialize calendar service.

        Args:
            settings: Application settings
            name: Provider name, used for the logger
        """
        self.settings = settings
        self.name = name
        self.logger = logger.getChild(name)

    @abstractmethod
    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the consent URL the user is sent to."""
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            redirect_uri: The exact redirect URI used in the authorization request

        Returns:
            Token response

        Raises:
            TokenExchangeError: If the provider rejects the code
            ProviderUnavailableError: If the provider cannot be reached
        """
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises:
            RefreshFailed: If the provider rejects the refresh token
            ProviderUnavailableError: If the provider cannot be reached
        """
        pass

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> GoogleProfile:
        """Fetch the remote account profile.

        Raises:
            ProfileFetchError: If the profile cannot be retrieved
        """
        pass

    @abstractmethod
    async def list_events_page(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int,
        page_token: Optional[str] = None,
    ) -> GoogleEventPage:
        """Fetch one page of events in a time window.

        Raises:
            EventListError: If the provider rejects the request
            ProviderUnavailableError: If the provider cannot be reached
        """
        pass

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: int,
        max_pages: int = 20,
    ) -> List[Dict[str, Any]]:
        """Collect raw event items from every page of the window.

        Returns:
            Raw event payloads, validated later item by item
        """
        items: List[Dict[str, Any]] = []
        page_token = None
        for _ in range(max_pages):
            page = await self.list_events_page(
                access_token, calendar_id, time_min, time_max, max_results, page_token
            )
            items.extend(page.items)
            page_token = page.next_page_token
            if not page_token:
                break
        else:
            self.logger.warning(
                "Stopped listing %s after %d pages; window truncated", calendar_id, max_pages
            )
        return items

    async def close(self) -> None:
        """Release network resources."""
        pass
