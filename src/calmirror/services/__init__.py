"""Calendar provider interfaces and implementations."""

from .base import (
    AuthenticationError,
    BaseCalendarService,
    CalendarServiceError,
    EventListError,
    NotConnected,
    ProfileFetchError,
    ProviderUnavailableError,
    RefreshFailed,
    TokenExchangeError,
)
from .google import GoogleCalendarService

__all__ = [
    'AuthenticationError',
    'BaseCalendarService',
    'CalendarServiceError',
    'EventListError',
    'GoogleCalendarService',
    'NotConnected',
    'ProfileFetchError',
    'ProviderUnavailableError',
    'RefreshFailed',
    'TokenExchangeError',
]
