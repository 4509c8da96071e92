"""OAuth authorization round trip: consent URL, callback classification and code exchange."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import pytz
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, grants_calendar_scope
from .credential_store import CredentialStore
from .models import (
    CALENDAR_PURPOSE, CalendarConnection, CallbackOutcome, FailureKind, GoogleProfile, TokenResponse
)
from .services import (
    BaseCalendarService, CalendarServiceError, ProfileFetchError, TokenExchangeError
)
from .state import InvalidStateError, StateTokenCodec

logger = logging.getLogger(__name__)

PROVIDER_ERROR_MESSAGES = {
    'access_denied': "User denied access to Google Calendar",
    'invalid_request': "The authorization request was malformed",
    'unauthorized_client': "This application is not authorized to request calendar access",
    'unsupported_response_type': "Google does not support the requested response type",
    'invalid_scope': "The requested calendar permissions are invalid",
    'server_error': "Google encountered an error while authorizing",
    'temporarily_unavailable': "Google authorization is temporarily unavailable, please try again",
}

CALLBACK_MESSAGES = {
    'no_authorization_code': "No authorization code was returned by Google",
    'missing_state': "The authorization response is missing its state parameter",
    'invalid_state': "The authorization response could not be verified",
    'invalid_state_type': "The authorization response was issued for a different flow",
    'redirect_uri_mismatch': "The redirect URI does not match the one registered with Google",
    'token_exchange_failed': "Failed to exchange the authorization code. Please try connecting again",
    'profile_fetch_failed': "Connected to Google but could not read the account profile",
    'storage_failed': "The calendar connection could not be saved",
    'missing_calendar_scope': (
        "Calendar access was not granted. Please reconnect and allow calendar access"
    ),
}


def describe_provider_error(code: str) -> str:
    """User-facing reason for a provider ``error`` code."""
    return PROVIDER_ERROR_MESSAGES.get(code, f"oauth error: {code}")


class OAuthExchanger:
    """Turns an authorization code into a stored connection."""

    def __init__(
        self,
        service: BaseCalendarService,
        store: CredentialStore,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.service = service
        self.store = store
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('exchanger')

    async def exchange(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self.service.exchange_code(code, redirect_uri)

    async def fetch_profile(self, access_token: str) -> GoogleProfile:
        return await self.service.fetch_profile(access_token)

    async def connect(
        self,
        user_id: str,
        code: str,
        redirect_uri: str,
        granted_scope: Optional[str] = None
    ) -> CalendarConnection:
        """Exchange the code, fetch the profile, then persist both together.

        Nothing is written unless both provider calls succeed.

        Args:
            user_id: User that started the flow
            code: Authorization code
            redirect_uri: Redirect URI used in the authorization request
            granted_scope: ``scope`` callback parameter, used when the token
                response omits scopes

        Returns:
            The stored connection
        """
        tokens = await self.exchange(code, redirect_uri)
        profile = await self.fetch_profile(tokens.access_token)

        scopes = tokens.scopes or (granted_scope or "").split()
        expires_at = self.clock() + timedelta(seconds=tokens.expires_in)
        connection = self.store.upsert(
            user_id,
            email=profile.email,
            has_calendar_scope=grants_calendar_scope(scopes),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=expires_at,
        )
        if not tokens.refresh_token and not connection.refresh_token:
            self.logger.warning(
                "No refresh token issued for user %s; access ends at %s",
                user_id, expires_at.isoformat()
            )
        return connection


class CalendarOAuthFlow:
    """Builds consent URLs and classifies callbacks into ``CallbackOutcome``."""

    def __init__(self, settings: Settings, codec: StateTokenCodec, exchanger: OAuthExchanger):
        self.settings = settings
        self.codec = codec
        self.exchanger = exchanger
        self.logger = logger.getChild('flow')

    @property
    def redirect_uri(self) -> str:
        return self.settings.google_redirect_uri

    def authorization_url(self, user_id: str) -> str:
        state = self.codec.encode(user_id, CALENDAR_PURPOSE)
        return self.exchanger.service.authorization_url(state, self.redirect_uri)

    def _rejected(self, reason: str, user_id: Optional[str] = None) -> CallbackOutcome:
        self.logger.warning("Rejected OAuth callback: %s", reason)
        return CallbackOutcome.failure(
            reason, CALLBACK_MESSAGES[reason], FailureKind.MALFORMED_CALLBACK, user_id
        )

    async def handle_callback(
        self,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        scope: Optional[str] = None
    ) -> CallbackOutcome:
        """Validate a callback and, if it checks out, complete the connection.

        Checks run in order: provider error, code, state presence, state
        signature, state purpose. No exchange is attempted unless all pass.
        """
        if error:
            self.logger.info("Provider returned OAuth error: %s", error)
            return CallbackOutcome.failure(
                error, describe_provider_error(error), FailureKind.AUTHORIZATION_DENIED
            )
        if not code:
            return self._rejected('no_authorization_code')
        if not state:
            return self._rejected('missing_state')

        try:
            token = self.codec.decode(state)
        except InvalidStateError as e:
            self.logger.warning("State verification failed: %s", e)
            return self._rejected('invalid_state')
        if token.purpose != CALENDAR_PURPOSE:
            return self._rejected('invalid_state_type', token.user_id)

        user_id = token.user_id
        try:
            connection = await self.exchanger.connect(user_id, code, self.redirect_uri, scope)
        except TokenExchangeError as e:
            reason = 'redirect_uri_mismatch' if e.redirect_uri_mismatch else 'token_exchange_failed'
            self.logger.warning("Token exchange failed for user %s: %s", user_id, e)
            return CallbackOutcome.failure(
                reason, CALLBACK_MESSAGES[reason], FailureKind.TOKEN_EXCHANGE_FAILED, user_id
            )
        except ProfileFetchError as e:
            self.logger.warning("Profile fetch failed for user %s: %s", user_id, e)
            return CallbackOutcome.failure(
                'profile_fetch_failed', CALLBACK_MESSAGES['profile_fetch_failed'],
                FailureKind.PROFILE_FETCH_FAILED, user_id
            )
        except CalendarServiceError as e:
            self.logger.warning("OAuth exchange for user %s failed: %s", user_id, e)
            return CallbackOutcome.failure(
                'token_exchange_failed', CALLBACK_MESSAGES['token_exchange_failed'],
                FailureKind.TOKEN_EXCHANGE_FAILED, user_id
            )
        except SQLAlchemyError as e:
            self.logger.error("Storing connection for user %s failed: %s", user_id, type(e).__name__)
            return CallbackOutcome.failure(
                'storage_failed', CALLBACK_MESSAGES['storage_failed'],
                FailureKind.TOKEN_EXCHANGE_FAILED, user_id
            )

        if not connection.has_calendar_scope:
            self.logger.warning("User %s granted no calendar scope", user_id)
            outcome = CallbackOutcome.failure(
                'missing_calendar_scope', CALLBACK_MESSAGES['missing_calendar_scope'],
                FailureKind.AUTHORIZATION_DENIED, user_id
            )
            outcome.email = connection.email
            return outcome

        self.logger.info("Calendar connected for user %s (%s)", user_id, connection.email)
        return CallbackOutcome(
            success=True,
            message="Google Calendar connected",
            user_id=user_id,
            email=connection.email,
        )
