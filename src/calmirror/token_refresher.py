"""Access token refresh, serialized per user."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import pytz

from .credential_store import CredentialStore
from .models import CalendarConnection
from .services import BaseCalendarService, NotConnected

logger = logging.getLogger(__name__)


class TokenRefresher:
    """Hands out a valid access token for a user.

    A fresh cached token is returned without a network call. A stale one is
    refreshed under a per-user ``asyncio.Lock``; waiters re-read the store once
    they hold the lock, so N concurrent callers produce a single refresh.
    """

    def __init__(
        self,
        store: CredentialStore,
        service: BaseCalendarService,
        skew_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.service = service
        self.skew_seconds = skew_seconds
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('refresher')
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _require(self, user_id: str) -> CalendarConnection:
        connection = self.store.get(user_id)
        if connection is None:
            raise NotConnected(f"No calendar connection for user {user_id}")
        return connection

    async def ensure_valid_token(self, user_id: str) -> str:
        """Return a usable access token for the user.

        Raises:
            NotConnected: No connection, or an expired token with no refresh token
            RefreshFailed: The provider rejected the refresh token
            ProviderUnavailableError: The token endpoint could not be reached
        """
        connection = self._require(user_id)
        if connection.is_token_fresh(self.clock(), self.skew_seconds):
            return connection.access_token

        async with self._lock_for(user_id):
            # Another caller may have refreshed while we waited
            connection = self._require(user_id)
            if connection.is_token_fresh(self.clock(), self.skew_seconds):
                return connection.access_token

            if not connection.refresh_token:
                # Usable until it actually expires, skew or not
                if self.clock() < connection.expires_at:
                    return connection.access_token
                raise NotConnected(
                    f"Access token for user {user_id} expired and no refresh token is stored"
                )

            self.logger.info("Refreshing access token for user %s", user_id)
            tokens = await self.service.refresh_access_token(connection.refresh_token)
            expires_at = self.clock() + timedelta(seconds=tokens.expires_in)
            self.store.update_tokens(
                user_id,
                tokens.access_token,
                expires_at,
                refresh_token=tokens.refresh_token,
            )
            return tokens.access_token
