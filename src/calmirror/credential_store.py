"""Persistence of per-user calendar connections."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

import pytz

from .database import CalendarConnectionDB, DatabaseManager
from .encryption import TokenCipher
from .models import CalendarConnection, DisconnectResult

logger = logging.getLogger(__name__)

DISCONNECT_MESSAGE = (
    "Calendar disconnected successfully. You can now reconnect with proper permissions."
)


class CredentialStore:
    """Owns the single connection record each user may have.

    Every method opens its own session and commits before returning, so a
    write is visible to the next reader. Tokens are encrypted on the way in
    and decrypted on the way out; callers only ever see plaintext
    ``CalendarConnection`` objects.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        cipher: Optional[TokenCipher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_manager = db_manager
        self.cipher = cipher or TokenCipher()
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('credential_store')

    def _to_model(self, row: CalendarConnectionDB) -> CalendarConnection:
        return CalendarConnection(
            user_id=row.user_id,
            email=row.email,
            has_calendar_scope=row.has_calendar_scope,
            access_token=self.cipher.decrypt(row.access_token),
            refresh_token=self.cipher.decrypt(row.refresh_token),
            expires_at=row.expires_at,
            connected_at=row.connected_at,
            last_sync=row.last_sync,
            error=row.error,
        )

    def get(self, user_id: str) -> Optional[CalendarConnection]:
        """Return the user's connection, or None if absent."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, user_id)
            return self._to_model(row) if row else None

    def upsert(
        self,
        user_id: str,
        *,
        email: str,
        has_calendar_scope: bool,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime
    ) -> CalendarConnection:
        """Create or patch the user's connection in a single commit.

        A reconnect that returns no refresh token keeps the stored one. Any
        recorded error is cleared and ``connected_at`` reset.

        Args:
            user_id: Owning user
            email: Remote account address
            has_calendar_scope: Whether calendar access was granted
            access_token: Plaintext access token
            refresh_token: Plaintext refresh token, if issued
            expires_at: Absolute access token expiry

        Returns:
            The stored connection
        """
        now = self.clock()
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, user_id)
            if row is None:
                row = CalendarConnectionDB(user_id=user_id, created_at=now)
                session.add(row)
                created = True
            else:
                created = False

            row.email = email
            row.has_calendar_scope = has_calendar_scope
            row.access_token = self.cipher.encrypt(access_token)
            if refresh_token:
                row.refresh_token = self.cipher.encrypt(refresh_token)
            row.expires_at = expires_at
            row.connected_at = now
            row.error = None
            row.updated_at = now

            session.commit()
            self.logger.info(
                "%s calendar connection for user %s (%s)",
                "Created" if created else "Updated", user_id, email
            )
            return self._to_model(row)

    def update_tokens(
        self,
        user_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None
    ) -> Optional[CalendarConnection]:
        """Persist a refreshed access token; a rotated refresh token replaces the old one."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, user_id)
            if row is None:
                return None
            row.access_token = self.cipher.encrypt(access_token)
            row.expires_at = expires_at
            if refresh_token:
                row.refresh_token = self.cipher.encrypt(refresh_token)
            row.updated_at = self.clock()
            session.commit()
            return self._to_model(row)

    def record_sync(self, user_id: str, when: Optional[datetime] = None) -> None:
        """Set ``last_sync`` and clear any recorded error."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, user_id)
            if row is None:
                return
            row.last_sync = when or self.clock()
            row.error = None
            row.updated_at = self.clock()
            session.commit()

    def record_error(self, user_id: str, message: str) -> None:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, user_id)
            if row is None:
                return
            row.error = message
            row.updated_at = self.clock()
            session.commit()

    def clear(self, user_id: str) -> int:
        """Delete the connection and all of the user's mirrored events together.

        Returns:
            Number of mirrored events removed
        """
        with self.db_manager.get_session() as session:
            try:
                removed = self.db_manager.delete_mirrored_events(session, user_id)
                session.query(CalendarConnectionDB).filter(
                    CalendarConnectionDB.user_id == user_id
                ).delete(synchronize_session=False)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return removed

    def disconnect(self, user_id: str) -> DisconnectResult:
        removed = self.clear(user_id)
        self.logger.info("Disconnected calendar for user %s (%d events removed)", user_id, removed)
        return DisconnectResult(success=True, message=DISCONNECT_MESSAGE, events_removed=removed)

    def connected_user_ids(self) -> List[str]:
        with self.db_manager.get_session() as session:
            return self.db_manager.get_connected_user_ids(session)
