"""Pull sync of a user's Google Calendar into the local event mirror."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import pytz
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .credential_store import CredentialStore
from .database import DatabaseManager
from .encryption import TokenCipher
from .models import FailureKind, GoogleEvent, MirroredEvent, SyncOperation, SyncResult
from .services import (
    BaseCalendarService, CalendarServiceError, GoogleCalendarService, NotConnected, RefreshFailed
)
from .token_refresher import TokenRefresher

logger = logging.getLogger(__name__)

RECONNECT_HINT = "Please reconnect your Google Calendar."


class EventSyncEngine:
    """Mirrors the configured calendar window for one user at a time.

    Each pass re-pulls the whole window; there is no incremental cursor.
    Events are upserted by ``(user_id, external_event_id)`` and never deleted
    here. Failures are recorded on the connection instead of raised.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db_manager: Optional[DatabaseManager] = None,
        google_service: Optional[BaseCalendarService] = None,
        store: Optional[CredentialStore] = None,
        refresher: Optional[TokenRefresher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (built from settings if omitted)
            google_service: Provider client (built from settings if omitted)
            store: Credential store (built from settings if omitted)
            refresher: Token refresher (built from the store if omitted)
            clock: Source of the current UTC time
        """
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.db_manager = db_manager or DatabaseManager(settings)
        self.google_service = google_service or GoogleCalendarService(settings)
        self.store = store or CredentialStore(
            self.db_manager, TokenCipher(settings.token_encryption_key), clock=self.clock
        )
        self.refresher = refresher or TokenRefresher(
            self.store,
            self.google_service,
            skew_seconds=settings.token_refresh_skew_seconds,
            clock=self.clock
        )
        self.logger = logger.getChild('sync_engine')
        self._in_flight: Set[str] = set()

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        self.db_manager.init_db()
        self.logger.info("Sync engine initialized")

    async def cleanup(self) -> None:
        await self.google_service.close()
        self.logger.info("Sync engine cleaned up")

    def is_syncing(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def _window(self, now: datetime):
        return now, now + timedelta(days=self.settings.sync_config.sync_future_days)

    def _fail(self, result: SyncResult, message: str, kind: FailureKind) -> SyncResult:
        try:
            self.store.record_error(result.user_id, message)
        except SQLAlchemyError as e:
            self.logger.error(
                "Could not record sync error for user %s: %s", result.user_id, type(e).__name__
            )
        self.logger.warning("Sync for user %s failed: %s", result.user_id, message)
        result.success = False
        result.message = message
        result.error_kind = kind
        result.completed_at = self.clock()
        return result

    async def sync(self, user_id: str) -> SyncResult:
        """Run one sync pass for a user.

        Args:
            user_id: User whose calendar is mirrored

        Returns:
            Counts of created, updated, unchanged and skipped events; on
            failure ``success`` is False and the cause is also stored on the
            connection
        """
        if user_id in self._in_flight:
            self.logger.info("Sync already running for user %s; skipping", user_id)
            return SyncResult(user_id=user_id, success=False, message="Sync already in progress")

        self._in_flight.add(user_id)
        try:
            return await self._sync(user_id)
        finally:
            self._in_flight.discard(user_id)

    async def _sync(self, user_id: str) -> SyncResult:
        result = SyncResult(user_id=user_id, success=False, started_at=self.clock())
        sync_config = self.settings.sync_config

        try:
            access_token = await self.refresher.ensure_valid_token(user_id)
        except NotConnected as e:
            return self._fail(result, f"Calendar not connected: {e}. {RECONNECT_HINT}",
                              FailureKind.NOT_CONNECTED)
        except RefreshFailed as e:
            reason = e.provider_error or 'refresh token rejected'
            return self._fail(result, f"Token refresh failed: {reason}. {RECONNECT_HINT}",
                              FailureKind.REFRESH_FAILED)
        except CalendarServiceError as e:
            return self._fail(result, f"Token refresh failed: {e}", FailureKind.REFRESH_FAILED)
        except SQLAlchemyError as e:
            return self._fail(
                result, f"Failed to read stored credentials: {type(e).__name__}", FailureKind.SYNC_FAILED
            )

        time_min, time_max = self._window(self.clock())
        try:
            items = await self.google_service.list_events(
                access_token,
                sync_config.calendar_id,
                time_min,
                time_max,
                sync_config.max_results_per_page,
                max_pages=sync_config.max_pages,
            )
        except CalendarServiceError as e:
            message = str(e)
            if not message.startswith("Failed to fetch events"):
                message = f"Failed to fetch events: {message}"
            return self._fail(result, message, FailureKind.SYNC_FAILED)

        try:
            self._reconcile(user_id, items, result)
        except SQLAlchemyError as e:
            return self._fail(
                result, f"Failed to store events: {type(e).__name__}", FailureKind.SYNC_FAILED
            )

        completed = self.clock()
        try:
            self.store.record_sync(user_id, completed)
        except SQLAlchemyError as e:
            return self._fail(
                result, f"Failed to record sync: {type(e).__name__}", FailureKind.SYNC_FAILED
            )
        result.success = True
        result.completed_at = completed
        result.message = f"Successfully synced {result.stored} events"
        self.logger.info(
            "Synced user %s: %d created, %d updated, %d unchanged, %d skipped",
            user_id, result.created, result.updated, result.unchanged, result.skipped
        )
        return result

    def _reconcile(self, user_id: str, items: List[Dict[str, Any]], result: SyncResult) -> None:
        """Upsert every mappable item; each write commits on its own."""
        with self.db_manager.get_session() as session:
            for item in items:
                event = self.to_mirrored_event(user_id, item)
                if event is None:
                    result.record(SyncOperation.SKIP)
                    continue
                result.record(self.db_manager.upsert_mirrored_event(session, event))

    def to_mirrored_event(self, user_id: str, item: Dict[str, Any]) -> Optional[MirroredEvent]:
        """Map a raw provider item, or return None if it cannot be mirrored."""
        try:
            remote = GoogleEvent(**item)
        except (TypeError, ValidationError):
            self.logger.debug("Skipping malformed event payload for user %s", user_id)
            return None

        if remote.is_cancelled:
            return None

        start, end = remote.start.effective, remote.end.effective
        if not start or not end:
            self.logger.debug("Skipping event %s without start/end", remote.id)
            return None

        return MirroredEvent(
            user_id=user_id,
            external_event_id=remote.id,
            summary=remote.summary or "",
            description=remote.description,
            start_time=start,
            end_time=end,
            location=remote.location,
            attendees=remote.attendee_emails(),
        )

    async def sync_all(self) -> Dict[str, SyncResult]:
        """Sync every connected user in turn."""
        results = {}
        for user_id in self.store.connected_user_ids():
            results[user_id] = await self.sync(user_id)
        return results

    def list_events(self, user_id: str) -> List[MirroredEvent]:
        with self.db_manager.get_session() as session:
            return [row.to_model() for row in self.db_manager.list_mirrored_events(session, user_id)]

    def count_events(self, user_id: str) -> int:
        with self.db_manager.get_session() as session:
            return self.db_manager.count_mirrored_events(session, user_id)
