import asyncio
import base64
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlencode

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calmirror.config import Settings
from calmirror.credential_store import CredentialStore
from calmirror.database import DatabaseManager
from calmirror.encryption import TokenCipher
from calmirror.models import GoogleEventPage, GoogleProfile, TokenResponse
from calmirror.services.base import BaseCalendarService
from calmirror.sync_engine import EventSyncEngine

TEST_ENCRYPTION_KEY = base64.urlsafe_b64encode(b"k" * 32).decode()
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        google_redirect_uri='https://app.example.com/api/auth/google/calendar/callback',
        oauth_state_secret='state-secret-for-tests',
        oauth_success_redirect='https://app.example.com/settings',
        oauth_error_redirect='https://app.example.com/settings',
        token_encryption_key=TEST_ENCRYPTION_KEY,
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryGoogleService(BaseCalendarService):
    """Provider double holding remote events in a dict and counting calls."""

    def __init__(self, settings):
        super().__init__(settings, "fake")
        self.events: Dict[str, dict] = {}
        self.page_size = 250
        self.profile = GoogleProfile(id="g-123", email="person@example.com", name="Pat Example")
        self.granted_scope = f"openid {CALENDAR_SCOPE}"

        self.exchange_calls = 0
        self.refresh_calls = 0
        self.profile_calls = 0
        self.list_calls = 0
        self.last_redirect_uri: Optional[str] = None
        self.last_access_token: Optional[str] = None
        self.last_window = None

        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.profile_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.list_delay = 0.0
        self.rotated_refresh_token: Optional[str] = None

    def authorization_url(self, state, redirect_uri):
        return "https://accounts.example.com/auth?" + urlencode(
            {'state': state, 'redirect_uri': redirect_uri}
        )

    async def exchange_code(self, code, redirect_uri):
        self.exchange_calls += 1
        self.last_redirect_uri = redirect_uri
        if self.exchange_error:
            raise self.exchange_error
        return TokenResponse(
            access_token=f"access-for-{code}",
            refresh_token="refresh-initial",
            expires_in=3600,
            scope=self.granted_scope,
        )

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return TokenResponse(
            access_token=f"access-refreshed-{self.refresh_calls}",
            refresh_token=self.rotated_refresh_token,
            expires_in=3600,
            scope=self.granted_scope,
        )

    async def fetch_profile(self, access_token):
        self.profile_calls += 1
        if self.profile_error:
            raise self.profile_error
        return self.profile

    async def list_events_page(self, access_token, calendar_id, time_min, time_max,
                               max_results, page_token=None):
        self.list_calls += 1
        self.last_access_token = access_token
        self.last_window = (time_min, time_max)
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_error:
            raise self.list_error

        items = list(self.events.values())
        start = int(page_token or 0)
        size = min(max_results, self.page_size)
        end = start + size
        return GoogleEventPage(
            items=items[start:end],
            nextPageToken=str(end) if end < len(items) else None,
        )


def make_event(event_id, summary="Standup", start="2025-01-16T09:00:00Z",
               end="2025-01-16T09:30:00Z", **extra):
    event = {
        'id': event_id,
        'status': 'confirmed',
        'summary': summary,
        'start': {'dateTime': start},
        'end': {'dateTime': end},
    }
    event.update(extra)
    return event


def connect_user(store, clock, user_id="user-1", expires_in=3600,
                 refresh_token="refresh-1", has_calendar_scope=True):
    return store.upsert(
        user_id,
        email=f"{user_id}@example.com",
        has_calendar_scope=has_calendar_scope,
        access_token=f"access-{user_id}",
        refresh_token=refresh_token,
        expires_at=clock() + timedelta(seconds=expires_in),
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def store(db_manager, clock):
    return CredentialStore(db_manager, TokenCipher(TEST_ENCRYPTION_KEY), clock=clock)


@pytest.fixture
def fake_google(settings):
    return InMemoryGoogleService(settings)


@pytest.fixture
def engine(settings, db_manager, store, fake_google, clock):
    return EventSyncEngine(
        settings,
        db_manager=db_manager,
        google_service=fake_google,
        store=store,
        clock=clock,
    )
