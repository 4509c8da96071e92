"""Data models for calendar connections, provider payloads and sync results."""

import hashlib
import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


CALENDAR_PURPOSE = "calendar"


class FailureKind(str, Enum):
    """Closed set of failure kinds callers can branch on."""

    AUTHORIZATION_DENIED = "authorization_denied"
    MALFORMED_CALLBACK = "malformed_callback"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    REFRESH_FAILED = "refresh_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    NOT_CONNECTED = "not_connected"
    SYNC_FAILED = "sync_failed"


class SyncOperation(str, Enum):
    """Outcome of reconciling one remote event."""

    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


def _ensure_utc(v):
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=pytz.UTC)
    return v


# Provider payloads


class TokenResponse(BaseModel):
    """Token endpoint response for both code exchange and refresh."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    expires_in: int = Field(3600, ge=0)
    scope: str = ""
    token_type: str = "Bearer"

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()


class GoogleProfile(BaseModel):
    """Subset of the userinfo endpoint response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class GoogleEventTime(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date_time: Optional[str] = Field(None, alias="dateTime")
    date: Optional[str] = None
    time_zone: Optional[str] = Field(None, alias="timeZone")

    @property
    def effective(self) -> Optional[str]:
        """Timed events carry dateTime, all-day events only date."""
        return self.date_time or self.date


class GoogleAttendee(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None


class GoogleEvent(BaseModel):
    """One item of an events.list response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: GoogleEventTime = Field(default_factory=GoogleEventTime)
    end: GoogleEventTime = Field(default_factory=GoogleEventTime)
    attendees: List[GoogleAttendee] = Field(default_factory=list)

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def attendee_emails(self) -> List[str]:
        return sorted({a.email for a in self.attendees if a.email})


class GoogleEventPage(BaseModel):
    """A page of events.list; items stay raw so one bad item cannot sink the page."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(None, alias="nextPageToken")


# Domain models


class StateToken(BaseModel):
    """Decoded OAuth state value."""

    user_id: str
    purpose: str
    issued_at: int
    nonce: str


class CalendarConnection(BaseModel):
    """A user's stored grant of calendar access, with decrypted tokens."""

    user_id: str
    email: str
    has_calendar_scope: bool = False
    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    expires_at: datetime
    connected_at: datetime
    last_sync: Optional[datetime] = None
    error: Optional[str] = None

    @validator('expires_at', 'connected_at', 'last_sync', pre=True)
    def ensure_timezone_aware(cls, v):
        """SQLite hands back naive datetimes; they are stored as UTC."""
        return _ensure_utc(v)

    def is_token_fresh(self, now: datetime, skew_seconds: int) -> bool:
        return now < self.expires_at - timedelta(seconds=skew_seconds)


class MirroredEvent(BaseModel):
    """Local copy of a remote event."""

    user_id: str
    external_event_id: str
    summary: str = ""
    description: Optional[str] = None
    start_time: str
    end_time: str
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator('attendees')
    def normalize_attendees(cls, v):
        """Attendees are a set; keep a canonical order."""
        return sorted(set(v))

    @validator('created_at', 'updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return _ensure_utc(v)

    def content_hash(self) -> str:
        """Generate content hash for change detection."""
        content = {
            'summary': self.summary,
            'description': self.description or '',
            'start_time': self.start_time,
            'end_time': self.end_time,
            'location': self.location or '',
            'attendees': self.attendees,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()


class ConnectionStatus(BaseModel):
    """Read model served to presentation layers."""

    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    has_calendar_scope: bool = Field(False, alias="hasCalendarScope")
    email: Optional[str] = None
    last_sync: Optional[datetime] = Field(None, alias="lastSync")
    error: Optional[str] = None


class CallbackOutcome(BaseModel):
    """Classified result of an OAuth callback."""

    success: bool
    reason: Optional[str] = Field(None, description="Machine-readable reason code on failure")
    message: str = ""
    kind: Optional[FailureKind] = None
    user_id: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def failure(cls, reason: str, message: str, kind: FailureKind,
                user_id: Optional[str] = None) -> 'CallbackOutcome':
        return cls(success=False, reason=reason, message=message, kind=kind, user_id=user_id)


class SyncResult(BaseModel):
    """Result of one sync pass for one user."""

    user_id: str
    success: bool
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    message: str = ""
    error_kind: Optional[FailureKind] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None

    @property
    def stored(self) -> int:
        """Events written during this pass."""
        return self.created + self.updated

    def record(self, operation: SyncOperation) -> None:
        if operation == SyncOperation.CREATE:
            self.created += 1
        elif operation == SyncOperation.UPDATE:
            self.updated += 1
        elif operation == SyncOperation.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data['stored'] = self.stored
        return data


class DisconnectResult(BaseModel):
    success: bool
    message: str
    events_removed: int = 0


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_interval_minutes: int = Field(30, ge=1)
    sync_future_days: int = Field(30, ge=1)
    max_results_per_page: int = Field(250, ge=1, le=2500)
    max_pages: int = Field(20, ge=1)
    calendar_id: str = Field("primary", description="Provider calendar to mirror")
    enable_scheduled_sync: bool = Field(True)
