"""Database models and operations for connections and mirrored events."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, JSON, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import MirroredEvent, SyncOperation

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return str(value)
        if not isinstance(value, UUID):
            value = UUID(value)
        return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, UUID):
            return value
        return UUID(value)


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class CalendarConnectionDB(Base):
    """One Google Calendar grant per user."""

    __tablename__ = 'calendar_connections'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    email = Column(String(320), nullable=False)
    has_calendar_scope = Column(Boolean, nullable=False, default=False)

    # Token material; ciphertext when encryption is configured
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    connected_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_sync = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', name='uq_calendar_connection_user'),
        Index('idx_calendar_connection_scope', 'has_calendar_scope'),
    )


class MirroredEventDB(Base):
    """Local copy of a remote event, keyed by (user_id, external_event_id)."""

    __tablename__ = 'mirrored_events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    external_event_id = Column(String(1024), nullable=False)

    summary = Column(String(1024), nullable=False, default="")
    description = Column(Text, nullable=True)
    # Provider-native: RFC3339 date-time or YYYY-MM-DD
    start_time = Column(String(64), nullable=False)
    end_time = Column(String(64), nullable=False)
    location = Column(String(1024), nullable=True)
    attendees = Column(JSON, nullable=False, default=list)

    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'external_event_id', name='uq_mirrored_event_identity'),
        Index('idx_mirrored_event_user', 'user_id'),
        Index('idx_mirrored_event_user_start', 'user_id', 'start_time'),
    )

    def to_model(self) -> MirroredEvent:
        return MirroredEvent(
            user_id=self.user_id,
            external_event_id=self.external_event_id,
            summary=self.summary,
            description=self.description,
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
            attendees=self.attendees or [],
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class DatabaseManager:
    """Database manager for connections and the event mirror."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            # Sessions are opened from the server's worker threads
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def reset_db(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_connection(self, session: Session, user_id: str) -> Optional[CalendarConnectionDB]:
        """Get the connection row for a user.

        Args:
            session: Database session
            user_id: Owning user

        Returns:
            Connection row or None if the user never connected
        """
        return session.query(CalendarConnectionDB).filter(
            CalendarConnectionDB.user_id == user_id
        ).first()

    def get_connected_user_ids(self, session: Session) -> List[str]:
        """Users whose connection grants calendar access."""
        rows = session.query(CalendarConnectionDB.user_id).filter(
            CalendarConnectionDB.has_calendar_scope.is_(True)
        ).order_by(CalendarConnectionDB.user_id).all()
        return [row[0] for row in rows]

    def get_mirrored_event(
        self,
        session: Session,
        user_id: str,
        external_event_id: str
    ) -> Optional[MirroredEventDB]:
        """Get mirrored event by its identity key.

        Args:
            session: Database session
            user_id: Owning user
            external_event_id: Provider event ID

        Returns:
            Mirrored event or None if not found
        """
        return session.query(MirroredEventDB).filter(
            MirroredEventDB.user_id == user_id,
            MirroredEventDB.external_event_id == external_event_id
        ).first()

    def list_mirrored_events(self, session: Session, user_id: str) -> List[MirroredEventDB]:
        return session.query(MirroredEventDB).filter(
            MirroredEventDB.user_id == user_id
        ).order_by(MirroredEventDB.start_time, MirroredEventDB.external_event_id).all()

    def count_mirrored_events(self, session: Session, user_id: str) -> int:
        return session.query(MirroredEventDB).filter(
            MirroredEventDB.user_id == user_id
        ).count()

    def upsert_mirrored_event(self, session: Session, event: MirroredEvent) -> SyncOperation:
        """Insert or overwrite one mirrored event and commit.

        Rows whose content hash already matches are left untouched.

        Args:
            session: Database session
            event: Event mapped from the provider payload

        Returns:
            The operation that was applied
        """
        content_hash = event.content_hash()
        existing = self.get_mirrored_event(session, event.user_id, event.external_event_id)

        if existing is None:
            session.add(MirroredEventDB(
                user_id=event.user_id,
                external_event_id=event.external_event_id,
                summary=event.summary,
                description=event.description,
                start_time=event.start_time,
                end_time=event.end_time,
                location=event.location,
                attendees=event.attendees,
                content_hash=content_hash,
            ))
            session.commit()
            return SyncOperation.CREATE

        if existing.content_hash == content_hash:
            return SyncOperation.UNCHANGED

        existing.summary = event.summary
        existing.description = event.description
        existing.start_time = event.start_time
        existing.end_time = event.end_time
        existing.location = event.location
        existing.attendees = event.attendees
        existing.content_hash = content_hash
        existing.updated_at = _utcnow()
        session.commit()
        return SyncOperation.UPDATE

    def delete_mirrored_events(self, session: Session, user_id: str) -> int:
        """Delete every mirrored event for a user without committing.

        Returns:
            Number of rows deleted
        """
        return session.query(MirroredEventDB).filter(
            MirroredEventDB.user_id == user_id
        ).delete(synchronize_session=False)
