"""Read model of a user's calendar connection."""

from .credential_store import CredentialStore
from .models import ConnectionStatus


class ConnectionStatusProjector:
    """Reflects stored connection state; never syncs or refreshes."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def status(self, user_id: str) -> ConnectionStatus:
        connection = self.store.get(user_id)
        if connection is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=connection.has_calendar_scope,
            has_calendar_scope=connection.has_calendar_scope,
            email=connection.email,
            last_sync=connection.last_sync,
            error=connection.error,
        )
