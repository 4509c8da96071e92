# src/calmirror/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar",
)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google OAuth client
    google_client_id: str = Field(..., description="Google OAuth Client ID")
    google_client_secret: str = Field(..., description="Google OAuth Client Secret")
    google_client_id_file: Optional[str] = Field(None, description="Path to file containing Google Client ID")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8080/api/auth/google/calendar/callback",
        description="Registered redirect URI, reproduced verbatim at exchange time"
    )
    google_scopes: List[str] = Field(
        default=[
            "openid",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/calendar.readonly",
        ],
        description="Google API scopes"
    )

    # OAuth round trip
    oauth_state_secret: str = Field(
        default="",
        description="HMAC secret for OAuth state values (defaults to the client secret)"
    )
    oauth_state_ttl_seconds: int = Field(default=600, ge=60, le=3600)
    oauth_success_redirect: str = Field(
        default="http://localhost:3000/settings",
        description="Landing page after a successful calendar connection"
    )
    oauth_error_redirect: str = Field(
        default="http://localhost:3000/settings",
        description="Landing page after a failed calendar connection"
    )

    # Credential handling
    token_encryption_key: Optional[str] = Field(
        default=None,
        description="Fernet key used to encrypt stored OAuth tokens"
    )
    token_refresh_skew_seconds: int = Field(
        default=60,
        ge=0,
        le=3600,
        description="Refresh access tokens this many seconds before expiry"
    )

    # Application Configuration
    app_name: str = Field(default="calmirror", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calmirror",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # Performance Configuration
    max_concurrent_requests: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent HTTP requests"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calmirror.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('google_client_id', 'google_client_secret')
    def validate_client_credential(cls, v):
        """Reject obviously truncated client credentials."""
        if not v:
            return v
        v = v.strip()
        if not v or len(v) < 10:
            raise ValueError("Google client credentials must be at least 10 characters")
        return v

    @validator('google_redirect_uri')
    def validate_redirect_uri(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("Redirect URI must be an absolute http(s) URL")
        return v

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        if kwargs.get('google_client_id_file'):
            kwargs['google_client_id'] = self._read_credential_file(kwargs['google_client_id_file'])
        if kwargs.get('google_client_secret_file'):
            kwargs['google_client_secret'] = self._read_credential_file(kwargs['google_client_secret_file'])

        super().__init__(**kwargs)

    @staticmethod
    def _read_credential_file(file_path: str) -> str:
        """Read credential from file with proper error handling.

        Args:
            file_path: Path to credential file

        Returns:
            Credential value

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    @property
    def state_secret(self) -> str:
        return self.oauth_state_secret or self.google_client_secret

    @property
    def calendar_scopes(self) -> List[str]:
        return [s for s in self.google_scopes if s in CALENDAR_SCOPES]

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')
        if not self.google_client_secret:
            missing.append('GOOGLE_CLIENT_SECRET')
        if not self.calendar_scopes:
            missing.append('GOOGLE_SCOPES (no calendar scope requested)')

        return missing


def grants_calendar_scope(scopes) -> bool:
    """Whether a granted scope list includes calendar read access."""
    return any(scope in CALENDAR_SCOPES for scope in scopes)


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to an env file overriding ``.env``

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# calmirror configuration
# Copy this file to .env and fill in your actual credentials

# Google OAuth client (web application type)
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here
# Must match an authorized redirect URI on the OAuth client exactly
GOOGLE_REDIRECT_URI=http://localhost:8080/api/auth/google/calendar/callback

# OAuth round trip
OAUTH_STATE_SECRET=change_me
OAUTH_STATE_TTL_SECONDS=600
OAUTH_SUCCESS_REDIRECT=http://localhost:3000/settings
OAUTH_ERROR_REDIRECT=http://localhost:3000/settings

# Token storage; generate with:
# python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
# TOKEN_ENCRYPTION_KEY=
TOKEN_REFRESH_SKEW_SECONDS=60

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=30
SYNC_CONFIG__SYNC_FUTURE_DAYS=30
SYNC_CONFIG__MAX_RESULTS_PER_PAGE=250
SYNC_CONFIG__MAX_PAGES=20
SYNC_CONFIG__CALENDAR_ID=primary
SYNC_CONFIG__ENABLE_SCHEDULED_SYNC=true

# Performance Configuration
MAX_CONCURRENT_REQUESTS=10
REQUEST_TIMEOUT_SECONDS=30

# Storage Configuration (optional)
# DATA_DIR=~/.calmirror
# DATABASE_URL=sqlite:///~/.calmirror/calmirror.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
