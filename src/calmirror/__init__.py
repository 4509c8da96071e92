"""Google Calendar connection lifecycle and local event mirroring."""

__version__ = "1.0.0"
