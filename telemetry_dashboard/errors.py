"""Exception types raised by the ingestion engine."""
from __future__ import annotations


class DashboardError(Exception):
    """Base class for every error raised by the dashboard."""


class ConfigError(DashboardError):
    """The point registry could not be built from the supplied configuration."""


class SourceError(DashboardError):
    """A source adapter failed to produce a raw value."""


class SourceConnectError(SourceError):
    pass


class SourceTransportError(SourceError):
    pass


class SourceTimeoutError(SourceError, TimeoutError):
    pass


class NotificationDispatchError(DashboardError):
    pass
