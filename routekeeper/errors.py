# routekeeper/errors.py
from typing import List, Optional, Tuple


class RouteKeeperError(Exception):
    """Base exception for the route service."""


class ConfigurationError(RouteKeeperError):
    """Missing or invalid required setting. Fatal at startup."""


class PriceSourceError(RouteKeeperError):
    """A single quote request failed or returned garbage."""


class SourceUnavailable(RouteKeeperError):
    """No pair could be quoted; the previous graph must be kept."""


class PartialSourceFailure(RouteKeeperError):
    """Some pairs failed. The graph is built from the rest."""

    def __init__(self, failed: List[Tuple[str, str]], total: int):
        self.failed = failed
        self.total = total
        pairs = ", ".join(f"{a}->{b}" for a, b in failed)
        super().__init__(f"{len(failed)}/{total} quotes failed: {pairs}")


class PublishRaceDetected(RouteKeeperError):
    """A snapshot was published out of generation order."""


class HeartbeatWriteError(RouteKeeperError):
    """A heartbeat record could not be appended."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
