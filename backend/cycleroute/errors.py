from __future__ import annotations

from typing import Optional


class RouteGenerationError(Exception):
    """Base class for every failure the route engine reports to its caller."""


class RouteValidationError(RouteGenerationError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class NoRouteFound(RouteGenerationError):
    """
    A mandatory leg has no connectivity in the road graph.
    `leg_index` counts legs from 0 (start -> first waypoint or end).
    """

    def __init__(self, message: str, leg_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.leg_index = leg_index


class Unroutable(NoRouteFound):
    """A requested coordinate has no routable node within the snap radius."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SynthesisTimeout(RouteGenerationError):
    """The deadline expired before any complete route existed."""


class ProviderUnavailable(RouteGenerationError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class CapacityExceeded(RouteGenerationError):
    def __init__(self, retry_after_s: int = 1):
        super().__init__("Too many route syntheses in flight")
        self.retry_after_s = retry_after_s


class InternalInvariantError(RouteGenerationError):
    """Raised when the engine catches itself producing an inconsistent result."""
