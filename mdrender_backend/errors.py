"""Error taxonomy for the rendering core.

Everything a caller of ``RenderCoordinator.render`` can see derives from
``RenderError``. ``UnitFault`` is never raised into a render call; it is handed
to the coordinator's fault callback instead.
"""
from __future__ import annotations

from typing import Optional


class RenderError(Exception):
    """Base class for rendering failures."""


class InitializationError(RenderError):
    """The execution unit never reached the ready state."""


class NotReadyError(RenderError):
    """A request was attempted while the unit was not ready (or already shut down)."""


class ProcessingError(RenderError):
    """A pipeline stage failed for one specific request."""

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class RenderTimeoutError(RenderError):
    """No response arrived within the request budget."""

    def __init__(self, message: str, request_id: Optional[str] = None, timeout_ms: Optional[float] = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.timeout_ms = timeout_ms


class TerminationError(RenderError):
    """The unit was shut down while the request was outstanding."""


class UnitFault(RenderError):
    """A fault reported by the unit that is not tied to any request."""
