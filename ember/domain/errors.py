"""
Error taxonomy for the check-in core.

- ValidationError: bad input, rejected before any state mutation
- UpstreamError: text generation or transport failed; always degraded, never fatal
- PersistenceError: the durable record could not be read or written
"""


class EmberError(Exception):
    """Base class for all errors raised by the core."""


class ValidationError(EmberError, ValueError):
    """Missing identity or malformed snapshot/reply fields."""


class UpstreamError(EmberError):
    """An external collaborator (model or transport) failed or timed out."""

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class PersistenceError(EmberError):
    """A user record could not be loaded or committed."""

    def __init__(self, identity: str, message: str) -> None:
        super().__init__(f"record for {identity!r}: {message}")
        self.identity = identity
