"""
Error taxonomy for the signal pipeline.

Component-local errors (one event, one source) are caught and logged where
they occur. ConfigurationError aborts the whole tick.
"""


class SharpEdgeError(Exception):
    """Base error. Always carries a human-readable reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InsufficientQuotes(SharpEdgeError):
    """Too few quotes to de-vig a market safely."""


class UpstreamUnavailable(SharpEdgeError):
    """An external source errored or timed out."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source


class AmbiguousResolution(SharpEdgeError):
    """Market state does not clearly indicate a winner."""


class SafetyGateRejected(SharpEdgeError):
    """A signal was vetoed by the execution gate."""


class ConfigurationError(SharpEdgeError):
    """Tick-level failure such as missing credentials."""
