"""Exception hierarchy shared by the pomelobot toolkit."""

from __future__ import annotations


class PomeloBotError(Exception):
    """Base class for every error raised by pomelobot."""


class TransportError(PomeloBotError):
    """Raised when the transport cannot complete an operation."""


class ConnectionClosedError(TransportError):
    """Raised for requests still pending when a session is torn down."""


class HandshakeError(PomeloBotError):
    """Raised when the server rejects the handshake."""

    def __init__(self, message: str, code: object = None) -> None:
        super().__init__(message)
        self.code = code


class SessionTimeoutError(PomeloBotError, TimeoutError):
    """Raised when a connect or request exceeds its deadline."""


class HeartbeatTimeoutError(PomeloBotError):
    """Reported when the server stops answering heartbeats."""


class RouteCompressionError(PomeloBotError):
    """Raised when an inbound message uses an unknown route code."""


class CodecError(PomeloBotError, ValueError):
    """Raised for truncated or malformed frames."""


class CompilationError(PomeloBotError, ValueError):
    """Raised while compiling a step list or an assertion expression."""


class TemplateLookupError(PomeloBotError, LookupError):
    """Raised when a ``$scope.path`` reference cannot be resolved."""


class ExpectationError(PomeloBotError, AssertionError):
    """Raised when a response does not match its expectation."""


class ScriptLoadError(PomeloBotError):
    """Raised when a script file cannot be loaded."""


__all__ = [
    "PomeloBotError",
    "TransportError",
    "ConnectionClosedError",
    "HandshakeError",
    "SessionTimeoutError",
    "HeartbeatTimeoutError",
    "RouteCompressionError",
    "CodecError",
    "CompilationError",
    "TemplateLookupError",
    "ExpectationError",
    "ScriptLoadError",
]
