"""
Companytec Exception Hierarchy

Errors raised by the DT435 protocol core. Everything derives from
CompanytecError so orchestration layers (API, monitor, CLI) can catch the
whole family with one except clause.
"""


class CompanytecError(Exception):
    """Base exception for all Companytec client errors."""
    pass


class ConnectError(CompanytecError, ConnectionError):
    """Raised when the TCP connection to the device cannot be established.

    Possible causes:
    - Device unreachable or powered off
    - Connection refused (wrong port, 1771 vs 2001)
    - Dial timeout elapsed

    The session stays DISCONNECTED; the caller must connect again.
    """
    pass


class NotConnected(CompanytecError):
    """Raised when an operation is attempted without an active session."""
    pass


class TransportError(CompanytecError):
    """Raised when a write or read on an open session fails.

    The session is always torn down before this is raised.
    """
    pass


class ResponseTimeout(TransportError, TimeoutError):
    """Raised when no closing delimiter arrives before the call deadline.

    The socket cannot be trusted to be frame-aligned afterwards, so the
    session is disconnected as well.
    """
    pass


class MalformedFrame(CompanytecError):
    """Raised when a frame is too short to contain its delimiters."""
    pass


class MalformedResponse(MalformedFrame):
    """Raised when a response is too short for the tag or header it must carry."""
    pass


class ChecksumMismatch(MalformedResponse):
    """Raised by opt-in verification when a response checksum does not match."""
    pass


class InvalidParameter(CompanytecError, ValueError):
    """Raised when command parameters violate the width/type rules.

    Always raised before any I/O takes place.
    """
    pass
