"""
Relay error taxonomy.

Every pipeline step raises one of these. The worker decides per class whether
the inbound message is rejected (ACKed to the rejected stream, never retried)
or failed (left pending for the channel's redelivery).
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class DecodeError(RelayError):
    """Channel payload is not a parseable protocol packet."""


class UnexpectedPacketType(DecodeError):
    """Packet parsed, but it is not the expected PUBLISH frame."""


class PayloadError(RelayError):
    """Packet body is not a valid chat envelope."""


class UpstreamError(RelayError):
    """External service was reached but answered with an error."""

    def __init__(self, message: str, *, code: Optional[int] = None, service: str = "") -> None:
        self.code = code
        self.message = message
        self.service = service
        prefix = f"{service}: " if service else ""
        suffix = f" (code={code})" if code is not None else ""
        super().__init__(f"{prefix}{message}{suffix}")


class NoResultError(UpstreamError):
    """External service answered successfully but with nothing usable."""


class TransportError(RelayError):
    """Network/IO failure reaching an external service or tool."""


class ConversionError(RelayError):
    """External audio conversion tool failed."""


class UnexpectedContentType(RelayError):
    """Response body was not in the expected format."""

    def __init__(self, expected: str, actual: str, body_snippet: str = "") -> None:
        self.expected = expected
        self.actual = actual
        self.body_snippet = body_snippet
        super().__init__(f"expected content type {expected}, got {actual or '<none>'}: {body_snippet}")


class CredentialError(RelayError):
    """Credential refresh gave up (fatal mode)."""


def is_rejection(exc: BaseException) -> bool:
    """Malformed input is rejected outright; everything else is a retryable failure."""
    return isinstance(exc, (DecodeError, PayloadError))
