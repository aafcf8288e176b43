"""Exception types raised by the Chorus routing core."""

from __future__ import annotations


class ChorusError(Exception):
    """Base class for Chorus errors."""


class NotAuthenticatedError(ChorusError):
    """The identity has no live authentication record or token."""


class BlacklistedError(ChorusError):
    """The identity is blacklisted and the operation is refused."""


class InvalidStateError(ChorusError):
    """An operation does not apply to the aggregate's current state."""


class NotFoundError(ChorusError):
    """A referenced message, guild or record no longer exists or is inaccessible."""


class TransportError(ChorusError):
    """A fetch failed for infrastructure reasons (network, rate limit, permissions)."""
