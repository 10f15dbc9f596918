"""Exception hierarchy for the ClamAV gateway."""

from __future__ import annotations


class ClamAVError(Exception):
    """Base exception for all ClamAV gateway errors."""


class ClamAVConnectionError(ClamAVError):
    """Raised when the daemon address cannot be resolved or dialed."""


class ClamAVTimeoutError(ClamAVError):
    """Raised when an operation runs past its connection deadline."""


class ClamAVProtocolError(ClamAVError):
    """Raised when a read or write fails in the middle of an exchange.

    Also raised when clamd closes the connection without sending a verdict,
    so callers can tell "could not determine" apart from "infected".
    """


class ClamAVSourceError(ClamAVError):
    """Raised when the input to scan cannot be read or fetched."""


class ClamAVFileTooLargeError(ClamAVError):
    """Raised when the input exceeds the configured maximum size."""
