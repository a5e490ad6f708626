# exceptions.py
"""
Airkeeper – Exceptions
======================
Error taxonomy of the update pipeline. Every error is caught at the job
or group boundary and turned into a log record plus a skip decision;
only ConfigurationError is allowed to stop the process.
"""

from __future__ import annotations

from typing import Optional


class KeeperError(Exception):
    """Base class for all keeper failures."""

    def __init__(self, message: str = "Keeper operation failed") -> None:
        self.message: str = message
        super().__init__(self.message)


class ConfigurationError(KeeperError):
    """Configuration could not be loaded or is malformed."""


class InvalidAddress(KeeperError):
    """A value is not a syntactically valid chain address."""


class InvalidThreshold(KeeperError):
    """Deviation threshold is out of range or too precise."""


class InvalidJobIdentifier(KeeperError):
    """A job identifier does not match the hash of its own fields."""

    def __init__(self, job_id: str, expected: str, kind: str = "subscription") -> None:
        self.job_id = job_id
        self.expected = expected
        self.kind = kind
        super().__init__(f"{kind} id {job_id} does not match expected {expected}")


class ApiResolutionFailed(KeeperError):
    """The external API value could not be fetched or extracted."""


class ChainReadFailed(KeeperError):
    """A block, nonce, contract or event read failed after retries."""


class GasPriceUnavailable(ChainReadFailed):
    """Neither a base fee nor a legacy gas price could be fetched."""


class PendingUpdateUnknown(KeeperError):
    """The awaiting-fulfillment check for a pending request failed."""


class SubmissionFailed(KeeperError):
    """Signing or broadcasting an update transaction failed."""

    def __init__(self, message: str, nonce: Optional[int] = None) -> None:
        self.nonce = nonce
        super().__init__(message)


class RetryExhausted(KeeperError):
    """All attempts of a retry-wrapped operation failed or timed out."""

    def __init__(self, description: str, attempts: int, cause: Optional[BaseException]) -> None:
        self.description = description
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{description} failed after {attempts} attempt(s): {cause!r}")
