"""estatefeed — Error Taxonomy.

Batch-fatal problems are exceptions. Per-record problems are not: they are
reported as a `RecordErrorKind` inside a batch report so a bad record never
stops the rest of its collection.
"""

from enum import Enum


class FetchError(Exception):
    """Raised when a feed endpoint cannot be downloaded."""

    def __init__(self, message: str, status_code: int = 0, retryable: bool = True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class FeedDecodeError(Exception):
    """Raised when a downloaded body is not valid JSON."""


class RecordErrorKind(str, Enum):
    """Why a single feed record was skipped."""

    MISSING_IDENTIFIER = "missing_identifier"  # no stable external id
    DANGLING_REFERENCE = "dangling_reference"  # parent row absent from the DB
    INTEGRITY_ERROR = "integrity_error"  # database rejected the write
    INVALID_VALUE = "invalid_value"  # value the column cannot hold
