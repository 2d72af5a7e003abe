"""Error taxonomy of the bridge.

- ``MalformedValueError``      one raw record carries unusable data; the record
                               is dropped from the cycle.
- ``AmbiguousComparisonError`` two treatments cannot be compared; indicates a
                               programming defect and aborts the cycle.
- ``CollaboratorError``        the source or destination failed; the cycle is
                               aborted without advancing the watermark.

An unmatched meal bolus is deliberately absent: it is an expected transient
state, retried on the next cycle.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all bridge errors."""


class MalformedValueError(BridgeError, ValueError):
    """Raised when a raw record field cannot be interpreted."""

    def __init__(self, message: str, record: Any = None) -> None:
        super().__init__(message)
        self.record = record


class AmbiguousComparisonError(BridgeError, TypeError):
    """Raised when treatment equality is undefined for the given pair."""


class CollaboratorError(BridgeError):
    """Raised when an external system (source or destination) fails."""


class SourceError(CollaboratorError):
    """Diasend request or payload failure."""


class DestinationError(CollaboratorError):
    """Nightscout request or payload failure."""
