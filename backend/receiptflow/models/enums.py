"""Enumeration types used throughout the receipt processing service.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API.  When modifying
these enums you should update any corresponding database columns or
Pydantic validators so that new values are accepted where appropriate.
"""

from enum import Enum


class ReceiptStatus(str, Enum):
    """Lifecycle states for a receipt.

    ``PENDING`` is the only legal value at creation; ``PROCESSED`` is
    reached through a successful extraction commit and is never left.
    """

    PENDING = "pending"
    PROCESSED = "processed"


class RunStatus(str, Enum):
    """States of a single pipeline run."""

    STARTED = "started"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ABORTED)


class CommitOutcome(str, Enum):
    """Result of a persistence stage commit."""

    SUCCESS = "Success"
    FAILED = "Failed"


class UsageEventType(str, Enum):
    """Metered actions recorded for a receipt owner."""

    SCAN = "scan"
