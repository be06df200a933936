"""
Custom exception hierarchy for the position monitor.

Hierarchy:

    MonitorError (base)
    ├── OperationalError     — transient/retryable (RPC, network, disk)
    │   ├── FetchError       — pool query collaborator failed
    │   ├── NotificationError — notification sink failed to deliver
    │   └── StorageError     — persistence backend failed
    ├── DataError            — bad input, reject at the boundary
    │   ├── ValidationError
    │   └── NotFoundError
    ├── SchedulerError       — scheduler misuse (unknown/busy task)
    └── ReconciliationError  — a bulk pass finished with failed positions

Rules:
    - OperationalError: let it reach the scheduler, which retries with backoff
    - DataError: raise where the bad value would first corrupt state
    - NotificationError: log and continue, never fails a reconciliation
"""
from typing import Dict


class MonitorError(Exception):
    """Base exception for all position monitor errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(MonitorError):
    """Transient/retryable error: RPC, network, timeouts, disk."""
    pass


class FetchError(OperationalError):
    """Raised when the pool query collaborator fails."""
    pass


class NotificationError(OperationalError):
    """Raised when a notification could not be delivered."""
    pass


class StorageError(OperationalError):
    """Raised when the persistence backend cannot read or write."""
    pass


# ============ DATA (bad input) ============

class DataError(MonitorError):
    """Bad data: malformed parameters, unknown identifiers."""
    pass


class ValidationError(DataError):
    """Raised when required fields are missing or malformed."""
    pass


class NotFoundError(DataError):
    """Raised when a required-to-exist record is unknown."""
    pass


# ============ SCHEDULER / RECONCILIATION ============

class SchedulerError(MonitorError):
    """Raised on scheduler misuse (unknown task id, task already running)."""
    pass


class ReconciliationError(MonitorError):
    """Raised after a bulk pass in which one or more positions failed.

    ``failures`` maps position id to the error message of its failed check.
    Writes already committed for other positions are kept.
    """

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        ids = ", ".join(sorted(self.failures))
        super().__init__(f"{len(self.failures)} position check(s) failed: {ids}")
