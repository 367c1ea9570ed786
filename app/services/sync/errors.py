"""
Sync error types
One exception per failure domain of a sync run

POLICY (see orchestration/message_sync.py):
- EnumerationFailure, AuthFailure, ConfigurationError, SyncCancelled: abort the run
- TransientFetchError: ends one principal, recorded in the run summary
- NormalizationError, PersistenceError: skip one item, recorded in the run summary
- PersistenceConflict: treated as success
- DownstreamDispatchError: logged only
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync errors."""

    code = "sync_error"

    def __init__(self, message: str, unit: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.unit = unit


class EnumerationFailure(SyncError):
    """Provider principals could not be listed at all."""

    code = "enumeration_failure"


class AuthFailure(SyncError):
    """Provider rejected the token or credentials."""

    code = "auth_failure"


class TransientFetchError(SyncError):
    """Network / rate-limit / server error while fetching a page."""

    code = "transient_fetch_error"


class NormalizationError(SyncError):
    """Raw provider item could not be mapped to a CanonicalMessage."""

    code = "normalization_error"


class PersistenceError(SyncError):
    """Storage rejected a record for a reason other than a key conflict."""

    code = "persistence_error"


class PersistenceConflict(SyncError):
    """Natural key already stored by a concurrent insert."""

    code = "persistence_conflict"


class DownstreamDispatchError(SyncError):
    """Enqueue for downstream analysis failed."""

    code = "downstream_dispatch_error"


class ConfigurationError(SyncError):
    """Required configuration is missing or invalid."""

    code = "configuration_error"


class SyncCancelled(SyncError):
    """Run stopped by an operator or a deadline."""

    code = "sync_cancelled"
