"""
Data Sync System
Multi-provider communication sync (Gmail, Office 365, Teams)

Only leaf modules are re-exported here. The orchestrator lives in
app.services.sync.orchestration.message_sync and is imported from there, since
it depends on app.services.identity, which in turn imports from this package.
"""
from app.services.sync.cancellation import CancellationToken
from app.services.sync.errors import (
    AuthFailure,
    ConfigurationError,
    DownstreamDispatchError,
    EnumerationFailure,
    NormalizationError,
    PersistenceConflict,
    PersistenceError,
    SyncCancelled,
    SyncError,
    TransientFetchError,
)
from app.services.sync.scheduler import BatchScheduler, PacingPolicy

__all__ = [
    "CancellationToken",
    "AuthFailure",
    "ConfigurationError",
    "DownstreamDispatchError",
    "EnumerationFailure",
    "NormalizationError",
    "PersistenceConflict",
    "PersistenceError",
    "SyncCancelled",
    "SyncError",
    "TransientFetchError",
    "BatchScheduler",
    "PacingPolicy",
]
