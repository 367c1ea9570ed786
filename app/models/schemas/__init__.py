"""
Pydantic Schemas
All sync domain models and request/response models for API endpoints
"""

# Sync schemas
from .sync import (
    ActivityPage,
    CanonicalMessage,
    ConnectionTestResult,
    Direction,
    FetchContext,
    IdentityReconciliationResult,
    Principal,
    PrincipalKind,
    Provider,
    RawItem,
    ResolvedIdentity,
    RiskAssessment,
    SyncErrorEntry,
    SyncJobResponse,
    SyncOptions,
    SyncRequest,
    SyncRunSummary,
    SyncState,
    UnitStage,
    UpsertResult,
)

__all__ = [
    # Enums
    "Provider",
    "Direction",
    "PrincipalKind",
    "SyncState",
    "UnitStage",
    # Provider side
    "Principal",
    "FetchContext",
    "RawItem",
    "ActivityPage",
    # Canonical
    "CanonicalMessage",
    "ResolvedIdentity",
    "RiskAssessment",
    "UpsertResult",
    "ConnectionTestResult",
    # Runs
    "SyncOptions",
    "SyncErrorEntry",
    "IdentityReconciliationResult",
    "SyncRunSummary",
    # API
    "SyncRequest",
    "SyncJobResponse",
]
