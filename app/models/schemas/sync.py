"""
Sync Schemas
Canonical message model, principals, run summaries and API request/response models
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================================
# ENUMS
# ============================================================================

class Provider(str, Enum):
    GMAIL = "gmail"
    OFFICE365 = "office365"
    TEAMS = "teams"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class PrincipalKind(str, Enum):
    MAILBOX = "mailbox"
    CHANNEL = "channel"


class SyncState(str, Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    RECONCILING = "reconciling"
    SCHEDULING = "scheduling"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


class UnitStage(str, Enum):
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    SCORING = "scoring"
    PERSISTING = "persisting"
    DISPATCHING = "dispatching"


# Folder names attached to raw items at fetch time (explicit origin tag)
FOLDER_INBOX = "inbox"
FOLDER_SENT = "sent"
FOLDER_CHANNEL = "channel"


# ============================================================================
# PROVIDER-SIDE MODELS
# ============================================================================

class Principal(BaseModel):
    """
    One monitored account or channel.
    Produced fresh by enumeration on every run; never mutated by the core.
    """
    id: str
    primary_email: Optional[str] = None  # None for channel-only principals
    display_name: str = ""
    enabled: bool = True
    kind: PrincipalKind = PrincipalKind.MAILBOX
    parent_id: Optional[str] = None  # Team id for a Teams channel
    parent_name: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        """Human-readable unit name used in logs and error entries."""
        if self.kind == PrincipalKind.CHANNEL:
            return f"{self.parent_name or self.parent_id}/{self.display_name or self.id}"
        return self.primary_email or self.display_name or self.id


class FetchContext(BaseModel):
    """Parameters of one folder fetch for one principal."""
    since: datetime
    max_items: int = Field(..., ge=0)
    page_size: int = Field(50, ge=1)
    folder: str = FOLDER_INBOX


class RawItem(BaseModel):
    """Provider payload tagged with the folder it was fetched from."""
    payload: Dict[str, Any]
    folder: str


class ActivityPage(BaseModel):
    items: List[RawItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None


# ============================================================================
# CANONICAL MESSAGE
# ============================================================================

class AttachmentInfo(BaseModel):
    """Attachment metadata only; content is never fetched."""
    name: str
    size: Optional[int] = None
    content_type: Optional[str] = None


class CanonicalMessage(BaseModel):
    """
    Single normalized representation of an activity item regardless of provider.

    Natural key: (provider, provider_message_id, owner_account_email)

    INVARIANTS:
    - outbound ⇒ sender_email == owner_account_email
    - inbound ⇒ recipient_emails == [owner_account_email]
    """
    provider: Provider
    provider_message_id: str = Field(..., min_length=1)
    owner_account_email: str = Field(..., min_length=1)
    principal_id: Optional[str] = None
    thread_id: Optional[str] = None
    sender_email: str
    sender_name: str = ""
    recipient_emails: List[str] = Field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: Optional[str] = None
    sent_at: datetime
    has_attachments: bool = False
    attachments: List[AttachmentInfo] = Field(default_factory=list)
    attachment_count: int = Field(0, ge=0)
    direction: Direction
    risk_score: int = Field(0, ge=0, le=100)
    flagged: bool = False
    category: Optional[str] = None
    employee_id: Optional[str] = None

    @model_validator(mode="after")
    def check_direction_invariant(self):
        if self.direction == Direction.OUTBOUND and self.sender_email != self.owner_account_email:
            raise ValueError(
                f"outbound message sender {self.sender_email!r} must be the owner {self.owner_account_email!r}"
            )
        if self.direction == Direction.INBOUND and self.recipient_emails != [self.owner_account_email]:
            raise ValueError(
                f"inbound message recipients must be exactly [{self.owner_account_email!r}]"
            )
        return self

    @property
    def natural_key(self) -> tuple:
        return (self.provider.value, self.provider_message_id, self.owner_account_email)


# ============================================================================
# COLLABORATOR RESULTS
# ============================================================================

class ResolvedIdentity(BaseModel):
    """Output of the Identity Resolver. employee_id=None is a valid outcome."""
    employee_id: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.employee_id is not None


class RiskAssessment(BaseModel):
    risk_score: int = Field(0, ge=0, le=100)
    flagged: bool = False
    category: Optional[str] = None


class UpsertResult(BaseModel):
    created: bool


class ConnectionTestResult(BaseModel):
    success: bool
    detail: str
    count_found: int = 0


# ============================================================================
# RUN OPTIONS & SUMMARY
# ============================================================================

class SyncOptions(BaseModel):
    """Options for one orchestrator run (runSync)."""
    window_days: int = Field(7, ge=1, le=365)
    max_items_per_principal: int = Field(100, ge=1)
    concurrency_limit: int = Field(10, ge=1)
    include_outbound: bool = True
    reconcile_identities: bool = False
    page_size: int = Field(50, ge=1)
    pacing_delay: float = Field(1.0, ge=0)
    deadline_seconds: Optional[float] = Field(None, gt=0)


class SyncErrorEntry(BaseModel):
    unit: str
    message: str
    stage: Optional[UnitStage] = None


class IdentityReconciliationResult(BaseModel):
    total_principals: int = 0
    eligible_principals: int = 0
    excluded_principals: int = 0
    upserted_employees: int = 0
    errors: List[SyncErrorEntry] = Field(default_factory=list)


class SyncRunSummary(BaseModel):
    """
    Aggregate counters for one orchestrator invocation.
    A return value, never stored by the core.
    """
    provider: Provider
    status: SyncState = SyncState.IDLE
    total_principals: int = 0
    processed_principals: int = 0
    total_items: int = 0
    processed_items: int = 0
    inbound_items: int = 0
    outbound_items: int = 0
    created_items: int = 0
    flagged_items: int = 0
    errors: List[SyncErrorEntry] = Field(default_factory=list)
    dropped_errors: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    identity_reconciliation: Optional[IdentityReconciliationResult] = None


# ============================================================================
# API MODELS
# ============================================================================

class SyncRequest(BaseModel):
    """
    Body of POST /api/v1/sync/{provider}.
    Unset fields fall back to configured defaults.
    """
    window_days: Optional[int] = Field(None, ge=1, le=365)
    max_items_per_principal: Optional[int] = Field(None, ge=1)
    concurrency_limit: Optional[int] = Field(None, ge=1, le=50)
    include_outbound: Optional[bool] = None
    reconcile_identities: bool = False
    background: bool = False


class SyncJobResponse(BaseModel):
    job_id: str
    status: str
    provider: Provider
