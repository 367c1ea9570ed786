"""
Message persistence
Idempotent storage of canonical messages in Supabase

IDEMPOTENCE:
Messages are keyed by (provider, provider_message_id, owner_account_email),
backed by a unique constraint on the communications table.

    key not stored   → insert full record           (created=True)
    key stored       → update score/flag/category   (created=False)
    racing insert    → unique violation 23505, no-op (created=False)

Content fields (subject, body, participants) are never rewritten on re-sync.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError
from supabase import Client

from app.core.config import settings
from app.models.schemas.sync import CanonicalMessage, UpsertResult
from app.services.sync.canonical import NaturalKey, get_natural_key
from app.services.sync.errors import PersistenceConflict, PersistenceError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def derive_category(message: CanonicalMessage, threshold: Optional[int] = None) -> str:
    """
    Storage category for a message without an analyzer-supplied one.

    score >= 80 → policy_violation, score >= threshold (60) → suspicious,
    sender domain != owner domain → external, else internal.
    """
    threshold = settings.risk_flag_threshold if threshold is None else threshold
    if message.risk_score >= 80:
        return "policy_violation"
    if message.risk_score >= threshold:
        return "suspicious"

    sender_domain = message.sender_email.rpartition("@")[2]
    owner_domain = message.owner_account_email.rpartition("@")[2]
    if sender_domain and owner_domain and sender_domain != owner_domain:
        return "external"
    return "internal"


def to_record(message: CanonicalMessage) -> Dict[str, Any]:
    """Full row for a first-time insert."""
    now = datetime.now(timezone.utc).isoformat()
    record = message.model_dump(mode="json")
    record["category"] = message.category or derive_category(message)
    record["created_at"] = now
    record["updated_at"] = now
    return record


class PersistenceGateway:
    """
    Upserts canonical messages by natural key.

    Args:
        supabase: Supabase client (service role)
        table: Communications table name
    """

    def __init__(self, supabase: Client, table: Optional[str] = None):
        self.supabase = supabase
        self.table = table or settings.communications_table

    # supabase-py is blocking; each call runs in a worker thread. Cancelling a
    # run cannot interrupt a thread that already started, so an in-flight
    # insert may still land after SyncCancelled. The natural key keeps that
    # row idempotent on the next run.

    def _find(self, key_filter: Dict[str, str]):
        query = self.supabase.table(self.table).select("id, employee_id")
        for column, value in key_filter.items():
            query = query.eq(column, value)
        return query.limit(1).execute()

    def _update(self, row_id: Any, changes: Dict[str, Any]):
        return self.supabase.table(self.table).update(changes).eq("id", row_id).execute()

    def _insert(self, record: Dict[str, Any]):
        return self.supabase.table(self.table).insert(record).execute()

    async def _insert_new(self, key: NaturalKey, record: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._insert, record)
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise PersistenceConflict(f"natural key already stored: {key.as_string()}") from e
            raise

    async def upsert(self, message: CanonicalMessage) -> UpsertResult:
        """
        Store a message, or refresh the mutable fields of an existing one.

        Returns:
            UpsertResult(created=True) only when this call inserted the row

        Raises:
            PersistenceError: For any storage failure other than a key conflict
        """
        key = get_natural_key(message.provider.value, message.provider_message_id, message.owner_account_email)

        try:
            existing = await asyncio.to_thread(self._find, key.as_filter())

            if existing.data:
                row = existing.data[0]
                changes: Dict[str, Any] = {
                    "risk_score": message.risk_score,
                    "flagged": message.flagged,
                    "category": message.category or derive_category(message),
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                }
                if message.employee_id and not row.get("employee_id"):
                    changes["employee_id"] = message.employee_id
                await asyncio.to_thread(self._update, row["id"], changes)
                logger.debug(f"♻️  Updated existing message {key.as_string()}")
                return UpsertResult(created=False)

            await self._insert_new(key, to_record(message))
            logger.debug(f"💾 Stored message {key.as_string()}")
            return UpsertResult(created=True)

        except PersistenceConflict:
            # Another unit inserted the same key first
            logger.debug(f"Natural key conflict for {key.as_string()}, treating as stored")
            return UpsertResult(created=False)
        except APIError as e:
            raise PersistenceError(f"{key.as_string()}: {e.message or e}") from e
        except Exception as e:
            raise PersistenceError(f"{key.as_string()}: {type(e).__name__}: {e}") from e
