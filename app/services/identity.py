"""
Identity Resolution Service
Maps a message's sender address to an internal employee identity

Read-only: the resolver never creates or merges identities. Employee records
are maintained by identity reconciliation (orchestration/identity_sync.py) or
by whoever owns the employees table.
"""
import asyncio
import logging
from typing import Optional

from supabase import Client

from app.core.config import settings
from app.models.schemas.sync import ResolvedIdentity
from app.services.sync.canonical import normalize_email

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Looks up employees by email.

    A missing employee is a valid outcome (employee_id=None), not an error.
    Lookup failures propagate to the caller, which skips the item.
    """

    def __init__(self, supabase: Client, table: Optional[str] = None):
        self.supabase = supabase
        self.table = table or settings.employees_table

    def _lookup(self, email: str):
        return (
            self.supabase.table(self.table)
            .select("id")
            .eq("email", email)
            .limit(1)
            .execute()
        )

    async def resolve(self, email: Optional[str]) -> ResolvedIdentity:
        address = normalize_email(email)
        if not address:
            return ResolvedIdentity()

        # supabase-py is blocking
        result = await asyncio.to_thread(self._lookup, address)

        if result.data:
            employee_id = str(result.data[0]["id"])
            logger.debug(f"Identity: {address} → employee {employee_id}")
            return ResolvedIdentity(employee_id=employee_id)

        logger.debug(f"Identity: {address} → no employee record")
        return ResolvedIdentity()
