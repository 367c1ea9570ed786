"""
Identity Reconciliation
Syncs enumerated provider principals into the employees table

Runs to completion before message sync when a run asks for it, so the
identity resolver sees the freshly upserted employees.

ELIGIBILITY (company employees only):
- has an email address
- account enabled
- user type 'member' (guests excluded) when the provider reports one
- email domain == COMPANY_DOMAIN
- local part is not a service account (noreply, admin, alerts, support, ...)
- display name of at least two characters
"""
import asyncio
import logging
import re
from typing import Iterable, List, Optional

from supabase import Client

from app.core.config import settings
from app.models.schemas.sync import IdentityReconciliationResult, Principal, PrincipalKind, SyncErrorEntry
from app.services.sync.canonical import normalize_email
from app.services.sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_PATTERNS = [
    re.compile(r"^(noreply|donotreply|no-reply|do-not-reply)$", re.IGNORECASE),
    re.compile(r"^(admin|system|service|api|bot|automated)$", re.IGNORECASE),
    re.compile(r"^(alerts?|notifications?|reports?)$", re.IGNORECASE),
    re.compile(r"^(support|help|contact|info)$", re.IGNORECASE),
]


def is_service_account(email: str) -> bool:
    local_part = email.split("@", 1)[0]
    return any(pattern.match(local_part) for pattern in SERVICE_ACCOUNT_PATTERNS)


class IdentityReconciler:
    """
    Upserts eligible principals into the employees table (keyed by email).

    Args:
        supabase: Supabase client
        company_domain: Company email domain; defaults to settings.company_domain.
            Required: reconcile() raises ConfigurationError without it.
    """

    def __init__(self, supabase: Client, company_domain: Optional[str] = None, table: Optional[str] = None):
        self.supabase = supabase
        self.company_domain = (company_domain or settings.company_domain or "").strip().lower() or None
        self.table = table or settings.employees_table

    def exclusion_reason(self, principal: Principal) -> Optional[str]:
        """Why a principal is not an employee, or None when eligible."""
        if principal.kind == PrincipalKind.CHANNEL:
            return "channel principal"

        email = normalize_email(principal.primary_email)
        if not email or "@" not in email:
            return "no email"
        if not principal.enabled:
            return "disabled account"

        user_type = principal.attributes.get("user_type")
        if user_type and str(user_type).lower() != "member":
            return f"non-member user type {user_type}"

        domain = email.split("@", 1)[1]
        if domain != self.company_domain:
            return f"external domain {domain}"
        if is_service_account(email):
            return "service account"
        if len((principal.display_name or "").strip()) < 2:
            return "invalid name"
        return None

    def filter_employees(self, principals: Iterable[Principal]) -> List[Principal]:
        eligible = []
        for principal in principals:
            reason = self.exclusion_reason(principal)
            if reason:
                logger.debug(f"❌ Skipping {principal.label}: {reason}")
            else:
                eligible.append(principal)
        return eligible

    def _upsert_employee(self, principal: Principal):
        email = normalize_email(principal.primary_email)
        payload = {
            "email": email,
            "name": principal.display_name.strip() or email.split("@", 1)[0],
            "department": principal.attributes.get("department") or "General",
            "job_title": principal.attributes.get("job_title") or "Employee",
            "is_active": True,
        }
        return self.supabase.table(self.table).upsert(payload, on_conflict="email").execute()

    async def reconcile(self, principals: List[Principal]) -> IdentityReconciliationResult:
        """
        Upsert every eligible principal. Per-principal failures are recorded,
        not raised.

        Raises:
            ConfigurationError: If no company domain is configured
        """
        if not self.company_domain:
            raise ConfigurationError("COMPANY_DOMAIN is required for identity reconciliation")

        eligible = self.filter_employees(principals)
        result = IdentityReconciliationResult(
            total_principals=len(principals),
            eligible_principals=len(eligible),
            excluded_principals=len(principals) - len(eligible),
        )
        logger.info("📊 Domain filtering results:")
        logger.info(f"   📥 Total principals: {result.total_principals}")
        logger.info(f"   ✅ Company domain ({self.company_domain}): {result.eligible_principals}")
        logger.info(f"   🚫 Excluded (external/service): {result.excluded_principals}")

        for principal in eligible:
            try:
                await asyncio.to_thread(self._upsert_employee, principal)
                result.upserted_employees += 1
            except Exception as e:
                logger.error(f"❌ Error upserting employee {principal.label}: {e}")
                result.errors.append(SyncErrorEntry(unit=principal.label, message=str(e)))

        logger.info(f"✅ Identity reconciliation complete: {result.upserted_employees} employees upserted")
        return result
