"""
Identity resolution and reconciliation tests.

Coverage:
  - Resolver: hit, miss (valid outcome), case-insensitive, no lookup for empty email
  - Reconciler: eligibility filters, fail-closed without company domain,
    idempotent upsert, per-principal errors recorded
"""
import os
import subprocess
import sys
from pathlib import Path

import pytest

from app.models.schemas.sync import Principal, PrincipalKind
from app.services.identity import IdentityResolver
from app.services.sync.errors import ConfigurationError
from app.services.sync.orchestration.identity_sync import IdentityReconciler, is_service_account


def _user(email, name="Jane Doe", **kwargs) -> Principal:
    return Principal(id=email, primary_email=email, display_name=name, **kwargs)


class TestIdentityResolver:
    async def test_known_email_resolves(self, supabase):
        supabase.seed("employees", {"id": "emp-1", "email": "bob@co.com"})

        identity = await IdentityResolver(supabase).resolve("Bob@Co.com ")

        assert identity.employee_id == "emp-1"
        assert identity.resolved

    async def test_unknown_email_is_not_an_error(self, supabase):
        identity = await IdentityResolver(supabase).resolve("stranger@elsewhere.com")

        assert identity.employee_id is None
        assert not identity.resolved

    async def test_empty_email_skips_lookup(self, supabase):
        identity = await IdentityResolver(supabase).resolve("")

        assert identity.employee_id is None
        assert supabase.calls == []

    async def test_resolver_never_writes(self, supabase):
        await IdentityResolver(supabase).resolve("bob@co.com")

        assert all(operation == "select" for _, operation in supabase.calls)


class TestEligibility:
    def setup_method(self):
        self.reconciler = IdentityReconciler(supabase=None, company_domain="Co.com")

    def test_company_member_is_eligible(self):
        assert self.reconciler.exclusion_reason(_user("jane@co.com", attributes={"user_type": "member"})) is None

    def test_external_domain_excluded(self):
        assert self.reconciler.exclusion_reason(_user("jane@partner.com")) == "external domain partner.com"

    def test_guest_excluded(self):
        principal = _user("jane@co.com", attributes={"user_type": "guest"})
        assert self.reconciler.exclusion_reason(principal) == "non-member user type guest"

    def test_disabled_excluded(self):
        assert self.reconciler.exclusion_reason(_user("jane@co.com", enabled=False)) == "disabled account"

    def test_service_account_excluded(self):
        assert self.reconciler.exclusion_reason(_user("noreply@co.com", name="No Reply")) == "service account"

    def test_short_name_excluded(self):
        assert self.reconciler.exclusion_reason(_user("jane@co.com", name="J")) == "invalid name"

    def test_channel_excluded(self):
        channel = Principal(id="chan-1", display_name="General", kind=PrincipalKind.CHANNEL, parent_id="team-1")
        assert self.reconciler.exclusion_reason(channel) == "channel principal"

    def test_service_account_patterns(self):
        assert is_service_account("alerts@co.com")
        assert is_service_account("Do-Not-Reply@co.com")
        assert not is_service_account("alert.manager@co.com")


class TestReconcile:
    async def test_upserts_eligible_principals(self, supabase):
        reconciler = IdentityReconciler(supabase, company_domain="co.com")
        principals = [
            _user("jane@co.com", attributes={"department": "Finance", "job_title": "Controller"}),
            _user("Omar@Co.com", name="Omar Haddad"),
            _user("vendor@partner.com"),
            _user("support@co.com", name="Support Desk"),
        ]

        result = await reconciler.reconcile(principals)

        assert result.total_principals == 4
        assert result.eligible_principals == 2
        assert result.excluded_principals == 2
        assert result.upserted_employees == 2
        rows = {row["email"]: row for row in supabase.rows("employees")}
        assert rows["jane@co.com"]["department"] == "Finance"
        assert rows["omar@co.com"]["department"] == "General"
        assert rows["omar@co.com"]["job_title"] == "Employee"

    async def test_reconcile_is_idempotent(self, supabase):
        reconciler = IdentityReconciler(supabase, company_domain="co.com")

        await reconciler.reconcile([_user("jane@co.com")])
        await reconciler.reconcile([_user("jane@co.com", name="Jane Q. Doe")])

        rows = supabase.rows("employees")
        assert len(rows) == 1
        assert rows[0]["name"] == "Jane Q. Doe"

    async def test_missing_company_domain_fails_closed(self, supabase):
        reconciler = IdentityReconciler(supabase, company_domain="co.com")
        reconciler.company_domain = None

        with pytest.raises(ConfigurationError, match="COMPANY_DOMAIN"):
            await reconciler.reconcile([_user("jane@co.com")])

        assert supabase.rows("employees") == []

    async def test_upsert_failure_recorded_per_principal(self, supabase):
        reconciler = IdentityReconciler(supabase, company_domain="co.com")
        supabase.fail_next[("employees", "upsert")] = RuntimeError("timeout")

        result = await reconciler.reconcile([_user("jane@co.com"), _user("omar@co.com", name="Omar")])

        assert result.upserted_employees == 1
        assert len(result.errors) == 1
        assert result.errors[0].unit == "jane@co.com"


PROJECT_ROOT = Path(__file__).resolve().parent.parent


class TestModuleImports:
    @pytest.mark.parametrize("module", [
        "app.services.identity",
        "app.services.sync.orchestration.identity_sync",
        "app.services.sync.orchestration.message_sync",
        "app.services.sync.persistence",
        "app.services.jobs.tasks",
    ])
    def test_imports_cleanly_in_fresh_interpreter(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            cwd=PROJECT_ROOT,
            env=os.environ.copy(),
            capture_output=True,
            text=True,
            timeout=60,
        )

        assert result.returncode == 0, result.stderr
