"""
Message sync orchestration engine
Coordinates enumeration, fetch, normalization, identity, scoring, storage and dispatch

RUN STATES:
    IDLE → ENUMERATING → (RECONCILING) → SCHEDULING → AGGREGATING → COMPLETED
    FAILED only when the run cannot continue (enumeration, auth, config, cancel)

PER-UNIT STAGES (one unit = one principal):
    FETCHING → NORMALIZING → RESOLVING → SCORING → PERSISTING → DISPATCHING

FAILURE DOMAINS:
- enumeration failure        → run fails (EnumerationFailure)
- page failure for principal → that principal stops, one error entry, siblings continue
- item failure               → item skipped, one error entry
- dispatch failure           → logged only
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set

import httpx
from supabase import Client

from app.core.config import settings
from app.models.schemas.sync import (
    ConnectionTestResult,
    Direction,
    FetchContext,
    Principal,
    Provider,
    RawItem,
    RiskAssessment,
    SyncErrorEntry,
    SyncOptions,
    SyncRunSummary,
    SyncState,
    UnitStage,
)
from app.services.identity import IdentityResolver
from app.services.sync.cancellation import CancellationToken
from app.services.sync.dispatcher import DownstreamDispatcher
from app.services.sync.errors import (
    AuthFailure,
    ConfigurationError,
    DownstreamDispatchError,
    EnumerationFailure,
    NormalizationError,
    PersistenceConflict,
    SyncCancelled,
    SyncError,
)
from app.services.sync.normalization import normalize
from app.services.sync.orchestration.identity_sync import IdentityReconciler
from app.services.sync.persistence import PersistenceGateway
from app.services.sync.providers import ProviderClient, build_provider_clients
from app.services.sync.risk import NullRiskAnalyzer, RiskAnalyzer, build_risk_analyzer
from app.services.sync.scheduler import BatchScheduler

logger = logging.getLogger(__name__)

# Errors that stop the whole run instead of one principal
FATAL_ERRORS = (AuthFailure, ConfigurationError)


def default_sync_options(**overrides) -> SyncOptions:
    """SyncOptions from settings; None-valued overrides are ignored."""
    values = {
        "window_days": settings.sync_window_days,
        "max_items_per_principal": settings.sync_max_items_per_principal,
        "concurrency_limit": settings.sync_principals_per_batch,
        "include_outbound": settings.sync_include_outbound,
        "page_size": settings.sync_page_size,
        "pacing_delay": settings.sync_batch_delay_seconds,
        "deadline_seconds": settings.sync_deadline_seconds,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return SyncOptions(**values)


class RunAccumulator:
    """
    The only state shared by concurrent units of a run.
    Counters are plain additions under one lock; the error list is bounded.
    """

    def __init__(self, summary: SyncRunSummary, max_errors: int):
        self.summary = summary
        self.max_errors = max_errors
        self._lock = asyncio.Lock()

    async def add(
        self,
        total: int = 0,
        processed: int = 0,
        created: int = 0,
        flagged: int = 0,
        principals: int = 0,
        inbound: int = 0,
        outbound: int = 0
    ) -> None:
        async with self._lock:
            self.summary.processed_principals += principals
            self.summary.inbound_items += inbound
            self.summary.outbound_items += outbound
            self.summary.total_items += total
            self.summary.processed_items += processed
            self.summary.created_items += created
            self.summary.flagged_items += flagged

    async def record_error(self, unit: str, message: str, stage: Optional[UnitStage] = None) -> None:
        async with self._lock:
            if len(self.summary.errors) < self.max_errors:
                self.summary.errors.append(SyncErrorEntry(unit=unit, message=message, stage=stage))
            else:
                self.summary.dropped_errors += 1


class SyncOrchestrator:
    """
    Runs one provider sync end to end.

    Args:
        providers: Provider clients keyed by provider
        identity_resolver: Sender email → employee lookup
        persistence: Idempotent message storage
        risk_analyzer: Message scoring (NullRiskAnalyzer when omitted)
        dispatcher: Downstream analysis enqueue (disabled when omitted)
        reconciler: Identity reconciliation, required only for reconcile runs
        max_errors: Bound on error entries kept per run summary
    """

    def __init__(
        self,
        providers: Dict[Provider, ProviderClient],
        identity_resolver: IdentityResolver,
        persistence: PersistenceGateway,
        risk_analyzer: Optional[RiskAnalyzer] = None,
        dispatcher: Optional[DownstreamDispatcher] = None,
        reconciler: Optional[IdentityReconciler] = None,
        max_errors: Optional[int] = None
    ):
        self.providers = providers
        self.identity_resolver = identity_resolver
        self.persistence = persistence
        self.risk_analyzer = risk_analyzer or NullRiskAnalyzer()
        self.dispatcher = dispatcher or DownstreamDispatcher(enabled=False)
        self.reconciler = reconciler
        self.max_errors = settings.sync_max_errors if max_errors is None else max_errors

    def get_client(self, provider_name) -> ProviderClient:
        """
        Raises:
            ValueError: For an unknown or unconfigured provider
        """
        provider = Provider(provider_name)
        client = self.providers.get(provider)
        if client is None:
            raise ValueError(f"provider {provider.value} is not configured")
        return client

    @staticmethod
    def _transition(summary: SyncRunSummary, state: SyncState) -> None:
        logger.info(f"🔄 {summary.provider.value} sync: {summary.status.value} → {state.value}")
        summary.status = state

    # ========================================================================
    # RUN
    # ========================================================================

    async def run_sync(
        self,
        provider_name,
        options: Optional[SyncOptions] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> SyncRunSummary:
        """
        Sync one provider.

        Returns:
            SyncRunSummary with status COMPLETED (possibly carrying per-unit errors)

        Raises:
            ValueError: Unknown provider
            EnumerationFailure: Principals could not be listed
            AuthFailure: Provider rejected credentials
            ConfigurationError: Missing configuration (tokens, company domain)
            SyncCancelled: Token cancelled or deadline passed
        """
        client = self.get_client(provider_name)
        options = options or default_sync_options()
        token = cancel_token or CancellationToken(options.deadline_seconds)

        summary = SyncRunSummary(provider=client.provider, started_at=datetime.now(timezone.utc))
        accumulator = RunAccumulator(summary, self.max_errors)

        logger.info(f"🚀 Starting {client.provider.value} sync")
        logger.info(
            f"   window={options.window_days}d, max_items={options.max_items_per_principal}, "
            f"concurrency={options.concurrency_limit}, outbound={options.include_outbound}"
        )

        try:
            self._transition(summary, SyncState.ENUMERATING)
            principals = await self._enumerate(client, token)
            summary.total_principals = len(principals)

            if options.reconcile_identities:
                self._transition(summary, SyncState.RECONCILING)
                if self.reconciler is None:
                    raise ConfigurationError("identity reconciliation requested but no reconciler is configured")
                summary.identity_reconciliation = await token.guard(self.reconciler.reconcile(principals))

            active = [p for p in principals if p.enabled]
            if len(active) < len(principals):
                logger.info(f"⏭️  Skipping {len(principals) - len(active)} disabled principals")

            self._transition(summary, SyncState.SCHEDULING)
            await self._schedule(client, active, options, token, accumulator)

            self._transition(summary, SyncState.AGGREGATING)

        except (SyncError, ValueError):
            summary.completed_at = datetime.now(timezone.utc)
            self._transition(summary, SyncState.FAILED)
            raise

        summary.completed_at = datetime.now(timezone.utc)
        self._transition(summary, SyncState.COMPLETED)

        duration = (summary.completed_at - summary.started_at).total_seconds()
        logger.info(f"✅ {client.provider.value} sync completed in {duration:.1f}s")
        logger.info(f"   📊 Principals: {summary.processed_principals}/{summary.total_principals}")
        logger.info(f"   📥 Items fetched: {summary.total_items}")
        logger.info(f"   ↔️  Inbound / outbound: {summary.inbound_items} / {summary.outbound_items}")
        logger.info(f"   ✅ Processed: {summary.processed_items} ({summary.created_items} new)")
        logger.info(f"   🚩 Flagged: {summary.flagged_items}")
        if summary.errors:
            logger.info(f"   ⚠️  Errors: {len(summary.errors) + summary.dropped_errors}")
        return summary

    async def _enumerate(self, client: ProviderClient, token: CancellationToken):
        try:
            principals = await token.guard(client.list_principals())
        except (AuthFailure, ConfigurationError, SyncCancelled):
            raise
        except Exception as e:
            logger.error(f"❌ Could not enumerate {client.provider.value} principals: {e}")
            raise EnumerationFailure(f"{client.provider.value} enumeration failed: {e}") from e

        logger.info(f"👥 Enumerated {len(principals)} {client.provider.value} principals")
        return principals

    async def _schedule(
        self,
        client: ProviderClient,
        principals,
        options: SyncOptions,
        token: CancellationToken,
        accumulator: RunAccumulator
    ) -> None:
        scheduler = BatchScheduler(
            options.concurrency_limit,
            options.pacing_delay,
            fatal_exceptions=FATAL_ERRORS,
            label=f"{client.provider.value} principals"
        )
        dispatched: Set[str] = set()

        async def sync_unit(principal: Principal) -> None:
            await self._sync_principal(client, principal, options, token, accumulator, dispatched)
            await accumulator.add(principals=1)

        outcomes = await scheduler.run(principals, sync_unit, token)

        for outcome in outcomes:
            if not outcome.ok:
                logger.error(f"❌ Error syncing {outcome.unit.label}: {outcome.error}")
                await accumulator.record_error(outcome.unit.label, str(outcome.error), UnitStage.FETCHING)

    # ========================================================================
    # PER-PRINCIPAL UNIT
    # ========================================================================

    async def _sync_principal(
        self,
        client: ProviderClient,
        principal: Principal,
        options: SyncOptions,
        token: CancellationToken,
        accumulator: RunAccumulator,
        dispatched: Set[str]
    ) -> None:
        """
        Page through every folder of one principal.
        A page failure propagates and ends this principal only.
        """
        base = FetchContext(
            since=datetime.now(timezone.utc) - timedelta(days=options.window_days),
            max_items=options.max_items_per_principal,
            page_size=options.page_size,
        )

        for context in client.fetch_contexts(principal, base, options.include_outbound):
            fetched = 0
            cursor: Optional[str] = None

            while fetched < context.max_items:
                remaining = context.max_items - fetched
                page_context = context.model_copy(update={"page_size": min(context.page_size, remaining)})
                page = await token.guard(client.fetch_page(principal, page_context, cursor))

                items = page.items[:remaining]
                fetched += len(items)
                await accumulator.add(total=len(items))

                for item in items:
                    await self._process_item(client.provider, principal, item, context, token, accumulator, dispatched)

                cursor = page.next_cursor
                if not cursor:
                    break

            logger.debug(f"{principal.label} [{context.folder}]: {fetched} items")

    async def _process_item(
        self,
        provider: Provider,
        principal: Principal,
        item: RawItem,
        context: FetchContext,
        token: CancellationToken,
        accumulator: RunAccumulator,
        dispatched: Set[str]
    ) -> None:
        item_label = f"{principal.label}:{item.payload.get('id', '<no id>')}"

        try:
            message = normalize(provider, item, principal, context)
        except NormalizationError as e:
            logger.warning(f"⚠️  Skipping unparseable item {item_label}: {e}")
            await accumulator.record_error(item_label, str(e), UnitStage.NORMALIZING)
            return

        try:
            identity = await token.guard(self.identity_resolver.resolve(message.sender_email))
        except SyncCancelled:
            raise
        except Exception as e:
            logger.error(f"❌ Identity lookup failed for {item_label}: {e}")
            await accumulator.record_error(item_label, f"identity lookup failed: {e}", UnitStage.RESOLVING)
            return

        try:
            assessment = await token.guard(self.risk_analyzer.score(message, identity))
        except SyncCancelled:
            raise
        except Exception as e:
            logger.error(f"❌ Risk scoring failed for {item_label}, storing with score 0: {e}")
            assessment = RiskAssessment()

        message = message.model_copy(update={
            "risk_score": assessment.risk_score,
            "flagged": assessment.flagged,
            "category": assessment.category,
            "employee_id": identity.employee_id,
        })

        try:
            result = await token.guard(self.persistence.upsert(message))
            created = result.created
        except PersistenceConflict:
            created = False
        except SyncCancelled:
            raise
        except Exception as e:
            logger.error(f"❌ Failed to store {item_label}: {e}")
            await accumulator.record_error(item_label, str(e), UnitStage.PERSISTING)
            return

        await accumulator.add(
            processed=1,
            created=int(created),
            flagged=int(message.flagged),
            inbound=int(message.direction == Direction.INBOUND),
            outbound=int(message.direction == Direction.OUTBOUND),
        )

        if identity.employee_id and identity.employee_id not in dispatched:
            dispatched.add(identity.employee_id)
            reason = "flagged_message" if message.flagged else f"{provider.value}_sync"
            try:
                await token.guard(self.dispatcher.enqueue(identity.employee_id, reason))
            except SyncCancelled:
                raise
            except DownstreamDispatchError as e:
                logger.warning(f"⚠️  Downstream dispatch failed for employee {identity.employee_id}: {e}")

    # ========================================================================
    # CONNECTION TEST
    # ========================================================================

    async def test_connection(self, provider_name) -> ConnectionTestResult:
        """
        Probe provider credentials and reachability.
        Provider failures are reported in the result, never raised.

        Raises:
            ValueError: Unknown provider
        """
        client = self.get_client(provider_name)
        try:
            result = await client.test_connection()
            logger.info(f"✅ {client.provider.value} connection test: {result.detail}")
            return result
        except Exception as e:
            logger.error(f"❌ {client.provider.value} connection test failed: {e}")
            return ConnectionTestResult(success=False, detail=f"{type(e).__name__}: {e}", count_found=0)


def build_sync_orchestrator(http_client: httpx.AsyncClient, supabase: Client) -> SyncOrchestrator:
    """Orchestrator wired from settings (API process and Dramatiq workers)."""
    return SyncOrchestrator(
        providers=build_provider_clients(http_client),
        identity_resolver=IdentityResolver(supabase),
        persistence=PersistenceGateway(supabase),
        risk_analyzer=build_risk_analyzer(http_client),
        dispatcher=DownstreamDispatcher(),
        reconciler=IdentityReconciler(supabase),
    )
