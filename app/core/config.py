"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase for everything (communications + employees + sync jobs)
- Provider tokens issued by Nango (no credentials stored here)
- Sync tuning (batch sizes, pacing, budgets) configurable per deployment

SECURITY:
- All secrets loaded from environment variables
- No hardcoded credentials
- No hardcoded company domain (identity reconciliation fails closed)
"""
from typing import Optional
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    api_key: Optional[str] = Field(default=None, description="Bearer key required on /api/v1 routes (optional)")

    # ============================================================================
    # DATABASE (Supabase PostgreSQL)
    # ============================================================================

    supabase_url: str = Field(description="Supabase project URL")
    supabase_service_key: str = Field(description="Supabase service key (backend uses this)")
    communications_table: str = Field(default="communications", description="Table holding canonical messages")
    employees_table: str = Field(default="employees", description="Identity store table")

    # ============================================================================
    # PROVIDERS (tokens via Nango)
    # ============================================================================

    nango_secret: Optional[str] = Field(default=None, description="Nango API secret key")

    nango_provider_key_gmail: str = Field(default="google-workspace", description="Nango provider key for Gmail / Google Workspace")
    nango_provider_key_office365: str = Field(default="microsoft", description="Nango provider key for Office 365")
    nango_provider_key_teams: str = Field(default="microsoft-teams", description="Nango provider key for Microsoft Teams")

    nango_connection_id_gmail: Optional[str] = Field(default=None, description="Nango connection ID for Gmail")
    nango_connection_id_office365: Optional[str] = Field(default=None, description="Nango connection ID for Office 365")
    nango_connection_id_teams: Optional[str] = Field(default=None, description="Nango connection ID for Teams")

    google_workspace_domain: Optional[str] = Field(default=None, description="Google Workspace domain for Admin Directory listing")

    # ============================================================================
    # IDENTITY
    # ============================================================================

    company_domain: Optional[str] = Field(default=None, description="Company email domain (required for identity reconciliation)")

    # ============================================================================
    # SYNC TUNING
    # ============================================================================

    sync_window_days: int = Field(default=7, description="Days of activity fetched per run")
    sync_max_items_per_principal: int = Field(default=100, description="Item budget per principal per run")
    sync_principals_per_batch: int = Field(default=10, description="Principals processed concurrently")
    sync_teams_per_batch: int = Field(default=5, description="Teams enumerated concurrently")
    sync_batch_delay_seconds: float = Field(default=1.0, description="Pacing delay between batches")
    sync_page_size: int = Field(default=50, description="Items requested per provider page")
    sync_max_errors: int = Field(default=100, description="Max error entries kept in a run summary")
    sync_include_outbound: bool = Field(default=True, description="Also fetch sent folders")
    sync_deadline_seconds: Optional[float] = Field(default=None, description="Abort a run after this many seconds")

    # ============================================================================
    # RISK SCORING
    # ============================================================================

    risk_analyzer_url: Optional[str] = Field(default=None, description="External risk scoring endpoint (optional)")
    risk_flag_threshold: int = Field(default=60, description="Score at or above which a message is flagged")

    # ============================================================================
    # DOWNSTREAM ANALYSIS (Dramatiq / Redis)
    # ============================================================================

    enable_downstream_analysis: bool = Field(default=True, description="Queue resolved employees for compliance analysis")
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL (job queue)")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        CHECKS:
        - Warn if running in production without Sentry
        - Warn if no company domain (reconciliation will refuse to run)
        - Reject nonsensical sync tuning
        """
        if self.sync_principals_per_batch < 1 or self.sync_teams_per_batch < 1:
            raise ValueError("sync batch sizes must be >= 1")
        if self.sync_batch_delay_seconds < 0:
            raise ValueError("sync_batch_delay_seconds must be >= 0")

        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

        if not self.nango_secret:
            logger.warning("⚠️  NANGO_SECRET not set. Provider token retrieval will fail.")

        if not self.company_domain:
            logger.warning("⚠️  COMPANY_DOMAIN not set. Identity reconciliation is disabled.")

        logger.info("=" * 80)
        logger.info("Communication Sync Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url}")
        logger.info(f"Company domain: {self.company_domain or '❌ Not configured'}")
        logger.info(f"Batching: {self.sync_principals_per_batch} principals / {self.sync_teams_per_batch} teams, {self.sync_batch_delay_seconds}s pacing")
        logger.info(f"Risk analyzer: {'✅ Configured' if self.risk_analyzer_url else '❌ Not configured (scores default to 0)'}")
        logger.info(f"Redis: {'✅ Configured' if self.redis_url else '❌ Not configured'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info("=" * 80)

        return self


# Global settings instance
settings = Settings()
