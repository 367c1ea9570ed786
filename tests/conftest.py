"""
Shared test setup.

Environment variables must be set before anything imports app.core.config,
which validates them at import time.
"""
import os

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from app.middleware.rate_limit import limiter
from tests.fakes import FakeSupabase

# Rate limits are per process; tests hit the same routes many times
limiter.enabled = False


@pytest.fixture
def supabase():
    return FakeSupabase()
