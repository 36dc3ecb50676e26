"""
Pytest configuration for freshdesk-activity tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: Filesystem caches, multi-component flows through fake HTTP sessions
- slow: Live Freshdesk account (needs real credentials)

Run tiers:
- pytest                          # Fast + medium (default addopts skip slow)
- pytest -m fast                  # Fast only
- pytest -m slow                  # Slow only
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for filesystem / multi-component tests
- Add @pytest.mark.slow for live API tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

API Key Safety:
- Fast/medium tests force-set a fake FRESHDESK_API_KEY and clear any proxy
  base URL so a mock failure can never reach a real helpdesk
- Only slow tests (and full suite) preserve real credentials from environment
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

FAKE_API_KEY = "fd-test-fake-key-for-testing"


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked with @pytest.mark.integration (but no tier) are assigned to
    'medium'.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force fake credentials unless slow tests are being run."""
    markexpr = getattr(config.option, 'markexpr', '') or ''

    includes_slow_tests = (
        'slow' in markexpr and
        'not slow' not in markexpr
    )

    if includes_slow_tests:
        os.environ.setdefault("FRESHDESK_API_KEY", FAKE_API_KEY)
    else:
        os.environ["FRESHDESK_API_KEY"] = FAKE_API_KEY
        os.environ.pop("FRESHDESK_BASE_URL", None)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


@pytest.fixture
def settings():
    """Settings for a fake helpdesk with default quotas."""
    from freshdesk_activity.config import Settings

    return Settings(domain="test.freshdesk.com", api_key=FAKE_API_KEY)
