"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shopify_dispatch.config.settings import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are cached per process; start every test from a clean slate."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
