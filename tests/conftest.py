"""
Global pytest configuration and fixtures for dunning tests.
"""

import os
import sys

import pytest

# Keep tests away from developer .env files and on-disk databases
os.environ.setdefault("DUNNING_DATABASE__URL", "sqlite+aiosqlite:///:memory:")

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from dunning.settings import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings():
    """Start every test from freshly loaded settings."""
    reset_settings()
    yield
    reset_settings()
