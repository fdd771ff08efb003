"""
Shared pytest fixtures for opstate tests.

- Fixtures for dependency injection (scheduler, settings, context)
- Virtual time so timeout/backoff tests never wait on the wall clock
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from opstate.core.config import Settings, get_settings
from opstate.core.context import OperationContext
from opstate.core.scheduler import VirtualScheduler


@pytest.fixture
def scheduler() -> VirtualScheduler:
    """Virtual clock starting at t=0."""
    return VirtualScheduler()


@pytest.fixture
def settings() -> Settings:
    """Default settings, unaffected by any config file."""
    return Settings()


@pytest.fixture
def context(settings: Settings, scheduler: VirtualScheduler) -> OperationContext:
    """Fresh operation context on virtual time."""
    return OperationContext(settings=settings, scheduler=scheduler)


@pytest.fixture
def clear_settings_cache():
    """Make get_settings() re-read environment and files around a test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
