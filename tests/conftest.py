"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from fakes import FakeProber, make_config

from mnodectl.config import AppConfig
from mnodectl.ports import PortAllocator
from mnodectl.state import RegistryStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted under the temporary path."""
    return make_config(tmp_path)


@pytest.fixture
def store(app_config: AppConfig) -> RegistryStore:
    """Return an initialised registry store."""
    registry = RegistryStore(app_config.database)
    registry.ensure_initialized()
    return registry


@pytest.fixture
def prober() -> FakeProber:
    """Return a prober that reports no bound ports."""
    return FakeProber()


@pytest.fixture
def allocator(store: RegistryStore, prober: FakeProber, app_config: AppConfig) -> PortAllocator:
    """Return an allocator over the temporary registry."""
    return PortAllocator(store, prober, app_config.ports)
