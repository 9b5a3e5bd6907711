#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#

"""
Global pytest fixtures for govquery tests.
"""
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest

from govquery.analytics.datasets import DatasetStore
from govquery.analytics.orchestrator import GovernedQueryService
from govquery.api.catalog import InMemoryCatalogRepository
from govquery.config import settings

from result_sets import CATALOG, sales_result_sets


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for config files"""
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_config_dir(temp_config_dir):
    """Mock the home directory to use our temporary directory"""
    with patch.object(Path, "home", return_value=temp_config_dir):
        # Also patch XDG_CONFIG_HOME environment variable
        old_env = os.environ.get("XDG_CONFIG_HOME")
        os.environ["XDG_CONFIG_HOME"] = str(temp_config_dir)
        yield temp_config_dir
        # Restore original environment
        if old_env:
            os.environ["XDG_CONFIG_HOME"] = old_env
        else:
            os.environ.pop("XDG_CONFIG_HOME", None)


@pytest.fixture
def mock_settings_instance():
    """Create a mock settings instance with test-friendly values"""
    old_settings = settings._settings.get()
    try:
        settings._settings.set(
            settings.Settings.model_validate(
                {
                    "datasets": {"eviction_interval_seconds": None},
                    "governance": {"command_timeout_seconds": 5},
                }
            )
        )
        yield settings.instance()
    finally:
        settings._settings.set(old_settings)


class FakeClock:
    """Manually advanced UTC clock for lease tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store(clock):
    return DatasetStore(ttl=timedelta(minutes=10), clock=clock)

@pytest.fixture
def catalog_repo():
    return InMemoryCatalogRepository.from_dicts(CATALOG)


@pytest.fixture
def spy_executor():
    """Executor double whose calls can be asserted on."""
    executor = AsyncMock()
    executor.source_id = "test"
    executor.execute.return_value = sales_result_sets(100)
    executor.describe_parameters.return_value = None
    return executor


@pytest.fixture
def service(mock_settings_instance, spy_executor, catalog_repo):
    return GovernedQueryService.from_settings(
        spy_executor, catalog_repo, mock_settings_instance
    )
