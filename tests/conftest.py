"""Pytest bootstrap configuration.

Pin environment before application settings are imported.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")

import pytest  # noqa: E402

from tests.fakes import (  # noqa: E402
    InMemoryCustomerLinkRepository,
    InMemorySettingsRepository,
    StubGatewayProvider,
)


@pytest.fixture
def settings_repo():
    return InMemorySettingsRepository()


@pytest.fixture
def link_repo():
    return InMemoryCustomerLinkRepository()


@pytest.fixture
def gateways():
    return StubGatewayProvider()
