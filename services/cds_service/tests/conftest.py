"""Shared test fixtures for CDS service tests."""
from __future__ import annotations

import pytest

from services.cds_service.src.config import reset_config
from services.cds_service.src.infrastructure.reference_data import ReferenceData, build_static_reference_data
from services.cds_service.tests.fixtures import FIXED_NOW, MutableClock


@pytest.fixture(autouse=True)
def _reset_cds_config():
    """Drop the configuration singleton so env overrides in one test never leak into another."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> MutableClock:
    """Clock pinned to a fixed instant."""
    return MutableClock(FIXED_NOW)


@pytest.fixture
def reference_data() -> ReferenceData:
    """Static reference tables."""
    return build_static_reference_data()
