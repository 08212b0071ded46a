"""tests/unit/conftest.py — fixtures over the shared fakes in fakes.py."""

import pytest

from fakes import FakeClock, FakeHost, FakeSurface


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()
