"""Shared pytest fixtures for roomcal tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from roomcal.observability.correlation import correlation_id_var  # noqa: E402

from fake_backend import FakeBackend  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_correlation_id():
    """Make sure no test inherits a correlation id set by another one."""
    token = correlation_id_var.set("")
    yield
    correlation_id_var.reset(token)


@pytest.fixture
def backend() -> FakeBackend:
    """Fresh in-process reservations API."""
    return FakeBackend()
