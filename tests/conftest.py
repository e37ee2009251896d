"""Pytest configuration for the crash round tests."""

from __future__ import annotations

import pytest

from tests._helpers import FakeClock


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'crash.db'}"


@pytest.fixture
def clock():
    return FakeClock()
