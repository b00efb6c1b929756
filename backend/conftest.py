"""Pytest configuration exposing the geocache package and resetting state."""

import pathlib
import sys
from collections.abc import Iterator

import pytest

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from geocache.core import config  # noqa: E402
from geocache.db import database  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_state() -> Iterator[None]:
    """Give every test fresh settings and a fresh in-memory backend."""
    config.get_settings.cache_clear()
    database._reset()
    yield
    config.get_settings.cache_clear()
    database._reset()
