"""Shared test fixtures and configuration.

Sets up environment variables before any siriustrack import so the settings
singleton is deterministic, and provides a temp-file TrackerDB.
"""

import os

# Patch env vars BEFORE any siriustrack imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("DB_TIMEOUT_SECONDS", "5")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_tracker.db")


@pytest.fixture
def tracker_db(tmp_db_path):
    """Return a TrackerDB instance backed by a temp file."""
    from siriustrack.data.db import TrackerDB
    return TrackerDB(db_path=tmp_db_path)


@pytest.fixture
def segment(tracker_db):
    """A segment to hang todos and milestones on."""
    return tracker_db.add_segment("Health", overall_goal="Run a marathon", color="#34c759")
