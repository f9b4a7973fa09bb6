"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- scheduler: single-node Scheduler whose worker pools are released after the test
- sqlite_url: file-backed SQLite URL for database provider tests
- hub: in-process LoopbackHub connecting several nodes
"""
import logging

import pytest

from fixtures import LoopbackHub, make_scheduler

logger = logging.getLogger(__name__)


@pytest.fixture
def scheduler():
    """Provide a Scheduler for node1 in a single-node ring.
    """
    sched = make_scheduler()
    try:
        yield sched
    finally:
        sched.shutdown()


@pytest.fixture
def sqlite_url(tmp_path):
    """Provide a SQLAlchemy URL for a throwaway SQLite database.
    """
    return f'sqlite:///{tmp_path / "swarm.db"}'


@pytest.fixture
def hub():
    return LoopbackHub()
