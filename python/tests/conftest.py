"""
Pytest configuration and fixtures for pomelobot tests.
"""
import logging

import pytest

from pomelo_stubs import RecordingReporter, StubServerTransport


@pytest.fixture
def stub_server():
    """A fresh in-memory Pomelo connector."""
    return StubServerTransport()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture(autouse=True)
def reset_robot_loggers():
    """Undo per-test level tweaks on the robot loggers."""
    names = ("pomelobot.replicator", "pomelobot.script", "pomelobot.debug")
    levels = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
