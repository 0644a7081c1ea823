"""Pytest configuration and fixtures for the bar consolidator tests."""
import pytest

from fakes import RecordingSink


@pytest.fixture
def sink():
    """A fresh recording sink that never fails."""
    return RecordingSink()
