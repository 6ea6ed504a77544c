"""
Pytest configuration and fixtures for agentd tests
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tests.fakes import FakePtySpawner, ScriptedClassifier, fast_settings


@pytest.fixture
def settings():
    """Agent settings with millisecond-scale delays"""
    return fast_settings()


@pytest.fixture
def prompt_spawner():
    """PTY that prints a bare prompt once the CLI is launched, then stays silent"""
    return FakePtySpawner(responses={"claude\r": "> "})


@pytest.fixture
def classifier():
    """Classifier that reports ready before submission and working afterwards"""
    return ScriptedClassifier()
