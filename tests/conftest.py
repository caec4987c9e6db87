# -*- coding: utf-8 -*-
"""
Shared test fixtures for the task-mail watcher tests.
"""

import sys
from pathlib import Path

# Ensure project root and this directory are importable without pip install
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from fakes import FakeSession, make_test_config


@pytest.fixture
def fake_session():
    """Factory fixture for creating fake IMAP sessions."""
    def _make_fake_session(messages=None, mailbox="INBOX"):
        return FakeSession(messages, mailbox=mailbox)
    return _make_fake_session


@pytest.fixture
def test_config(tmp_path):
    """Config object with short timeouts and a temporary state directory."""
    return make_test_config(str(tmp_path))
