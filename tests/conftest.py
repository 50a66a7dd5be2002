"""pytest fixtures for reelwatch tests.

Provides:
- credentials: credential flag starting out present
- make_tracker: builds an OperationTracker with a short poll interval
"""

import pytest

from reelwatch.models import JobRequest
from reelwatch.security import CredentialStatus
from reelwatch.tracker import OperationTracker
from tests.fakes import INTERVAL


@pytest.fixture
def credentials():
    return CredentialStatus(present=True)


@pytest.fixture
def make_tracker(credentials):
    def _make(submitter, poller, interval: float = INTERVAL) -> OperationTracker:
        return OperationTracker(
            submitter=submitter,
            poller=poller,
            credentials=credentials,
            poll_interval=interval,
        )

    return _make


@pytest.fixture
def cat_request():
    return JobRequest(prompt="a cat")
