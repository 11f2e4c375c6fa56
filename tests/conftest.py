"""
Shared fixtures for the deployment control loop tests
"""
import os

# Keep test runs off the rotating log files
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta, timezone

import pytest

from deployment.feature_flags import FeatureFlagEngine
from deployment.flag_store import FlagStore
from deployment.models import FeatureFlag


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlagStore()


@pytest.fixture
def engine(store, clock):
    return FeatureFlagEngine(store, clock=clock)


def make_flag(flag_id: str, percentage: int = 0, enabled: bool = True, **kwargs) -> FeatureFlag:
    return FeatureFlag(
        id=flag_id,
        name=flag_id.replace("-", " ").title(),
        enabled=enabled,
        rollout_percentage=percentage,
        **kwargs
    )
