import itertools
from unittest.mock import MagicMock

import pytest

from spot_guardian.config import Config
from spot_guardian.models import InstanceStatus, TrackedInstance
from spot_guardian.notify import Notifier


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def config():
    """Config with every wait shortened to zero."""
    return Config(
        telegram_enabled=False,
        retry_count=3,
        retry_interval=0,
        start_timeout=0,
        start_poll_interval=0,
        notify_cooldown=300,
        traffic_limit_china_gb=19,
        traffic_limit_non_china_gb=195,
    )


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def ticking_clock():
    """Monotonic stand-in that advances 1.5s per reading."""
    counter = itertools.count(0, 1.5)
    return lambda: next(counter)


def make_instance(
    instance_id: str = "i-001",
    region: str = "us-east-1",
    name: str = "",
    status: InstanceStatus = InstanceStatus.RUNNING,
    public_ip: str = None,
) -> TrackedInstance:
    return TrackedInstance(
        instance_id=instance_id,
        name=name or f"node-{instance_id}",
        region=region,
        status=status,
        public_ip=public_ip,
    )
