"""
Shared boto3 plumbing: bounded client timeouts and error translation.
"""

from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFound, StateConflict, TransientError

# Every remote call must finish or fail in bounded time.
CLIENT_CONFIG = BotoConfig(
    connect_timeout=10,
    read_timeout=30,
    retries={"max_attempts": 3, "mode": "standard"},
)

NOT_FOUND_CODES = frozenset(
    {
        "InvalidInstanceID.NotFound",
        "InvalidInstanceID.Malformed",
        "InvalidAllocationID.NotFound",
        "EndpointGroupNotFoundException",
    }
)
STATE_CONFLICT_CODES = frozenset({"IncorrectInstanceState", "IncorrectState"})


def make_client(service: str, region: Optional[str] = None, session: Optional[Any] = None) -> Any:
    """Create a boto3 client with the shared timeout/retry config."""
    factory = session or boto3
    return factory.client(service, region_name=region, config=CLIENT_CONFIG)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate(error: Exception, action: str) -> Exception:
    """Map a botocore failure onto the spot_guardian error taxonomy."""
    if isinstance(error, ClientError):
        code = error_code(error)
        if code in NOT_FOUND_CODES:
            return NotFound(f"{action}: {code}")
        if code in STATE_CONFLICT_CODES:
            return StateConflict(f"{action}: {code}")
        return TransientError(f"{action}: {error}")
    if isinstance(error, BotoCoreError):
        return TransientError(f"{action}: {error}")
    return error


AWS_ERRORS = (BotoCoreError, ClientError)
