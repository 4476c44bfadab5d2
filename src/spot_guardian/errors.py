"""Exception taxonomy shared by the monitor and its cloud collaborators."""


class SpotGuardianError(Exception):
    """Base class for every error raised by spot_guardian."""


class TransientError(SpotGuardianError):
    """Network or API failure. Retried, or logged and skipped until the next cycle."""


class NotFound(SpotGuardianError):
    """The entity vanished between enumeration and use."""


class ConfigurationError(SpotGuardianError):
    """Missing credential or invalid setting. Fatal at startup."""


class StateConflict(SpotGuardianError):
    """Start/stop issued against an instance that is not in the expected state."""


class StartFailedError(TransientError):
    """An instance could not be brought back to Running within the retry budget."""

    def __init__(self, instance_id: str, attempts: int, last_error: Exception | None):
        self.instance_id = instance_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"failed to start instance {instance_id} after {attempts} attempts: {last_error}"
        )


class NotificationError(TransientError):
    """A notification channel rejected or failed to deliver a message."""
