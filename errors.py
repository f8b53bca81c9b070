"""Error types shared by the controller, adapters and storage.

Safety overrides (pause, emergency mode, alarms, storm hedge) are not
errors: they are recorded as Actions by the cycle.
"""


class RateArbError(Exception):
    """Base class for all controller errors."""

    retryable = False


class TransientUpstreamError(RateArbError):
    """Upstream timeout, 5xx or connection failure.

    Not retried inside the cycle; the next scheduled cycle retries.
    """

    retryable = True


class CycleDeadlineExceeded(TransientUpstreamError):
    """The cycle ran past its deadline before reaching the given stage."""

    def __init__(self, stage: str):
        super().__init__(f"Cycle deadline exceeded before {stage}")
        self.stage = stage


class AuthExpiredError(RateArbError):
    """Upstream credentials were rejected and the single re-login failed."""


class ConfigInvalidError(RateArbError):
    """Settings failed validation. Raised before any hardware call."""


class SettingsConflictError(RateArbError):
    """Settings were written with a stale revision."""
