from __future__ import annotations


class InvalidConfig(ValueError):
    """Scenario configuration that must not be started (bad round duration or count)."""


class DataUnavailable(RuntimeError):
    """Wallet or price data could not be fetched, or came back empty."""

    def __init__(self, what: str, ref: object, cause: str | None = None):
        self.what = what
        self.ref = ref
        self.cause = cause
        msg = f"{what} unavailable for {ref}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class OutOfRangeRound(AssertionError):
    """A round outside [1, total_rounds] was requested. Contract violation, never recovered."""


class NavigationBlocked(Exception):
    """Forward navigation attempted while the current step is not complete."""
