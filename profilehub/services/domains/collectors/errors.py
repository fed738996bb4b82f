from __future__ import annotations


class CollectorError(Exception):
    """Base class for collector and merge failures."""


class TransientSourceError(CollectorError):
    """A third-party source was unreachable, timed out or rate limited us."""


class SourceFetchError(CollectorError):
    """A source answered with something that cannot be turned into candidates."""


class CandidateValidationError(CollectorError, ValueError):
    """A candidate is missing a required identity field."""


class PersistenceError(CollectorError):
    """Storing a single candidate failed."""


class ControlInterrupt(CollectorError):
    """Control state or a cancellation request ended the run early."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SetupFailure(CollectorError):
    """The run could not acquire what it needs to operate at all."""


class RunAlreadyInProgressError(CollectorError):
    """A collector already has a run in flight."""

    def __init__(self, collector: str) -> None:
        super().__init__(f"Collector '{collector}' already has a run in progress.")
        self.collector = collector


class UnknownCollectorError(CollectorError, LookupError):
    def __init__(self, collector: str) -> None:
        super().__init__(f"Unknown collector '{collector}'.")
        self.collector = collector


class CollectorNotRunningError(CollectorError):
    def __init__(self, collector: str, status: str) -> None:
        super().__init__(f"Collector '{collector}' is {status}.")
        self.collector = collector
        self.status = status
