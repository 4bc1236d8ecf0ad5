class AidLoopError(Exception):
    """Base class for errors raised by the dosing engine."""


class LedgerWriteError(AidLoopError):
    """Persisting the dose ledger failed; the in-memory ledger is still current."""


class PumpCommandError(AidLoopError):
    """The pump rejected or failed to confirm a command."""
