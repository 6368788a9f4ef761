from __future__ import annotations


class RelayMonitorError(Exception):
    pass


class TransientSubmissionError(RelayMonitorError):
    """Recorded as a failure outcome; the dispatcher moves on to the next round."""


class SigningError(TransientSubmissionError):
    pass


class TransientRelayError(TransientSubmissionError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FatalSubmissionError(RelayMonitorError):
    """Halts the dispatcher and is surfaced to the operator."""


class FatalRelayError(FatalSubmissionError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientPollError(RelayMonitorError):
    """Absorbed by the height cache / tracker and retried on the next poll tick."""


class TransientLedgerError(TransientPollError):
    pass


class DeadlineExceeded(RelayMonitorError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Transaction not mined in time: {item_id}.")
        self.item_id = item_id


class InvariantViolation(RelayMonitorError):
    """A logic defect (budget underflow, double resolution). Never recovered."""
