"""Error taxonomy for the training engine.

Three kinds of failure are raised to callers:

- ContractViolation: the caller handed over something the engine cannot use
  (empty batch, misaligned arrays, unknown snapshot kind, ...).
- MissingDataError: a ContractViolation raised when filtering left nothing
  usable (no replays, no frames with observations).
- AlreadyTrainingError: a second run was requested while one is in flight.
  Retryable once the first run finishes.

Numerical edge cases (zero-variance advantages, empty reward windows) are
handled in place and never raised. Cancellation is not an error: a stopped
run returns a partial result.
"""

from __future__ import annotations


class TrainingError(Exception):
    """Base class for errors raised by trackpilot."""

    category = "training"
    retryable = False


class ContractViolation(TrainingError, ValueError):
    """Input violates a documented precondition."""

    category = "contract_violation"


class MissingDataError(ContractViolation):
    """Nothing usable remained after filtering the input data."""

    category = "missing_data"


class AlreadyTrainingError(TrainingError, RuntimeError):
    """A training run is already in progress on this instance."""

    category = "busy"
    retryable = True


__all__ = [
    "TrainingError",
    "ContractViolation",
    "MissingDataError",
    "AlreadyTrainingError",
]
