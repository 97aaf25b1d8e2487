"""
Coconut error taxonomy.

Vector-length violations and malformed construction options raise.
Failures inside the continuous thought loop are caught at the loop boundary
and recorded on the returned ReasoningResult instead.
"""


class CoconutError(Exception):
    """Base class for every error raised by the latent reasoning engine."""


class DimensionMismatch(CoconutError, ValueError):
    """A vector or matrix operand does not have the expected length."""

    def __init__(self, expected, actual, what: str = "vector"):
        self.expected = expected
        self.actual = actual
        self.what = what
        super().__init__(f"{what} dimension mismatch: expected {expected}, got {actual}")


class InvalidSchemaConfig(CoconutError, ValueError):
    """Malformed model or hierarchy construction options."""


class InvalidReasoningOptions(CoconutError, ValueError):
    """Malformed options for a continuous thought run."""


class ComputationFailed(CoconutError):
    """An exception escaped a loop step."""


class StepLimitReached(CoconutError):
    """The loop hit max_computation_steps. Recorded, never raised to callers."""


class TimeoutExceeded(CoconutError):
    """The run passed its deadline."""


class ReasoningCancelled(CoconutError):
    """The caller's cancellation token was set."""
