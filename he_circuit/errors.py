"""
Error Taxonomy for HE Circuits

Every failure raised by an evaluator or by the linear algebra layer derives
from CircuitError. All of them are fatal: a miscomputed level or scale would
corrupt every downstream operation, so nothing here is retried or replaced
by a default. Callers fix the circuit (or its parameters) and re-run.

  - IncompatibleOperands / ScaleMismatch: operand shape, encoding or scale
  - LevelMismatch / InvalidLevelTarget: modulus chain position
  - PreconditionError: degree / scale state (linearity, nominal scale)
  - ScaleOverflow: plaintext exceeds the encoding ceiling
  - DivergenceError: Debug cross-check failed (evaluator or backend bug)
  - DimensionError: tiling / decoding size problems
  - DepthConsistencyError: inconsistent bootstrapping levels
  - UnsupportedOperation: operation not defined by an interpreter
"""

from typing import Any, Dict, Optional, Sequence


# =============================================================================
# BASE
# =============================================================================

class CircuitError(Exception):
    """Base class for all HE circuit errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for logs and reports."""
        return {
            'error': type(self).__name__,
            'message': self.message,
            'details': self.details,
        }


# =============================================================================
# OPERAND ERRORS (circuit author bugs)
# =============================================================================

class IncompatibleOperands(CircuitError):
    """Raised when two operands cannot be combined."""

    def __init__(self, op: str, lhs: str, rhs: str, reason: str = "incompatible arguments"):
        self.op = op
        self.lhs = lhs
        self.rhs = rhs
        super().__init__(
            f"[{op}] {reason}: {lhs} vs {rhs}",
            details={'op': op, 'lhs': lhs, 'rhs': rhs},
        )


class ScaleMismatch(IncompatibleOperands):
    """Raised when operands carry different scales."""

    def __init__(self, op: str, lhs_log_scale: float, rhs_log_scale: float):
        self.lhs_log_scale = lhs_log_scale
        self.rhs_log_scale = rhs_log_scale
        super().__init__(
            op,
            f"{lhs_log_scale:.4f} bits",
            f"{rhs_log_scale:.4f} bits",
            reason="inputs must have the same scale",
        )


class LevelMismatch(CircuitError):
    """Raised when operands are at different levels."""

    def __init__(self, op: str, lhs_level: int, rhs_level: int, reason: str = "inputs must be at the same level"):
        self.op = op
        self.lhs_level = lhs_level
        self.rhs_level = rhs_level
        super().__init__(
            f"[{op}] {reason}: {lhs_level} != {rhs_level}",
            details={'op': op, 'lhs_level': lhs_level, 'rhs_level': rhs_level},
        )


class InvalidLevelTarget(CircuitError):
    """Raised when asked to raise a level or go below level 0."""

    def __init__(self, op: str, current_level: int, target_level: int, reason: Optional[str] = None):
        self.op = op
        self.current_level = current_level
        self.target_level = target_level
        if reason is None:
            reason = "cannot move from level {} to level {}".format(current_level, target_level)
        super().__init__(
            f"[{op}] {reason}",
            details={'op': op, 'current_level': current_level, 'target_level': target_level},
        )


class PreconditionError(CircuitError):
    """Raised when a ciphertext is in the wrong degree/scale state."""

    def __init__(self, op: str, reason: str):
        self.op = op
        super().__init__(f"[{op}] {reason}", details={'op': op})


class DimensionError(CircuitError, ValueError):
    """Raised on tiling, encoding or decoding size problems."""
    pass


# =============================================================================
# INTERPRETER ERRORS
# =============================================================================

class ScaleOverflow(CircuitError):
    """Raised when a plaintext exceeds the ceiling regardless of scale."""

    def __init__(self, log_max_value: float, ceiling: float, level: int):
        self.log_max_value = log_max_value
        self.ceiling = ceiling
        self.level = level
        super().__init__(
            f"The maximum value in the plaintext is {log_max_value:.4f} bits which exceeds "
            f"the encoding capacity of {ceiling} bits at level {level}. Overflow is imminent.",
            details={'log_max_value': log_max_value, 'ceiling': ceiling, 'level': level},
        )


class DivergenceError(CircuitError):
    """
    Raised when the Debug evaluator's cross-check fails.

    This indicates a bug in an evaluator or backend binding, not in the
    circuit. The expected and actual vectors are kept (truncated) on the
    exception for diagnosis.
    """

    def __init__(
        self,
        check: str,
        reason: str,
        expected: Optional[Sequence[float]] = None,
        actual: Optional[Sequence[float]] = None,
        facts: Optional[Dict[str, Any]] = None,
    ):
        self.check = check
        self.expected = list(expected) if expected is not None else []
        self.actual = list(actual) if actual is not None else []
        self.facts = facts or {}
        message = f"[{check}] {reason}"
        if self.expected or self.actual:
            message += f"\n  expected: {_format_values(self.expected)}"
            message += f"\n  actual:   {_format_values(self.actual)}"
        super().__init__(message, details={'check': check, **self.facts})


class DepthConsistencyError(CircuitError):
    """Raised when a circuit's bootstrapping levels are inconsistent."""
    pass


class UnsupportedOperation(CircuitError):
    """Raised when an interpreter does not define an operation."""
    pass


def _format_values(values: Sequence[float]) -> str:
    return "< " + ", ".join(f"{v:.8g}" for v in values) + " >"
