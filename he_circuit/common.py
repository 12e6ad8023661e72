"""
Numeric helpers shared by the evaluators and the linear algebra layer.
"""

import logging
import math
from typing import Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

# Relative 2-norm above which Debug reports a divergence.
MAX_NORM = 0.02

# Plaintext magnitude ceiling (bits) for scaled values; kept under the
# encoder's overflow threshold.
PLAINTEXT_LOG_MAX = 59

# Bit size of the first and special primes of a modulus chain.
SPECIAL_PRIME_BITS = 60

# Number of leading entries shown in divergence reports.
MAX_PRINT_SIZE = 32

ArrayLike = Union[Sequence[float], np.ndarray]


def is_pow2(n: int) -> bool:
    """True iff n is a positive power of two."""
    return n > 0 and (n & (n - 1)) == 0


def l_inf_norm(values: ArrayLike) -> float:
    """Largest absolute entry; 0.0 for an empty vector."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(np.max(np.abs(arr)))


def safe_log2(x: float) -> float:
    """log2 that maps 0 to -inf instead of raising."""
    if x <= 0:
        return -math.inf
    return math.log2(x)


def diff2_norm(expected: ArrayLike, actual: ArrayLike) -> float:
    """
    Relative 2-norm of the difference between two vectors.

    Returns -1 when both vectors are tiny (norm <= 2^-11): a relative error
    is meaningless there, and callers skip the comparison.

    Raises:
        ValueError: If the vectors have different lengths.
    """
    exp = np.asarray(expected, dtype=np.float64)
    act = np.asarray(actual, dtype=np.float64)
    if exp.shape != act.shape:
        raise ValueError(
            f"diff2_norm: vectors have different lengths: {exp.size} != {act.size}"
        )
    exp_norm = float(np.linalg.norm(exp))
    act_norm = float(np.linalg.norm(act))
    max_allowed = 2.0 ** -11
    if exp_norm <= max_allowed and act_norm <= max_allowed:
        return -1.0
    diff_norm = float(np.linalg.norm(exp - act))
    return diff_norm / max(exp_norm, act_norm)


def decryption_warning(level: int) -> None:
    """
    Log a warning when a ciphertext is decrypted above level 0.

    Levels left over at decryption mean the modulus chain is longer than
    the circuit needs.
    """
    if level > 0:
        logger.warning(
            f"Decrypting a ciphertext at level {level}: the circuit could use {level} fewer "
            "level(s). Lower multiplicative_depth to shrink the parameters."
        )
