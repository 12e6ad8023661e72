"""
Plaintext Shadow Evaluator

Runs a circuit on the unencrypted values. Every operation applies its exact
algebra to the shadow vector (`raw_pt`), so results are what the circuit
computes with infinite precision. Also tracks the largest plaintext
magnitude seen anywhere in the circuit.
"""

from typing import Optional
import logging

import numpy as np

from ..common import ArrayLike, decryption_warning, l_inf_norm, safe_log2
from ..config import EvaluatorConfig
from ..errors import InvalidLevelTarget, UnsupportedOperation
from .base import CKKSEvaluator, PlainOperand
from .ciphertext import CiphertextHandle

logger = logging.getLogger(__name__)


class PlaintextEvaluator(CKKSEvaluator):
    """Evaluates circuits on cleartext shadow vectors."""

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        super().__init__(config, **overrides)
        self._plaintext_max_log = -100.0

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        values = self._slot_vector(coeffs)
        top = self.config.multiplicative_depth
        if level is None:
            level = top
        if level < 0 or level > top:
            raise InvalidLevelTarget(
                "encrypt", top, level, reason=f"level {level} outside chain [0, {top}]"
            )
        self.update_max_log(values)
        return CiphertextHandle(
            he_level=level,
            scale=self.nominal_scale,
            num_slots=self.num_slots,
            raw_pt=values,
        )

    def decrypt(self, ct: CiphertextHandle, suppress_warnings: bool = False) -> np.ndarray:
        if not suppress_warnings:
            decryption_warning(ct.he_level)
        return ct.plaintext()

    def update_max_log(self, values: np.ndarray) -> None:
        """Fold a plaintext into the running max of log2(max|pt|)."""
        log_max = safe_log2(l_inf_norm(values))
        with self._lock:
            self._plaintext_max_log = max(self._plaintext_max_log, log_max)

    def get_exact_max_log_plain_val(self) -> float:
        """log2 of the largest plaintext magnitude seen so far."""
        with self._lock:
            return self._plaintext_max_log

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        ct.raw_pt = np.roll(ct.raw_pt, -steps)

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        ct.raw_pt = np.roll(ct.raw_pt, steps)

    def on_negate(self, ct: CiphertextHandle) -> None:
        ct.raw_pt = -ct.raw_pt

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        ct1.raw_pt = ct1.raw_pt + ct2.raw_pt
        self.update_max_log(ct1.raw_pt)

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        ct.raw_pt = ct.raw_pt + plain
        self.update_max_log(ct.raw_pt)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        ct1.raw_pt = ct1.raw_pt - ct2.raw_pt
        self.update_max_log(ct1.raw_pt)

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        ct.raw_pt = ct.raw_pt - plain
        self.update_max_log(ct.raw_pt)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        ct1.raw_pt = ct1.raw_pt * ct2.raw_pt
        self.update_max_log(ct1.raw_pt)

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        ct.raw_pt = ct.raw_pt * plain
        self.update_max_log(ct.raw_pt)

    def on_square(self, ct: CiphertextHandle) -> None:
        ct.raw_pt = ct.raw_pt * ct.raw_pt
        self.update_max_log(ct.raw_pt)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        raise UnsupportedOperation("PlaintextEvaluator does not model bootstrapping")
