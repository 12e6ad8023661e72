"""
Scale Estimator

Estimates the largest CKKS scale a circuit can use without overflowing.

The evaluator runs the circuit on shadow plaintexts (through an owned
PlaintextEvaluator) and, after each operation, bounds log2(scale) so that
the scaled plaintext stays below 2^PLAINTEXT_LOG_MAX at the ciphertext's
level. A ciphertext at level l with scale s^i carries a modulus of roughly
s^l * 2^60 bits, so a value x fits when i * log2(s) + log2|x| stays below
the available bits; solving for log2(s) gives the bound.

The result is also capped by the security table: the total modulus of
[60, s x depth, 60] may not exceed the ring's maximum modulus size.
"""

from typing import Optional
import logging
import math

import numpy as np

from ..ckks_params import MAX_MOD_BITS, CKKSParams, poly_degree_to_max_mod_bits
from ..common import PLAINTEXT_LOG_MAX, SPECIAL_PRIME_BITS, ArrayLike, decryption_warning, l_inf_norm, safe_log2
from ..config import EvaluatorConfig
from ..errors import InvalidLevelTarget, PreconditionError, ScaleOverflow, UnsupportedOperation
from .base import CKKSEvaluator, PlainOperand
from .ciphertext import CiphertextHandle
from .plaintext import PlaintextEvaluator

logger = logging.getLogger(__name__)


class ScaleEstimator(CKKSEvaluator):
    """
    Estimates the maximum log2(scale) for a circuit.

    Example:
        estimator = ScaleEstimator(num_slots=4096, multiplicative_depth=2)
        run_circuit(estimator)
        estimator.get_estimated_max_log_scale()
    """

    def __init__(
        self,
        config: Optional[EvaluatorConfig] = None,
        params: Optional[CKKSParams] = None,
        **overrides,
    ):
        """
        Args:
            config: Evaluator configuration
            params: Modulus chain to estimate against (default:
                CKKSParams.for_depth from the config)
            **overrides: Individual EvaluatorConfig fields
        """
        super().__init__(config, **overrides)
        cfg = self.config
        if params is None:
            params = CKKSParams.for_depth(cfg.num_slots, cfg.multiplicative_depth, cfg.scale_bits)
        self._params = params
        self._plaintext = PlaintextEvaluator(cfg)
        # Every prime but the special one, minus the 60-bit base prime
        self._estimated_max_log_scale = (
            PLAINTEXT_LOG_MAX - SPECIAL_PRIME_BITS + sum(params.coeff_modulus_bits[:-1])
        )

    @property
    def params(self) -> CKKSParams:
        return self._params

    @property
    def plaintext_evaluator(self) -> PlaintextEvaluator:
        return self._plaintext

    @property
    def top_level(self) -> int:
        return self._params.max_level

    # -------------------------------------------------------------------------
    # ENCRYPTION / DECRYPTION
    # -------------------------------------------------------------------------

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        values = self._slot_vector(coeffs)
        self.update_plaintext_max_val(values)
        if level is None:
            level = self.top_level
        if level < 0 or level > self.top_level:
            raise InvalidLevelTarget(
                "encrypt", self.top_level, level,
                reason=f"level {level} outside chain [0, {self.top_level}]",
            )
        self._plaintext.update_max_log(values)
        return CiphertextHandle(
            he_level=level,
            scale=self._params.fresh_scale(level),
            num_slots=self.num_slots,
            raw_pt=values.copy(),
        )

    def decrypt(self, ct: CiphertextHandle, suppress_warnings: bool = False) -> np.ndarray:
        return self._plaintext.decrypt(ct, suppress_warnings=suppress_warnings)

    # -------------------------------------------------------------------------
    # BOUND UPDATES
    # -------------------------------------------------------------------------

    def update_plaintext_max_val(self, coeffs: ArrayLike) -> None:
        """
        Tighten the bound for a fresh plaintext.

        Only matters for a chain with no evaluation levels, where the value
        is encoded directly against the base prime.
        """
        if self.top_level == 0:
            log_max = safe_log2(l_inf_norm(coeffs))
            with self._lock:
                self._estimated_max_log_scale = min(
                    self._estimated_max_log_scale, PLAINTEXT_LOG_MAX - log_max
                )

    def _update_max_log_scale(self, ct: CiphertextHandle) -> None:
        scale_exp = int(round(math.log2(ct.scale) / self._params.scale_bits))
        if scale_exp not in (1, 2):
            raise PreconditionError(
                "scale_estimate",
                f"scale exponent must be 1 or 2, got {scale_exp}: ciphertext scale is "
                f"{math.log2(ct.scale):.2f} bits, nominal scale is {self._params.scale_bits} bits",
            )
        log_max = safe_log2(l_inf_norm(ct.raw_pt))
        if scale_exp > ct.he_level:
            estimate = (PLAINTEXT_LOG_MAX - log_max) / (scale_exp - ct.he_level)
            with self._lock:
                self._estimated_max_log_scale = min(self._estimated_max_log_scale, estimate)
        elif scale_exp == ct.he_level and log_max > PLAINTEXT_LOG_MAX:
            raise ScaleOverflow(log_max, PLAINTEXT_LOG_MAX, ct.he_level)

    def _update_with_squared_scale(self, ct: CiphertextHandle) -> None:
        input_scale = ct.scale
        ct.scale = ct.scale * ct.scale
        try:
            self._update_max_log_scale(ct)
        finally:
            ct.scale = input_scale

    def _update_with_metadata(self, ct: CiphertextHandle, apply) -> None:
        saved = (ct.he_level, ct.scale, ct.needs_rescale)
        apply(ct)
        try:
            self._update_max_log_scale(ct)
        finally:
            ct.he_level, ct.scale, ct.needs_rescale = saved

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        self._plaintext.on_rotate_left(ct, steps)

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        self._plaintext.on_rotate_right(ct, steps)

    def on_negate(self, ct: CiphertextHandle) -> None:
        self._plaintext.on_negate(ct)

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._plaintext.on_add(ct1, ct2)
        self._update_max_log_scale(ct1)

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._plaintext.on_add_plain(ct, plain)
        self._update_max_log_scale(ct)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._plaintext.on_sub(ct1, ct2)
        self._update_max_log_scale(ct1)

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._plaintext.on_sub_plain(ct, plain)
        self._update_max_log_scale(ct)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._plaintext.on_multiply(ct1, ct2)
        self._update_with_squared_scale(ct1)

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._plaintext.on_multiply_plain(ct, plain)
        self._update_with_squared_scale(ct)

    def on_square(self, ct: CiphertextHandle) -> None:
        self._plaintext.on_square(ct)
        self._update_with_squared_scale(ct)

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        if level < 0:
            raise InvalidLevelTarget(
                "reduce_level_to", ct.he_level, level,
                reason=f"target level must be non-negative, got {level}",
            )
        self._plaintext.on_reduce_level_to(ct, level)
        self._update_with_metadata(ct, lambda c: self._reduce_metadata_to_level(c, level))

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        if ct.he_level == 0:
            raise InvalidLevelTarget(
                "rescale_to_next", 0, -1, reason="cannot rescale a ciphertext at level 0"
            )
        self._plaintext.on_rescale_to_next(ct)
        self._update_with_metadata(ct, self._rescale_metadata)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        raise UnsupportedOperation("ScaleEstimator does not model bootstrapping")

    def last_prime(self, ct: CiphertextHandle) -> float:
        return self._params.last_prime(ct.he_level)

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    def get_estimated_max_log_scale(self) -> float:
        """
        Largest log2(scale) the circuit tolerates.

        Besides the overflow bound collected during evaluation, the modulus
        [60, s x top, 60] must fit the ring's maximum modulus size, so
        s <= (max_mod_bits - 120) / top.
        """
        with self._lock:
            estimate = min(float(PLAINTEXT_LOG_MAX), self._estimated_max_log_scale)
        if self.top_level > 0:
            poly_degree = 2 * self.num_slots
            if poly_degree in MAX_MOD_BITS:
                max_mod_bits = poly_degree_to_max_mod_bits(poly_degree)
                estimate = min(estimate, (max_mod_bits - 2 * SPECIAL_PRIME_BITS) / self.top_level)
            else:
                logger.debug(f"No modulus bound for N={poly_degree}; skipping security cap")
        return estimate

    def get_exact_max_log_plain_val(self) -> float:
        """log2 of the largest plaintext magnitude seen so far."""
        return self._plaintext.get_exact_max_log_plain_val()
