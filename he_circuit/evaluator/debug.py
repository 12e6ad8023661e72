"""
Debug Evaluator

Runs a circuit homomorphically and on shadow plaintexts in lockstep, and
cross-checks the two after every operation:

  1. the backend ciphertext's level equals the tracked he_level
  2. the backend scale equals the tracked scale, and the tracked scale is
     the nominal scale or its square
  3. the decrypted ciphertext is within max_norm (relative 2-norm) of the
     shadow plaintext

A failed check means an evaluator or backend bug (or a circuit that loses
too much precision) and raises DivergenceError.

The Debug evaluator owns one HomomorphicEvaluator and one ScaleEstimator
(which owns the PlaintextEvaluator) and drives both through their hooks.
"""

from typing import Any, Dict, Optional
import logging
import math

import numpy as np

from ..backend.ckks_backend import CKKSBackend
from ..ckks_params import CKKSParams
from ..common import MAX_PRINT_SIZE, ArrayLike, diff2_norm
from ..config import EvaluatorConfig, ExecutionPolicy
from ..errors import DivergenceError
from .base import CKKSEvaluator, PlainOperand
from .ciphertext import CiphertextHandle
from .homomorphic import HomomorphicEvaluator
from .scale_estimator import ScaleEstimator

logger = logging.getLogger(__name__)


class DebugEvaluator(CKKSEvaluator):
    """
    Homomorphic evaluation with per-operation verification.

    Example:
        evaluator = DebugEvaluator(num_slots=4096, multiplicative_depth=2)
        ct = evaluator.square(evaluator.encrypt(values))  # checked
        evaluator.get_estimated_max_log_scale()
    """

    default_execution_policy = ExecutionPolicy.PARALLEL

    def __init__(
        self,
        config: Optional[EvaluatorConfig] = None,
        backend: Optional[CKKSBackend] = None,
        **overrides,
    ):
        super().__init__(config, **overrides)
        self._homomorphic = HomomorphicEvaluator(self.config, backend=backend)
        self._estimator = ScaleEstimator(self.config, params=self._homomorphic.params)

    @property
    def homomorphic(self) -> HomomorphicEvaluator:
        return self._homomorphic

    @property
    def scale_estimator(self) -> ScaleEstimator:
        return self._estimator

    @property
    def backend(self) -> CKKSBackend:
        return self._homomorphic.backend

    @property
    def params(self) -> CKKSParams:
        return self._homomorphic.params

    # -------------------------------------------------------------------------
    # ENCRYPTION / DECRYPTION
    # -------------------------------------------------------------------------

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        values = self._slot_vector(coeffs)
        self._estimator.update_plaintext_max_val(values)
        self._estimator.plaintext_evaluator.update_max_log(values)
        ct = self._homomorphic.encrypt(values, level)
        ct.raw_pt = values.copy()
        self.check_result("encrypt", ct)
        return ct

    def decrypt(self, ct: CiphertextHandle, suppress_warnings: bool = False) -> np.ndarray:
        return self._homomorphic.decrypt(ct, suppress_warnings=suppress_warnings)

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        self._homomorphic.on_rotate_left(ct, steps)
        self._estimator.on_rotate_left(ct, steps)

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        self._homomorphic.on_rotate_right(ct, steps)
        self._estimator.on_rotate_right(ct, steps)

    def on_negate(self, ct: CiphertextHandle) -> None:
        self._homomorphic.on_negate(ct)
        self._estimator.on_negate(ct)

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._homomorphic.on_add(ct1, ct2)
        self._estimator.on_add(ct1, ct2)

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._homomorphic.on_add_plain(ct, plain)
        self._estimator.on_add_plain(ct, plain)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._homomorphic.on_sub(ct1, ct2)
        self._estimator.on_sub(ct1, ct2)

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._homomorphic.on_sub_plain(ct, plain)
        self._estimator.on_sub_plain(ct, plain)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._homomorphic.on_multiply(ct1, ct2)
        self._estimator.on_multiply(ct1, ct2)

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._homomorphic.on_multiply_plain(ct, plain)
        self._estimator.on_multiply_plain(ct, plain)

    def on_square(self, ct: CiphertextHandle) -> None:
        self._homomorphic.on_square(ct)
        self._estimator.on_square(ct)

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        self._homomorphic.on_reduce_level_to(ct, level)
        self._estimator.on_reduce_level_to(ct, level)

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        self._homomorphic.on_rescale_to_next(ct)
        self._estimator.on_rescale_to_next(ct)

    def on_relinearize(self, ct: CiphertextHandle) -> None:
        self._homomorphic.on_relinearize(ct)
        self._estimator.on_relinearize(ct)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        return self._homomorphic.on_bootstrap(ct, rescale_for_bootstrapping)

    def last_prime(self, ct: CiphertextHandle) -> float:
        return self._homomorphic.last_prime(ct)

    # -------------------------------------------------------------------------
    # VERIFICATION
    # -------------------------------------------------------------------------

    def check_result(self, op: str, ct: CiphertextHandle) -> None:
        """
        Cross-check the homomorphic result against the tracked metadata and
        the shadow plaintext.

        Raises:
            DivergenceError: If any check fails
        """
        backend_ct = ct.backend_ct
        facts: Dict[str, Any] = {
            'op': op,
            'he_level': ct.he_level,
            'backend_level': backend_ct.level,
            'log_scale': math.log2(ct.scale),
            'backend_log_scale': math.log2(backend_ct.scale),
        }

        if backend_ct.level != ct.he_level:
            self._fail(
                "level", f"{op}: backend level {backend_ct.level} != tracked level {ct.he_level}", facts,
            )

        if not math.isclose(backend_ct.scale, ct.scale, rel_tol=1e-9):
            self._fail(
                "scale",
                f"{op}: backend scale {facts['backend_log_scale']:.4f} bits != "
                f"tracked scale {facts['log_scale']:.4f} bits",
                facts,
            )

        scale_exp = int(round(math.log2(ct.scale) / self.scale_bits))
        if scale_exp not in (1, 2):
            self._fail(
                "scale", f"{op}: tracked scale is {facts['log_scale']:.4f} bits, "
                f"expected {self.scale_bits} or {2 * self.scale_bits}", facts,
            )

        actual = self._homomorphic.decrypt(ct, suppress_warnings=True)
        norm = diff2_norm(ct.raw_pt, actual)
        if norm > self.config.max_norm:
            facts['diff2_norm'] = norm
            self._fail(
                "value",
                f"{op}: relative error {norm:.6g} exceeds {self.config.max_norm}",
                facts,
                expected=ct.raw_pt[:MAX_PRINT_SIZE],
                actual=actual[:MAX_PRINT_SIZE],
            )

    def _fail(
        self,
        check: str,
        reason: str,
        facts: Dict[str, Any],
        expected: Optional[np.ndarray] = None,
        actual: Optional[np.ndarray] = None,
    ) -> None:
        error = DivergenceError(check, reason, expected=expected, actual=actual, facts=facts)
        logger.error(error.message)
        raise error

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    def get_estimated_max_log_scale(self) -> float:
        return self._estimator.get_estimated_max_log_scale()

    def get_exact_max_log_plain_val(self) -> float:
        return self._estimator.get_exact_max_log_plain_val()
