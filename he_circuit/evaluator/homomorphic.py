"""
Homomorphic Evaluator

Runs a circuit on real ciphertexts by delegating every operation to a
CKKSBackend. Level and scale checks rely on the backend's own metadata, so
the evaluator-level tracking (he_level, scale) can be cross-checked against
it by the Debug evaluator.
"""

from typing import Optional
import logging

import numpy as np

from ..backend.ckks_backend import BackendType, CKKSBackend, create_backend
from ..ckks_params import CKKSParams
from ..common import ArrayLike, decryption_warning
from ..config import EvaluatorConfig, ExecutionPolicy
from ..errors import InvalidLevelTarget, LevelMismatch, UnsupportedOperation
from .base import CKKSEvaluator, PlainOperand
from .ciphertext import CiphertextHandle

logger = logging.getLogger(__name__)


class HomomorphicEvaluator(CKKSEvaluator):
    """
    Evaluates circuits on encrypted data.

    The modulus chain is CKKSParams.for_depth(num_slots, multiplicative_depth,
    scale_bits), validated against the security table unless
    `use_secure_params` is False.

    Example:
        evaluator = HomomorphicEvaluator(num_slots=4096, multiplicative_depth=2)
        ct = evaluator.encrypt(values)
        ct = evaluator.rescale_to_next(evaluator.multiply_plain(ct, 0.5))
        result = evaluator.decrypt(ct)
    """

    default_execution_policy = ExecutionPolicy.PARALLEL

    def __init__(
        self,
        config: Optional[EvaluatorConfig] = None,
        backend: Optional[CKKSBackend] = None,
        backend_type: BackendType = BackendType.SIMULATION,
        **overrides,
    ):
        """
        Args:
            config: Evaluator configuration
            backend: Pre-built backend (its params must match the config)
            backend_type: Backend to create when `backend` is None
            **overrides: Individual EvaluatorConfig fields
        """
        super().__init__(config, **overrides)
        cfg = self.config
        if backend is None:
            params = CKKSParams.for_depth(cfg.num_slots, cfg.multiplicative_depth, cfg.scale_bits)
            params.validate(enforce_security=cfg.use_secure_params)
            backend = create_backend(backend_type, params, noise_std=cfg.noise_std, seed=cfg.seed)
        elif backend.params.slot_count != cfg.num_slots:
            raise ValueError(
                f"Backend has {backend.params.slot_count} slots, config has {cfg.num_slots}"
            )
        self._backend = backend
        self._params = backend.params
        logger.debug(
            f"HomomorphicEvaluator: N={self._params.poly_modulus_degree}, "
            f"chain={list(self._params.coeff_modulus_bits)}"
        )

    @property
    def backend(self) -> CKKSBackend:
        return self._backend

    @property
    def params(self) -> CKKSParams:
        return self._params

    @property
    def top_level(self) -> int:
        return self._params.max_level

    # -------------------------------------------------------------------------
    # ENCRYPTION / DECRYPTION
    # -------------------------------------------------------------------------

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        """
        Encrypt a slot vector.

        Args:
            coeffs: Exactly num_slots values
            level: Encryption level (default: top of the chain)

        Raises:
            DimensionError: If the vector has the wrong length
            InvalidLevelTarget: If the level is outside [0, top]
        """
        values = self._slot_vector(coeffs)
        if level is None:
            level = self.top_level
        if level < 0 or level > self.top_level:
            raise InvalidLevelTarget(
                "encrypt", self.top_level, level,
                reason=f"level {level} outside chain [0, {self.top_level}]",
            )
        backend_ct = self._backend.encrypt(values, level)
        return CiphertextHandle(
            he_level=level,
            scale=backend_ct.scale,
            num_slots=self.num_slots,
            backend_ct=backend_ct,
        )

    def decrypt(self, ct: CiphertextHandle, suppress_warnings: bool = False) -> np.ndarray:
        if not suppress_warnings:
            decryption_warning(ct.backend_ct.level)
        return self._backend.decrypt(ct.backend_ct)

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        ct.backend_ct = self._backend.rotate(ct.backend_ct, steps)

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        ct.backend_ct = self._backend.rotate(ct.backend_ct, -steps)

    def on_negate(self, ct: CiphertextHandle) -> None:
        ct.backend_ct = self._backend.negate(ct.backend_ct)

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._check_backend_levels("add", ct1, ct2)
        ct1.backend_ct = self._backend.add(ct1.backend_ct, ct2.backend_ct)

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        ct.backend_ct = self._backend.add_plain(ct.backend_ct, plain)

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._check_backend_levels("sub", ct1, ct2)
        ct1.backend_ct = self._backend.sub(ct1.backend_ct, ct2.backend_ct)

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        ct.backend_ct = self._backend.sub_plain(ct.backend_ct, plain)

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._check_backend_levels("multiply", ct1, ct2)
        ct1.backend_ct = self._backend.multiply(ct1.backend_ct, ct2.backend_ct)

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        # WARNING: multiplying by 0 is not constant time. Only valid when the
        # scalar is public.
        if np.isscalar(plain) and plain == 0:
            previous_scale = ct.backend_ct.scale
            logger.debug("multiply_plain by 0: replacing ciphertext with a fresh encryption of zero")
            ct.backend_ct = self._backend.encrypt_zero(
                ct.backend_ct.level, previous_scale * previous_scale
            )
        else:
            ct.backend_ct = self._backend.multiply_plain(ct.backend_ct, plain)

    def on_square(self, ct: CiphertextHandle) -> None:
        ct.backend_ct = self._backend.square(ct.backend_ct)

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        backend_ct = ct.backend_ct
        if backend_ct.level < level:
            raise InvalidLevelTarget(
                "reduce_level_to", backend_ct.level, level,
                reason=f"input is below the target level: {backend_ct.level} < {level}",
            )
        while backend_ct.level > level:
            backend_ct = self._backend.multiply_plain(backend_ct, 1.0)
            backend_ct = self._backend.rescale(backend_ct)
        ct.backend_ct = backend_ct

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        if ct.backend_ct.level == 0:
            raise InvalidLevelTarget(
                "rescale_to_next", 0, -1, reason="cannot rescale a ciphertext at level 0"
            )
        ct.backend_ct = self._backend.rescale(ct.backend_ct)

    def on_relinearize(self, ct: CiphertextHandle) -> None:
        ct.backend_ct = self._backend.relinearize(ct.backend_ct)

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        raise UnsupportedOperation("HomomorphicEvaluator does not support bootstrapping")

    def last_prime(self, ct: CiphertextHandle) -> float:
        return self._params.last_prime(ct.he_level)

    def _check_backend_levels(self, op: str, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        if ct1.backend_ct.level != ct2.backend_ct.level:
            raise LevelMismatch(op, ct1.backend_ct.level, ct2.backend_ct.level)
