"""
CKKS Evaluator Base

CKKSEvaluator defines the circuit vocabulary shared by every interpreter and
performs all checks that do not depend on the interpretation: argument
compatibility (encoding and shape), levels, scales and degree flags.

Every in-place operation runs in the same order:
  1. compatibility check (binary operations only)
  2. level / scale / degree preconditions
  3. on_<op>() hook - the interpretation-specific work
  4. metadata update (level, scale, flags, shape)
  5. check_result() hook

All preconditions are checked before either operand is mutated. The hooks
are public so that composite interpreters (Debug, ScaleEstimator, OpCount)
can drive the interpreters they own step by step without subclassing them.

Value forms (rotate_left, add, multiply, ...) copy their first argument and
run the in-place form on the copy.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple, Union
import logging
import math
import threading

import numpy as np

from ..common import ArrayLike
from ..config import EvaluatorConfig, ExecutionPolicy, resolve_config
from ..errors import (
    DimensionError,
    IncompatibleOperands,
    InvalidLevelTarget,
    LevelMismatch,
    PreconditionError,
    ScaleMismatch,
    UnsupportedOperation,
)
from .ciphertext import CiphertextHandle, EncodingKind

logger = logging.getLogger(__name__)

PlainOperand = Union[float, int, ArrayLike]
LevelTarget = Union[int, CiphertextHandle]

_K = EncodingKind

# (lhs, rhs) encoding pairs swapped before the compatibility check
_ADD_SWAPS = {
    (_K.MATRIX, _K.ROW_MATRIX),
    (_K.COL_MATRIX, _K.MATRIX),
}

# Mixed-encoding sums: (lhs, rhs) -> result encoding
_ADD_RESULTS = {
    (_K.ROW_MATRIX, _K.MATRIX): _K.ROW_MATRIX,
    (_K.MATRIX, _K.COL_MATRIX): _K.COL_MATRIX,
}

ShapeTuple = Tuple[EncodingKind, int, int, int, int]


class CKKSEvaluator(ABC):
    """
    Abstract CKKS circuit evaluator.

    Subclasses implement encrypt() and whichever on_<op>() hooks their
    interpretation needs; the default hooks do nothing.

    Attributes:
        default_execution_policy: How the linear algebra layer dispatches
            tile tasks when driven by this evaluator.
    """

    default_execution_policy = ExecutionPolicy.SEQUENTIAL

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        """
        Args:
            config: Evaluator configuration (defaults to EvaluatorConfig())
            **overrides: Individual EvaluatorConfig fields
        """
        self._config = resolve_config(config, **overrides)
        self._lock = threading.Lock()

    @property
    def config(self) -> EvaluatorConfig:
        return self._config

    @property
    def num_slots(self) -> int:
        return self._config.num_slots

    @property
    def scale_bits(self) -> int:
        return self._config.scale_bits

    @property
    def nominal_scale(self) -> float:
        return self._config.scale

    # =========================================================================
    # ENCRYPTION / DECRYPTION
    # =========================================================================

    @abstractmethod
    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        """
        Encrypt a slot vector.

        Args:
            coeffs: Values, one per slot
            level: Level of the ciphertext (interpreter-specific default)
        """
        pass

    def decrypt(self, ct: CiphertextHandle, suppress_warnings: bool = False) -> np.ndarray:
        """Decrypt a ciphertext. Not defined for counting interpreters."""
        raise UnsupportedOperation(f"{type(self).__name__} does not support decryption")

    # =========================================================================
    # ROTATION
    # =========================================================================

    def rotate_left_inplace(self, ct: CiphertextHandle, steps: int) -> None:
        self._check_rotation("rotate_left", ct, steps)
        logger.debug(f"rotate_left: steps={steps}, level={ct.he_level}")
        self.on_rotate_left(ct, steps)
        self.check_result("rotate_left", ct)

    def rotate_left(self, ct: CiphertextHandle, steps: int) -> CiphertextHandle:
        result = ct.copy()
        self.rotate_left_inplace(result, steps)
        return result

    def rotate_right_inplace(self, ct: CiphertextHandle, steps: int) -> None:
        self._check_rotation("rotate_right", ct, steps)
        logger.debug(f"rotate_right: steps={steps}, level={ct.he_level}")
        self.on_rotate_right(ct, steps)
        self.check_result("rotate_right", ct)

    def rotate_right(self, ct: CiphertextHandle, steps: int) -> CiphertextHandle:
        result = ct.copy()
        self.rotate_right_inplace(result, steps)
        return result

    # =========================================================================
    # ADDITIVE OPERATIONS
    # =========================================================================

    def negate_inplace(self, ct: CiphertextHandle) -> None:
        logger.debug(f"negate: level={ct.he_level}")
        self.on_negate(ct)
        self.check_result("negate", ct)

    def negate(self, ct: CiphertextHandle) -> CiphertextHandle:
        result = ct.copy()
        self.negate_inplace(result)
        return result

    def add_inplace(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        shape = self._check_add_compatible("add", ct1, ct2)
        self._check_add_inputs("add", ct1, ct2)
        logger.debug(f"add: levels=({ct1.he_level}, {ct2.he_level})")
        self.on_add(ct1, ct2)
        self._merge_additive(ct1, ct2, shape)
        self.check_result("add", ct1)

    def add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> CiphertextHandle:
        result = ct1.copy()
        self.add_inplace(result, ct2)
        return result

    def add_plain_inplace(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        plain = self._check_plain("add_plain", plain)
        logger.debug(f"add_plain: level={ct.he_level}")
        self.on_add_plain(ct, plain)
        self.check_result("add_plain", ct)

    def add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> CiphertextHandle:
        result = ct.copy()
        self.add_plain_inplace(result, plain)
        return result

    def add_many(self, cts: Sequence[CiphertextHandle]) -> CiphertextHandle:
        """
        Sum a non-empty list of ciphertexts.

        Raises:
            PreconditionError: If the list is empty
        """
        if len(cts) == 0:
            raise PreconditionError("add_many", "input list must be non-empty")
        result = cts[0].copy()
        for ct in cts[1:]:
            self.add_inplace(result, ct)
        return result

    def sub_inplace(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        shape = self._check_add_compatible("sub", ct1, ct2)
        self._check_add_inputs("sub", ct1, ct2)
        logger.debug(f"sub: levels=({ct1.he_level}, {ct2.he_level})")
        self.on_sub(ct1, ct2)
        self._merge_additive(ct1, ct2, shape)
        self.check_result("sub", ct1)

    def sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> CiphertextHandle:
        result = ct1.copy()
        self.sub_inplace(result, ct2)
        return result

    def sub_plain_inplace(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        plain = self._check_plain("sub_plain", plain)
        logger.debug(f"sub_plain: level={ct.he_level}")
        self.on_sub_plain(ct, plain)
        self.check_result("sub_plain", ct)

    def sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> CiphertextHandle:
        result = ct.copy()
        self.sub_plain_inplace(result, plain)
        return result

    # =========================================================================
    # MULTIPLICATIVE OPERATIONS
    # =========================================================================

    def multiply_inplace(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        shape = self._check_multiply_compatible("multiply", ct1, ct2)
        self._check_linear("multiply", ct1, ct2)
        self._check_nominal("multiply", ct1, ct2)
        self._check_add_inputs("multiply", ct1, ct2)
        logger.debug(f"multiply: levels=({ct1.he_level}, {ct2.he_level})")
        self.on_multiply(ct1, ct2)
        ct1.bootstrapped = ct1.bootstrapped or ct2.bootstrapped
        ct1.scale = ct1.scale * ct2.scale
        ct1.needs_rescale = True
        ct1.needs_relin = True
        ct1.set_shape(*shape)
        self.check_result("multiply", ct1)

    def multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> CiphertextHandle:
        result = ct1.copy()
        self.multiply_inplace(result, ct2)
        return result

    def multiply_plain_inplace(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        plain = self._check_plain("multiply_plain", plain)
        self._check_nominal("multiply_plain", ct)
        logger.debug(f"multiply_plain: level={ct.he_level}")
        self.on_multiply_plain(ct, plain)
        ct.scale = ct.scale * ct.scale
        ct.needs_rescale = True
        self.check_result("multiply_plain", ct)

    def multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> CiphertextHandle:
        result = ct.copy()
        self.multiply_plain_inplace(result, plain)
        return result

    def square_inplace(self, ct: CiphertextHandle) -> None:
        self._check_linear("square", ct)
        self._check_nominal("square", ct)
        logger.debug(f"square: level={ct.he_level}")
        self.on_square(ct)
        ct.scale = ct.scale * ct.scale
        ct.needs_rescale = True
        ct.needs_relin = True
        self.check_result("square", ct)

    def square(self, ct: CiphertextHandle) -> CiphertextHandle:
        result = ct.copy()
        self.square_inplace(result)
        return result

    # =========================================================================
    # LEVEL MANAGEMENT
    # =========================================================================

    def reduce_level_to_inplace(self, ct: CiphertextHandle, target: LevelTarget) -> None:
        """
        Lower `ct` to a level (or to another ciphertext's level).

        Raises:
            InvalidLevelTarget: If the target is above the current level
            PreconditionError: If `ct` is not linear or not at nominal scale
        """
        level = target.he_level if isinstance(target, CiphertextHandle) else int(target)
        if level > ct.he_level:
            raise InvalidLevelTarget(
                "reduce_level_to", ct.he_level, level,
                reason=f"input is below the target level: {ct.he_level} < {level}",
            )
        self._check_linear("reduce_level_to", ct)
        self._check_nominal("reduce_level_to", ct)
        logger.debug(f"reduce_level_to: {ct.he_level} -> {level}")
        self.on_reduce_level_to(ct, level)
        self._reduce_metadata_to_level(ct, level)
        self.check_result("reduce_level_to", ct)

    def reduce_level_to(self, ct: CiphertextHandle, target: LevelTarget) -> CiphertextHandle:
        result = ct.copy()
        self.reduce_level_to_inplace(result, target)
        return result

    def reduce_level_to_min_inplace(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        """Lower whichever operand is at the higher level."""
        if ct1.he_level > ct2.he_level:
            self.reduce_level_to_inplace(ct1, ct2.he_level)
        elif ct2.he_level > ct1.he_level:
            self.reduce_level_to_inplace(ct2, ct1.he_level)

    def reduce_level_to_min(
        self, ct1: CiphertextHandle, ct2: CiphertextHandle,
    ) -> Tuple[CiphertextHandle, CiphertextHandle]:
        r1, r2 = ct1.copy(), ct2.copy()
        self.reduce_level_to_min_inplace(r1, r2)
        return r1, r2

    def rescale_to_next_inplace(self, ct: CiphertextHandle) -> None:
        if not ct.needs_rescale:
            raise PreconditionError(
                "rescale_to_next", "input must have a squared scale (needs_rescale)"
            )
        logger.debug(f"rescale_to_next: level={ct.he_level}")
        self.on_rescale_to_next(ct)
        self._rescale_metadata(ct)
        self.check_result("rescale_to_next", ct)

    def rescale_to_next(self, ct: CiphertextHandle) -> CiphertextHandle:
        result = ct.copy()
        self.rescale_to_next_inplace(result)
        return result

    def relinearize_inplace(self, ct: CiphertextHandle) -> None:
        if not ct.needs_relin:
            raise PreconditionError("relinearize", "input is already linear")
        logger.debug(f"relinearize: level={ct.he_level}")
        self.on_relinearize(ct)
        ct.needs_relin = False
        self.check_result("relinearize", ct)

    def relinearize(self, ct: CiphertextHandle) -> CiphertextHandle:
        result = ct.copy()
        self.relinearize_inplace(result)
        return result

    def bootstrap(
        self, ct: CiphertextHandle, rescale_for_bootstrapping: bool = False,
    ) -> CiphertextHandle:
        """
        Refresh a ciphertext's levels.

        Only the level bookkeeping is modelled. With
        `rescale_for_bootstrapping`, the input carries a squared scale and
        bootstrapping performs the pending rescale.
        """
        self._check_linear("bootstrap", ct)
        if rescale_for_bootstrapping and not ct.needs_rescale:
            raise PreconditionError(
                "bootstrap", "rescale_for_bootstrapping requires a squared scale"
            )
        if not rescale_for_bootstrapping:
            self._check_nominal("bootstrap", ct)
        logger.debug(f"bootstrap: level={ct.he_level}, rescale={rescale_for_bootstrapping}")
        result = self.on_bootstrap(ct.copy(), rescale_for_bootstrapping)
        if result.needs_rescale:
            result.scale = math.sqrt(result.scale)
            result.needs_rescale = False
        result.bootstrapped = True
        self.check_result("bootstrap", result)
        return result

    # =========================================================================
    # INTERPRETATION HOOKS
    # =========================================================================
    # Called after all checks pass and before the metadata update. `ct` (or
    # `ct1`) is the operand being mutated.

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        pass

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        pass

    def on_negate(self, ct: CiphertextHandle) -> None:
        pass

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        pass

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        pass

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        pass

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        pass

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        pass

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        pass

    def on_square(self, ct: CiphertextHandle) -> None:
        pass

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        pass

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        pass

    def on_relinearize(self, ct: CiphertextHandle) -> None:
        pass

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        return ct

    def check_result(self, op: str, ct: CiphertextHandle) -> None:
        """Post-operation hook; Debug overrides it to cross-check interpreters."""
        pass

    # =========================================================================
    # METADATA
    # =========================================================================

    def last_prime(self, ct: CiphertextHandle) -> float:
        """
        Value of the prime dropped when `ct` is rescaled.

        Interpreters without a modulus chain assume the chain prime equals
        the scale being removed.
        """
        if ct.needs_rescale:
            return math.sqrt(ct.scale)
        return ct.scale

    def _rescale_metadata(self, ct: CiphertextHandle) -> None:
        prime = self.last_prime(ct)
        ct.he_level -= 1
        ct.scale = ct.scale / prime
        ct.needs_rescale = False

    def _reduce_metadata_to_level(self, ct: CiphertextHandle, level: int) -> None:
        # Mirrors multiply_plain(1) + rescale per dropped level
        while ct.he_level > level:
            ct.scale = ct.scale * ct.scale
            ct.needs_rescale = True
            self._rescale_metadata(ct)

    def _merge_additive(self, ct1: CiphertextHandle, ct2: CiphertextHandle, shape: ShapeTuple) -> None:
        ct1.bootstrapped = ct1.bootstrapped or ct2.bootstrapped
        ct1.needs_relin = ct1.needs_relin or ct2.needs_relin
        ct1.set_shape(*shape)

    # =========================================================================
    # CHECKS
    # =========================================================================

    def _slot_vector(self, coeffs: ArrayLike) -> np.ndarray:
        values = np.array(coeffs, dtype=np.float64).reshape(-1)
        if values.size != self.num_slots:
            raise DimensionError(
                f"encrypt: expected {self.num_slots} coefficients, got {values.size}"
            )
        return values

    def _check_rotation(self, op: str, ct: CiphertextHandle, steps: int) -> None:
        if steps < 0:
            raise PreconditionError(op, f"rotation steps must be non-negative, got {steps}")
        self._check_linear(op, ct)

    def _check_linear(self, op: str, *cts: CiphertextHandle) -> None:
        for ct in cts:
            if ct.needs_relin:
                raise PreconditionError(op, "input must be linear; relinearize first")

    def _check_nominal(self, op: str, *cts: CiphertextHandle) -> None:
        for ct in cts:
            if ct.needs_rescale:
                raise PreconditionError(op, "input must be at nominal scale; rescale first")

    def _check_add_inputs(self, op: str, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        # Levels may differ only when exactly one operand is bootstrapped
        if ct1.bootstrapped == ct2.bootstrapped and ct1.he_level != ct2.he_level:
            raise LevelMismatch(op, ct1.he_level, ct2.he_level)
        if ct1.scale != ct2.scale:
            raise ScaleMismatch(op, math.log2(ct1.scale), math.log2(ct2.scale))

    def _check_plain(self, op: str, plain: PlainOperand) -> PlainOperand:
        if np.isscalar(plain):
            return float(plain)
        arr = np.asarray(plain, dtype=np.float64)
        if arr.ndim != 1 or arr.size != self.num_slots:
            raise IncompatibleOperands(
                op, "ciphertext", f"plaintext of shape {arr.shape}",
                reason=f"plaintext must have {self.num_slots} slots",
            )
        return arr

    def _check_add_compatible(self, op: str, ct1: CiphertextHandle, ct2: CiphertextHandle) -> ShapeTuple:
        a, b = ct1, ct2
        if (a.encoding, b.encoding) in _ADD_SWAPS:
            a, b = b, a
        pair = (a.encoding, b.encoding)
        if a.encoding == b.encoding or pair in _ADD_RESULTS:
            if a.shape[1:] == b.shape[1:]:
                encoding = _ADD_RESULTS.get(pair, a.encoding)
                return (encoding,) + a.shape[1:]
        raise IncompatibleOperands(op, ct1.describe(), ct2.describe())

    def _check_multiply_compatible(self, op: str, ct1: CiphertextHandle, ct2: CiphertextHandle) -> ShapeTuple:
        a, b = ct1, ct2
        if ((a.encoding in (_K.MATRIX, _K.ROW_MATRIX) and b.encoding == _K.ROW_VECTOR)
                or (a.encoding == _K.COL_VECTOR and b.encoding in (_K.MATRIX, _K.COL_MATRIX))):
            a, b = b, a

        if a.encoding == b.encoding and a.shape == b.shape:
            return a.shape

        same_unit = (a.encoded_height == b.encoded_height and a.encoded_width == b.encoded_width)
        if same_unit and a.width == b.height:
            if a.encoding == _K.ROW_VECTOR and b.encoding in (_K.MATRIX, _K.ROW_MATRIX):
                return (_K.ROW_MATRIX,) + b.shape[1:]
            if a.encoding in (_K.MATRIX, _K.COL_MATRIX) and b.encoding == _K.COL_VECTOR:
                return (_K.COL_MATRIX,) + a.shape[1:]
        raise IncompatibleOperands(op, ct1.describe(), ct2.describe())
