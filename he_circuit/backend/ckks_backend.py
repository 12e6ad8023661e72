"""
CKKS Backend Abstraction for HE Circuits

This module provides the backend-agnostic API that the Homomorphic and Debug
evaluators drive. A backend owns the actual ciphertexts; evaluators only
hold handles and metadata.

Contract:
  - Every operation returns a NEW backend ciphertext (inputs are untouched)
  - Each ciphertext exposes its own level and scale
  - Rotation by a positive step count rotates left
  - Rescale divides the scale by the value of the prime being dropped
  - Operation counters are guarded by a lock (evaluators run tiles in threads)

Backends register themselves with @register_backend and are built through
create_backend(). The SimulationBackend is the reference implementation used
by the test suite.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging
import math
import threading

import numpy as np

from ..ckks_params import CKKSParams
from ..errors import (
    DimensionError,
    InvalidLevelTarget,
    LevelMismatch,
    PreconditionError,
    ScaleMismatch,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)

PlainOperand = Union[float, int, np.ndarray, List[float]]


# =============================================================================
# OPERATION COUNTERS
# =============================================================================

@dataclass
class OperationCounters:
    """
    Counters for tracking backend operation costs.

    Rotations and relinearizations both require a key switch, so they also
    bump `keyswitches`.
    """
    rotations: int = 0
    keyswitches: int = 0
    rescales: int = 0
    relinearizations: int = 0
    multiplications: int = 0
    additions: int = 0
    encryptions: int = 0
    decryptions: int = 0

    def reset(self) -> None:
        """Reset all counters to zero."""
        for f in fields(self):
            setattr(self, f.name, 0)

    def __add__(self, other: 'OperationCounters') -> 'OperationCounters':
        """Combine counters."""
        return OperationCounters(**{
            f.name: getattr(self, f.name) + getattr(other, f.name)
            for f in fields(self)
        })

    def to_dict(self) -> Dict[str, int]:
        """Serialize to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


# =============================================================================
# CIPHERTEXT WRAPPER
# =============================================================================

@dataclass
class BackendCiphertext:
    """
    Backend ciphertext wrapper.

    The actual encrypted data is held in `handle` and is opaque to the
    evaluators. `size` is the number of polynomials: 2 for a linear
    ciphertext, 3 after a ciphertext-ciphertext product.
    """
    # Backend-specific handle (opaque to the evaluators)
    handle: Any

    # Metadata
    level: int  # Current level in modulus chain (top = fresh)
    scale: float  # Current scale
    slot_count: int  # Number of SIMD slots
    size: int = 2

    def copy(self) -> 'BackendCiphertext':
        """Deep copy (the handle is copied when it supports it)."""
        handle = self.handle.copy() if hasattr(self.handle, 'copy') else self.handle
        return BackendCiphertext(
            handle=handle,
            level=self.level,
            scale=self.scale,
            slot_count=self.slot_count,
            size=self.size,
        )


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

class CKKSBackend(ABC):
    """
    Abstract interface for CKKS backends.

    This interface defines the contract that every backend binding must
    satisfy. Bindings to native libraries implement the same methods and
    register under their own BackendType.
    """

    def __init__(self, params: CKKSParams):
        """
        Initialize backend with CKKS parameters.

        Args:
            params: CKKS encryption parameters
        """
        self._params = params
        self._counters = OperationCounters()
        self._counter_lock = threading.Lock()
        self._initialized = False

    @property
    def params(self) -> CKKSParams:
        """Get CKKS parameters."""
        return self._params

    @property
    def slot_count(self) -> int:
        return self._params.slot_count

    @property
    def counters(self) -> OperationCounters:
        """Snapshot of the operation counters."""
        with self._counter_lock:
            return self._counters + OperationCounters()

    def reset_counters(self) -> None:
        """Reset operation counters."""
        with self._counter_lock:
            self._counters.reset()

    def _count(self, **deltas: int) -> None:
        with self._counter_lock:
            for name, delta in deltas.items():
                setattr(self._counters, name, getattr(self._counters, name) + delta)

    def last_prime(self, level: int) -> float:
        """Value of the prime dropped when rescaling at `level`."""
        return self._params.last_prime(level)

    # -------------------------------------------------------------------------
    # INITIALIZATION
    # -------------------------------------------------------------------------

    @abstractmethod
    def initialize(self) -> None:
        """
        Initialize the backend with keys and context.

        This generates the secret, public, relinearization and Galois keys.
        """
        pass

    @abstractmethod
    def is_initialized(self) -> bool:
        """Check if backend is initialized."""
        pass

    # -------------------------------------------------------------------------
    # ENCRYPTION / DECRYPTION
    # -------------------------------------------------------------------------

    @abstractmethod
    def encrypt(self, values: np.ndarray, level: int) -> BackendCiphertext:
        """
        Encrypt a plaintext vector at a given level.

        Args:
            values: 1D numpy array of FP64 values (length == slot_count)
            level: Level of the fresh ciphertext

        Returns:
            Ciphertext at `level` with scale params.fresh_scale(level)

        Note:
            Increments encryptions counter
        """
        pass

    @abstractmethod
    def encrypt_zero(self, level: int, scale: float) -> BackendCiphertext:
        """Encrypt the all-zero vector with an explicit level and scale."""
        pass

    @abstractmethod
    def decrypt(self, ciphertext: BackendCiphertext) -> np.ndarray:
        """
        Decrypt a ciphertext to plaintext.

        Returns:
            1D numpy array of FP64 values

        Note:
            Increments decryptions counter
        """
        pass

    # -------------------------------------------------------------------------
    # ARITHMETIC OPERATIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def add(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        """
        Add two ciphertexts.

        Args:
            ct1: First ciphertext
            ct2: Second ciphertext (same level and scale required)

        Returns:
            ct1 + ct2
        """
        pass

    @abstractmethod
    def sub(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        """Subtract ct2 from ct1 (same level and scale required)."""
        pass

    @abstractmethod
    def add_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        """Add a scalar or slot vector, encoded at the ciphertext's scale."""
        pass

    @abstractmethod
    def sub_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        """Subtract a scalar or slot vector, encoded at the ciphertext's scale."""
        pass

    @abstractmethod
    def multiply(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        """
        Multiply two linear ciphertexts.

        Returns:
            Size-3 ciphertext with scale ct1.scale * ct2.scale
        """
        pass

    @abstractmethod
    def multiply_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        """
        Multiply by a scalar or slot vector (Ct x Pt).

        The plaintext is encoded at the ciphertext's scale, so the result
        scale is ct.scale squared.
        """
        pass

    @abstractmethod
    def square(self, ct: BackendCiphertext) -> BackendCiphertext:
        """Square a linear ciphertext."""
        pass

    @abstractmethod
    def negate(self, ct: BackendCiphertext) -> BackendCiphertext:
        """Negate a ciphertext."""
        pass

    # -------------------------------------------------------------------------
    # ROTATION / LEVEL MANAGEMENT
    # -------------------------------------------------------------------------

    @abstractmethod
    def rotate(self, ct: BackendCiphertext, steps: int) -> BackendCiphertext:
        """
        Rotate ciphertext slots by given steps.

        Args:
            ct: Ciphertext to rotate
            steps: Number of steps (positive = left, negative = right)

        Note:
            Increments rotations counter AND keyswitches counter
        """
        pass

    @abstractmethod
    def rescale(self, ct: BackendCiphertext) -> BackendCiphertext:
        """
        Drop the last prime: level - 1, scale / last_prime(level).

        Raises:
            InvalidLevelTarget: If the ciphertext is already at level 0
        """
        pass

    @abstractmethod
    def relinearize(self, ct: BackendCiphertext) -> BackendCiphertext:
        """Bring a size-3 ciphertext back to size 2."""
        pass

    def bootstrap(self, ct: BackendCiphertext) -> BackendCiphertext:
        """Refresh a ciphertext's levels. Not provided by default."""
        raise UnsupportedOperation(
            f"{type(self).__name__} does not support bootstrapping"
        )


# =============================================================================
# BACKEND REGISTRY
# =============================================================================

class BackendType(Enum):
    """Available CKKS backend types."""
    SIMULATION = "simulation"  # numpy reference, for testing


_BACKEND_REGISTRY: Dict[BackendType, type] = {}


def register_backend(backend_type: BackendType):
    """Decorator to register a backend implementation."""
    def decorator(cls):
        _BACKEND_REGISTRY[backend_type] = cls
        return cls
    return decorator


def get_available_backends() -> List[BackendType]:
    """Get list of available (registered) backends."""
    return list(_BACKEND_REGISTRY.keys())


def create_backend(
    backend_type: BackendType,
    params: CKKSParams,
    **options: Any,
) -> CKKSBackend:
    """
    Create a CKKS backend instance.

    Args:
        backend_type: Which backend to use
        params: CKKS encryption parameters
        **options: Backend-specific constructor options

    Returns:
        Initialized backend instance

    Raises:
        ValueError: If backend type not registered
    """
    if backend_type not in _BACKEND_REGISTRY:
        available = [b.value for b in _BACKEND_REGISTRY.keys()]
        raise ValueError(
            f"Backend '{backend_type.value}' not registered. "
            f"Available: {available}"
        )

    backend_cls = _BACKEND_REGISTRY[backend_type]
    backend = backend_cls(params, **options)
    backend.initialize()
    return backend


# =============================================================================
# SIMULATION BACKEND (FOR TESTING)
# =============================================================================

@register_backend(BackendType.SIMULATION)
class SimulationBackend(CKKSBackend):
    """
    Simulation backend for testing without a native HE library.

    This backend keeps the message in clear, adds seeded Gaussian encoding
    noise of magnitude noise_std / scale, and tracks level and scale the
    way a real CKKS library does. It's useful for:
      - Unit testing the evaluators and the linear algebra layer
      - Verifying rotation and rescale counts
      - Testing on machines without a native HE library

    WARNING: This provides NO SECURITY. Use only for testing.
    """

    def __init__(self, params: CKKSParams, noise_std: float = 3.2, seed: Optional[int] = None):
        super().__init__(params)
        self._noise_std = noise_std
        self._rng = np.random.default_rng(seed)
        self._rng_lock = threading.Lock()

    def initialize(self) -> None:
        """Initialize (simulated) keys."""
        logger.debug(
            f"SimulationBackend initialized: N={self._params.poly_modulus_degree}, "
            f"chain={list(self._params.coeff_modulus_bits)}"
        )
        self._initialized = True

    def is_initialized(self) -> bool:
        return self._initialized

    # -------------------------------------------------------------------------
    # HELPERS
    # -------------------------------------------------------------------------

    def _noise(self, scale: float) -> np.ndarray:
        if self._noise_std == 0:
            return np.zeros(self.slot_count)
        with self._rng_lock:
            sample = self._rng.normal(0.0, self._noise_std, self.slot_count)
        return sample / scale

    def _encode_plain(self, plain: PlainOperand) -> np.ndarray:
        if np.isscalar(plain):
            return np.full(self.slot_count, float(plain))
        arr = np.asarray(plain, dtype=np.float64)
        if arr.shape != (self.slot_count,):
            raise DimensionError(
                f"Plaintext has {arr.size} values, expected {self.slot_count}"
            )
        return arr

    def _check_level(self, op: str, level: int) -> None:
        if level < 0 or level > self._params.max_level:
            raise InvalidLevelTarget(
                op, self._params.max_level, level,
                reason=f"level {level} outside chain [0, {self._params.max_level}]",
            )

    def _check_binary(self, op: str, ct1: BackendCiphertext, ct2: BackendCiphertext) -> None:
        if ct1.level != ct2.level:
            raise LevelMismatch(op, ct1.level, ct2.level)
        if not math.isclose(ct1.scale, ct2.scale, rel_tol=1e-9):
            raise ScaleMismatch(op, math.log2(ct1.scale), math.log2(ct2.scale))

    def _check_linear(self, op: str, *cts: BackendCiphertext) -> None:
        for ct in cts:
            if ct.size != 2:
                raise PreconditionError(op, f"ciphertext of size {ct.size} must be relinearized first")

    def _derive(self, ct: BackendCiphertext, handle: np.ndarray, **changes: Any) -> BackendCiphertext:
        return BackendCiphertext(
            handle=handle,
            level=changes.get('level', ct.level),
            scale=changes.get('scale', ct.scale),
            slot_count=self.slot_count,
            size=changes.get('size', ct.size),
        )

    # -------------------------------------------------------------------------
    # ENCRYPTION / DECRYPTION
    # -------------------------------------------------------------------------

    def encrypt(self, values: np.ndarray, level: int) -> BackendCiphertext:
        self._check_level("encrypt", level)
        message = self._encode_plain(values)
        scale = self._params.fresh_scale(level)
        self._count(encryptions=1)
        return BackendCiphertext(
            handle=message + self._noise(scale),
            level=level,
            scale=scale,
            slot_count=self.slot_count,
        )

    def encrypt_zero(self, level: int, scale: float) -> BackendCiphertext:
        self._check_level("encrypt_zero", level)
        self._count(encryptions=1)
        return BackendCiphertext(
            handle=self._noise(scale),
            level=level,
            scale=scale,
            slot_count=self.slot_count,
        )

    def decrypt(self, ciphertext: BackendCiphertext) -> np.ndarray:
        self._count(decryptions=1)
        return np.asarray(ciphertext.handle, dtype=np.float64).copy()

    # -------------------------------------------------------------------------
    # ARITHMETIC
    # -------------------------------------------------------------------------

    def add(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        self._check_binary("add", ct1, ct2)
        self._count(additions=1)
        return self._derive(ct1, ct1.handle + ct2.handle, size=max(ct1.size, ct2.size))

    def sub(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        self._check_binary("sub", ct1, ct2)
        self._count(additions=1)
        return self._derive(ct1, ct1.handle - ct2.handle, size=max(ct1.size, ct2.size))

    def add_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        self._count(additions=1)
        return self._derive(ct, ct.handle + self._encode_plain(plain))

    def sub_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        self._count(additions=1)
        return self._derive(ct, ct.handle - self._encode_plain(plain))

    def multiply(self, ct1: BackendCiphertext, ct2: BackendCiphertext) -> BackendCiphertext:
        if ct1.level != ct2.level:
            raise LevelMismatch("multiply", ct1.level, ct2.level)
        self._check_linear("multiply", ct1, ct2)
        self._count(multiplications=1)
        return self._derive(ct1, ct1.handle * ct2.handle, scale=ct1.scale * ct2.scale, size=3)

    def multiply_plain(self, ct: BackendCiphertext, plain: PlainOperand) -> BackendCiphertext:
        self._count(multiplications=1)
        return self._derive(ct, ct.handle * self._encode_plain(plain), scale=ct.scale * ct.scale)

    def square(self, ct: BackendCiphertext) -> BackendCiphertext:
        self._check_linear("square", ct)
        self._count(multiplications=1)
        return self._derive(ct, ct.handle * ct.handle, scale=ct.scale * ct.scale, size=3)

    def negate(self, ct: BackendCiphertext) -> BackendCiphertext:
        return self._derive(ct, -ct.handle)

    # -------------------------------------------------------------------------
    # ROTATION / LEVEL MANAGEMENT
    # -------------------------------------------------------------------------

    def rotate(self, ct: BackendCiphertext, steps: int) -> BackendCiphertext:
        self._check_linear("rotate", ct)
        self._count(rotations=1, keyswitches=1)  # Rotation requires keyswitch
        return self._derive(ct, np.roll(ct.handle, -steps))

    def rescale(self, ct: BackendCiphertext) -> BackendCiphertext:
        if ct.level == 0:
            raise InvalidLevelTarget(
                "rescale", 0, -1, reason="cannot rescale a ciphertext at level 0"
            )
        new_scale = ct.scale / self.last_prime(ct.level)
        self._count(rescales=1)
        # Rescaling rounds the message at the new scale
        return self._derive(
            ct, ct.handle + self._noise(new_scale), level=ct.level - 1, scale=new_scale,
        )

    def relinearize(self, ct: BackendCiphertext) -> BackendCiphertext:
        if ct.size != 3:
            raise PreconditionError("relinearize", f"ciphertext has size {ct.size}, expected 3")
        self._count(relinearizations=1, keyswitches=1)
        return self._derive(ct, ct.handle.copy(), size=2)
