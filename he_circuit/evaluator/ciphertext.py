"""
Ciphertext Handles

A CiphertextHandle is what circuit code passes around. It carries the
metadata every interpreter agrees on (level, scale, degree flags, logical
shape) plus the interpreter-specific payloads: the backend ciphertext under
Homomorphic/Debug and the shadow plaintext under PlaintextEval,
ScaleEstimator and Debug.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from ..backend.ckks_backend import BackendCiphertext


class EncodingKind(Enum):
    """Logical layout of the slots of a ciphertext."""
    UNINITIALIZED = "uninitialized"
    MATRIX = "matrix"
    ROW_VECTOR = "row_vector"
    COL_VECTOR = "col_vector"
    # A row vector multiplied into a matrix, not yet summed
    ROW_MATRIX = "row_matrix"
    # A matrix multiplied by a column vector, not yet summed
    COL_MATRIX = "col_matrix"


@dataclass
class CiphertextHandle:
    """
    Evaluator-level ciphertext.

    Invariants maintained by the evaluators:
      - he_level drops by exactly 1 per rescale
      - needs_rescale iff the scale is the square of a rescaled scale
      - needs_relin iff a ciphertext-ciphertext product was not relinearized
    """
    he_level: int
    scale: float
    num_slots: int
    needs_rescale: bool = False
    needs_relin: bool = False
    bootstrapped: bool = False

    # Logical shape
    encoding: EncodingKind = EncodingKind.UNINITIALIZED
    height: int = 0
    width: int = 0
    encoded_height: int = 0
    encoded_width: int = 0

    # Interpreter payloads
    raw_pt: Optional[np.ndarray] = None
    backend_ct: Optional[BackendCiphertext] = None

    def copy(self) -> 'CiphertextHandle':
        """Independent copy, including the backend ciphertext and shadow plaintext."""
        return CiphertextHandle(
            he_level=self.he_level,
            scale=self.scale,
            num_slots=self.num_slots,
            needs_rescale=self.needs_rescale,
            needs_relin=self.needs_relin,
            bootstrapped=self.bootstrapped,
            encoding=self.encoding,
            height=self.height,
            width=self.width,
            encoded_height=self.encoded_height,
            encoded_width=self.encoded_width,
            raw_pt=None if self.raw_pt is None else self.raw_pt.copy(),
            backend_ct=None if self.backend_ct is None else self.backend_ct.copy(),
        )

    @property
    def shape(self) -> Tuple[EncodingKind, int, int, int, int]:
        return (self.encoding, self.height, self.width, self.encoded_height, self.encoded_width)

    def set_shape(
        self,
        encoding: EncodingKind,
        height: int,
        width: int,
        encoded_height: int,
        encoded_width: int,
    ) -> None:
        """Tag the handle with a logical layout."""
        self.encoding = encoding
        self.height = height
        self.width = width
        self.encoded_height = encoded_height
        self.encoded_width = encoded_width

    def plaintext(self) -> np.ndarray:
        """
        Copy of the shadow plaintext.

        Raises:
            ValueError: If this handle carries no shadow plaintext.
        """
        if self.raw_pt is None:
            raise ValueError("Ciphertext handle carries no shadow plaintext")
        return self.raw_pt.copy()

    def describe(self) -> str:
        """Short description used in error messages."""
        return (
            f"{self.encoding.value}({self.height}x{self.width}, "
            f"encoded {self.encoded_height}x{self.encoded_width})"
        )
