"""
HE Circuit Linear Algebra

Encrypted matrix and vector arithmetic on top of any CKKSEvaluator.

Usage:
    from he_circuit.evaluator import HomomorphicEvaluator
    from he_circuit.linalg import LinearAlgebra

    linalg = LinearAlgebra(HomomorphicEvaluator(num_slots=4096, multiplicative_depth=3))
    unit = linalg.make_unit(64)
    enc_a_trans = linalg.encrypt_matrix(a.T, unit)
    enc_b = linalg.encrypt_matrix(b, unit, level=2)
    product = linalg.rescale_to_next(linalg.multiply(enc_a_trans, enc_b))
    linalg.decrypt(product)  # ~= a @ b
"""

from .encoding import (
    EncodingUnit,
    decode_col_vector,
    decode_matrix,
    decode_row_vector,
    encode_col_vector,
    encode_matrix,
    encode_row_vector,
)
from .encrypted import EncryptedColVector, EncryptedMatrix, EncryptedRowVector
from .execution import ExecutionPolicy, TileExecutor
from .linear_algebra import LinearAlgebra

__all__ = [
    # Encoding
    'EncodingUnit',
    'decode_col_vector',
    'decode_matrix',
    'decode_row_vector',
    'encode_col_vector',
    'encode_matrix',
    'encode_row_vector',
    # Encrypted types
    'EncryptedColVector',
    'EncryptedMatrix',
    'EncryptedRowVector',
    # Execution
    'ExecutionPolicy',
    'TileExecutor',
    'LinearAlgebra',
]
