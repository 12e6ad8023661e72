"""
HE Circuit

CKKS circuits written once and run under many interpretations: real
encrypted evaluation, exact plaintext shadowing, depth and scale analysis,
operation and rotation counting, and cross-checked debugging. On top of the
evaluator vocabulary sits an encrypted linear algebra layer that tiles
matrices and vectors into ciphertexts.

Quick Start:
    import numpy as np
    from he_circuit import EvaluatorConfig, HomomorphicEvaluator, OpCount, LinearAlgebra

    def circuit(evaluator, a, v):
        linalg = LinearAlgebra(evaluator)
        unit = linalg.make_unit(64)
        result = linalg.multiply(linalg.encrypt_matrix(a, unit), linalg.encrypt_col_vector(v, unit))
        return linalg, linalg.rescale_to_next(result)

    config = EvaluatorConfig(num_slots=4096, multiplicative_depth=2)

    # Count first
    counter = OpCount(config)
    circuit(counter, a, v)
    counter.print_op_count()

    # Then run it encrypted
    linalg, result = circuit(HomomorphicEvaluator(config), a, v)
    linalg.decrypt(result)  # ~= a @ v

Conventions:
  - Rotations are cyclic; positive steps rotate left
  - Levels count down; fresh ciphertexts sit at the top of the chain
  - Every product needs an explicit rescale_to_next()
"""

__version__ = '1.0.0'

from .ckks_params import CKKSParams, CKKSProfile, get_profile
from .config import EvaluatorConfig, ExecutionPolicy
from .errors import (
    CircuitError,
    DepthConsistencyError,
    DimensionError,
    DivergenceError,
    IncompatibleOperands,
    InvalidLevelTarget,
    LevelMismatch,
    PreconditionError,
    ScaleMismatch,
    ScaleOverflow,
    UnsupportedOperation,
)
from .evaluator import (
    CiphertextHandle,
    CKKSEvaluator,
    DebugEvaluator,
    EncodingKind,
    ExplicitDepthFinder,
    HomomorphicEvaluator,
    ImplicitDepthFinder,
    OpCount,
    PlaintextEvaluator,
    RotationSet,
    ScaleEstimator,
)
from .linalg import (
    EncodingUnit,
    EncryptedColVector,
    EncryptedMatrix,
    EncryptedRowVector,
    LinearAlgebra,
)

__all__ = [
    '__version__',
    # Configuration
    'CKKSParams',
    'CKKSProfile',
    'get_profile',
    'EvaluatorConfig',
    'ExecutionPolicy',
    # Errors
    'CircuitError',
    'DepthConsistencyError',
    'DimensionError',
    'DivergenceError',
    'IncompatibleOperands',
    'InvalidLevelTarget',
    'LevelMismatch',
    'PreconditionError',
    'ScaleMismatch',
    'ScaleOverflow',
    'UnsupportedOperation',
    # Evaluators
    'CiphertextHandle',
    'CKKSEvaluator',
    'DebugEvaluator',
    'EncodingKind',
    'ExplicitDepthFinder',
    'HomomorphicEvaluator',
    'ImplicitDepthFinder',
    'OpCount',
    'PlaintextEvaluator',
    'RotationSet',
    'ScaleEstimator',
    # Linear algebra
    'EncodingUnit',
    'EncryptedColVector',
    'EncryptedMatrix',
    'EncryptedRowVector',
    'LinearAlgebra',
]
