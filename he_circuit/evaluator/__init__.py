"""
HE Circuit Evaluators

One circuit, many interpretations. Every evaluator implements the
CKKSEvaluator vocabulary:

  - HomomorphicEvaluator: real encrypted execution on a CKKS backend
  - ImplicitDepthFinder / ExplicitDepthFinder: multiplicative depth
  - PlaintextEvaluator: exact cleartext shadow execution
  - ScaleEstimator: largest safe CKKS scale
  - DebugEvaluator: homomorphic + shadow, cross-checked per operation
  - OpCount: operation tallies
  - RotationSet: rotation offsets (Galois keys) the circuit needs
"""

from .base import CKKSEvaluator
from .ciphertext import CiphertextHandle, EncodingKind
from .debug import DebugEvaluator
from .depth_finder import DepthSummary, ExplicitDepthFinder, ImplicitDepthFinder
from .homomorphic import HomomorphicEvaluator
from .op_count import OpCount, OpCounters
from .plaintext import PlaintextEvaluator
from .rotation_set import RotationSet
from .scale_estimator import ScaleEstimator

__all__ = [
    'CKKSEvaluator',
    'CiphertextHandle',
    'EncodingKind',
    'DebugEvaluator',
    'DepthSummary',
    'ExplicitDepthFinder',
    'ImplicitDepthFinder',
    'HomomorphicEvaluator',
    'OpCount',
    'OpCounters',
    'PlaintextEvaluator',
    'RotationSet',
    'ScaleEstimator',
]
