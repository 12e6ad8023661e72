"""
HE Circuit Backend

This package provides the CKKS backends driven by the Homomorphic and Debug
evaluators.

Supported backends:
  - SIMULATION: numpy reference for testing (always available)

Usage:
    from he_circuit.backend import BackendType, create_backend
    from he_circuit.ckks_params import CKKSParams

    params = CKKSParams.for_depth(4096, 2, 30)
    backend = create_backend(BackendType.SIMULATION, params, seed=0)

    ct = backend.encrypt(values, level=params.max_level)
    ct = backend.rescale(backend.multiply_plain(ct, 0.5))
    result = backend.decrypt(ct)
"""

from .ckks_backend import (
    # Types
    BackendCiphertext,
    BackendType,
    CKKSBackend,
    OperationCounters,
    # Simulation
    SimulationBackend,
    # Registry
    create_backend,
    get_available_backends,
    register_backend,
)

__all__ = [
    'BackendCiphertext',
    'BackendType',
    'CKKSBackend',
    'OperationCounters',
    'SimulationBackend',
    'create_backend',
    'get_available_backends',
    'register_backend',
]
