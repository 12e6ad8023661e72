"""
Rotation Set

Records every rotation offset a circuit uses, so that exactly those Galois
keys can be generated. Left rotations are recorded as positive offsets,
right rotations as negative ones.
"""

from typing import List, Optional, Set, Tuple
import threading

from ..common import ArrayLike
from ..config import EvaluatorConfig
from .base import CKKSEvaluator
from .ciphertext import CiphertextHandle


class RotationSet(CKKSEvaluator):
    """Collects the rotation offsets used by a circuit."""

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        super().__init__(config, **overrides)
        self._local = threading.local()
        # Live threads' sets; finished threads are folded into _retired
        self._thread_rotations: List[Tuple[threading.Thread, Set[int]]] = []
        self._retired: Set[int] = set()

    def _rotations(self) -> Set[int]:
        rotations = getattr(self._local, 'rotations', None)
        if rotations is None:
            rotations = set()
            self._local.rotations = rotations
            with self._lock:
                self._retire_finished_threads()
                self._thread_rotations.append((threading.current_thread(), rotations))
        return rotations

    def _retire_finished_threads(self) -> None:
        live = []
        for thread, rotations in self._thread_rotations:
            if thread.is_alive():
                live.append((thread, rotations))
            else:
                self._retired |= rotations
        self._thread_rotations = live

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        self._slot_vector(coeffs)
        return CiphertextHandle(
            he_level=0 if level is None else level,
            scale=self.nominal_scale,
            num_slots=self.num_slots,
        )

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        self._rotations().add(steps)

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        self._rotations().add(-steps)

    def needed_rotations(self) -> List[int]:
        """Sorted rotation offsets (positive = left)."""
        with self._lock:
            merged = self._retired.union(*(rotations for _, rotations in self._thread_rotations))
        return sorted(merged)
