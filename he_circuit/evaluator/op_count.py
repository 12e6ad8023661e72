"""
Operation Counter

Counts the homomorphic operations a circuit performs, without running
them. Levels are tracked by an owned ImplicitDepthFinder, so the
multiplicative depth is reported alongside the counts.

Counters accumulate per thread (linear algebra runs tiles on a thread pool)
and are merged under the evaluator lock when read. Accumulators of finished
threads are folded into one retained total, so only live threads are kept.
"""

from dataclasses import dataclass, fields
from typing import Dict, List, Optional, Tuple
import logging
import threading

from ..common import ArrayLike
from ..config import EvaluatorConfig
from .base import CKKSEvaluator, PlainOperand
from .ciphertext import CiphertextHandle
from .depth_finder import ImplicitDepthFinder

logger = logging.getLogger(__name__)


@dataclass
class OpCounters:
    """Counts of circuit operations."""
    multiplies: int = 0
    additions: int = 0
    negations: int = 0
    rotations: int = 0
    reduce_levels: int = 0
    reduce_level_muls: int = 0
    encryptions: int = 0
    rescales: int = 0
    relins: int = 0
    bootstraps: int = 0

    def reset(self) -> None:
        """Reset all counters to zero."""
        for f in fields(self):
            setattr(self, f.name, 0)

    def __add__(self, other: 'OpCounters') -> 'OpCounters':
        """Combine counters."""
        return OpCounters(**{
            f.name: getattr(self, f.name) + getattr(other, f.name)
            for f in fields(self)
        })

    def to_dict(self) -> Dict[str, int]:
        """Serialize to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


class OpCount(CKKSEvaluator):
    """
    Counts operations and tracks multiplicative depth.

    Example:
        counter = OpCount(num_slots=4096)
        run_circuit(counter)
        counter.print_op_count()
        counter.get_multiplicative_depth()
    """

    def __init__(self, config: Optional[EvaluatorConfig] = None, **overrides):
        super().__init__(config, **overrides)
        self._depth_finder = ImplicitDepthFinder(self.config)
        self._local = threading.local()
        # Live threads' accumulators; finished threads are folded into _retired
        self._thread_counters: List[Tuple[threading.Thread, OpCounters]] = []
        self._retired = OpCounters()

    def _counters(self) -> OpCounters:
        counters = getattr(self._local, 'counters', None)
        if counters is None:
            counters = OpCounters()
            self._local.counters = counters
            with self._lock:
                self._retire_finished_threads()
                self._thread_counters.append((threading.current_thread(), counters))
        return counters

    def _retire_finished_threads(self) -> None:
        live = []
        for thread, counters in self._thread_counters:
            if thread.is_alive():
                live.append((thread, counters))
            else:
                self._retired = self._retired + counters
        self._thread_counters = live

    def encrypt(self, coeffs: ArrayLike, level: Optional[int] = None) -> CiphertextHandle:
        ct = self._depth_finder.encrypt(coeffs, level)
        self._counters().encryptions += 1
        return ct

    # -------------------------------------------------------------------------
    # HOOKS
    # -------------------------------------------------------------------------

    def on_rotate_left(self, ct: CiphertextHandle, steps: int) -> None:
        self._counters().rotations += 1

    def on_rotate_right(self, ct: CiphertextHandle, steps: int) -> None:
        self._counters().rotations += 1

    def on_negate(self, ct: CiphertextHandle) -> None:
        self._counters().negations += 1

    def on_add(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._depth_finder.on_add(ct1, ct2)
        self._counters().additions += 1

    def on_add_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._counters().additions += 1

    def on_sub(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._depth_finder.on_sub(ct1, ct2)
        self._counters().additions += 1

    def on_sub_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._counters().additions += 1

    def on_multiply(self, ct1: CiphertextHandle, ct2: CiphertextHandle) -> None:
        self._depth_finder.on_multiply(ct1, ct2)
        self._counters().multiplies += 1

    def on_multiply_plain(self, ct: CiphertextHandle, plain: PlainOperand) -> None:
        self._counters().multiplies += 1

    def on_square(self, ct: CiphertextHandle) -> None:
        self._counters().multiplies += 1

    def on_reduce_level_to(self, ct: CiphertextHandle, level: int) -> None:
        dropped = ct.he_level - level
        self._depth_finder.on_reduce_level_to(ct, level)
        counters = self._counters()
        if dropped > 0:
            counters.reduce_levels += 1
        counters.reduce_level_muls += dropped

    def on_rescale_to_next(self, ct: CiphertextHandle) -> None:
        self._depth_finder.on_rescale_to_next(ct)
        self._counters().rescales += 1

    def on_relinearize(self, ct: CiphertextHandle) -> None:
        self._counters().relins += 1

    def on_bootstrap(self, ct: CiphertextHandle, rescale_for_bootstrapping: bool) -> CiphertextHandle:
        result = self._depth_finder.on_bootstrap(ct, rescale_for_bootstrapping)
        self._counters().bootstraps += 1
        return result

    # -------------------------------------------------------------------------
    # RESULTS
    # -------------------------------------------------------------------------

    def get_op_counts(self) -> OpCounters:
        """Totals over all threads."""
        with self._lock:
            return sum((counters for _, counters in self._thread_counters), self._retired)

    def print_op_count(self) -> Dict[str, int]:
        """Log every counter at INFO and return the totals."""
        counts = self.get_op_counts().to_dict()
        for name, value in counts.items():
            logger.info(f"{name}: {value}")
        return counts

    def reset(self) -> None:
        """Zero all counters."""
        with self._lock:
            self._retired = OpCounters()
            for _, counters in self._thread_counters:
                counters.reset()

    def get_multiplicative_depth(self) -> int:
        return self._depth_finder.get_multiplicative_depth()
